"""
Access Audit Trail.

One AccessLogEntry is appended per operation once its outcome is known. Writing
the entry is best effort: a failing catalog is reported in the service log and
never reaches the caller.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from objectstore.auth import RequestContext
from objectstore.catalog import MetadataCatalog
from objectstore.errors import AccessDeniedError, NotFoundError, ObjectStoreError
from objectstore.iam import Decision, ResourceRef
from objectstore.models import AccessLogEntry, utcnow
from objectstore.storage import StorageError

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
DENIED = "DENIED"
NOT_FOUND = "NOT_FOUND"
ERROR = "ERROR"


@dataclass
class AuditScope:
    """Filled in by the operation while it runs."""

    decision: Optional[Decision] = None
    status: int = 200
    bytes_transferred: int = 0


class AccessAuditTrail:
    def __init__(self, catalog: MetadataCatalog):
        self._catalog = catalog

    async def record(self, entry: AccessLogEntry) -> None:
        try:
            await asyncio.to_thread(self._catalog.add_access_log, entry)
        except Exception:
            logger.exception(
                "Failed to write access log: actor=%s action=%s resource=%s outcome=%s",
                entry.actor_id, entry.action, entry.resource, entry.outcome,
            )

    @asynccontextmanager
    async def track(
        self, ctx: RequestContext, action: str, resource: ResourceRef, failures_only: bool = False
    ) -> AsyncIterator[AuditScope]:
        """
        Record the outcome of the wrapped operation, whether it returns or raises.

        With ``failures_only`` a clean exit records nothing; used for a step whose
        success is recorded by the operation that follows it.
        """
        scope = AuditScope()
        started_at = utcnow()
        t0 = time.monotonic()
        error: Optional[BaseException] = None
        try:
            yield scope
        except BaseException as e:
            error = e
            raise
        finally:
            if isinstance(error, asyncio.CancelledError):
                # The request is gone; do not await anything on its behalf.
                logger.info("Operation cancelled: actor=%s action=%s", ctx.actor.id, action)
            elif error is not None or not failures_only:
                entry = self._build_entry(ctx, action, resource, scope, error)
                entry.started_at = started_at
                entry.duration_ms = int((time.monotonic() - t0) * 1000)
                await self.record(entry)

    @staticmethod
    def _build_entry(
        ctx: RequestContext,
        action: str,
        resource: ResourceRef,
        scope: AuditScope,
        error: Optional[BaseException],
    ) -> AccessLogEntry:
        decision = scope.decision
        allowed = bool(decision and decision.allowed)
        reason = decision.reason if decision else None
        policy = decision.policy_id if decision else None
        error_code = None

        if error is None:
            outcome, status = SUCCESS, scope.status
        elif isinstance(error, AccessDeniedError):
            outcome, status, allowed = DENIED, error.status_code, False
            reason, policy, error_code = error.reason, error.policy_id, error.code
        elif isinstance(error, ObjectStoreError):
            outcome = NOT_FOUND if isinstance(error, NotFoundError) else ERROR
            status, error_code, reason = error.status_code, error.code, error.message
        elif isinstance(error, StorageError):
            outcome, status, error_code = ERROR, 503, "SERVICE_UNAVAILABLE"
        else:
            outcome, status, error_code = ERROR, 500, "INTERNAL_ERROR"

        return AccessLogEntry(
            actor_id=ctx.actor.id,
            action=action,
            resource=resource.render(),
            bucket_name=resource.bucket,
            object_key=resource.key,
            http_method=ctx.method,
            outcome=outcome,
            http_status=status,
            allowed=allowed,
            reason=reason,
            policy=policy,
            error_code=error_code,
            bytes_transferred=scope.bytes_transferred,
            request_id=ctx.request_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
        )
