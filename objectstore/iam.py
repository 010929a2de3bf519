"""
Authorization Gateway.

Every lifecycle operation asks a PermissionOracle whether (actor, action, resource)
is allowed. Two oracles ship with the service: HttpPermissionOracle talks to the
external permission service, StaticPolicyOracle evaluates a local JSON policy
document. The gateway bounds each call with a timeout and fails closed: a slow,
unreachable or broken oracle yields a denial whose reason is "service unavailable",
distinct from an explicit policy deny.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union

import httpx

from objectstore.errors import AccessDeniedError

logger = logging.getLogger(__name__)

READ_OBJECT = "read:object"
WRITE_OBJECT = "write:object"
DELETE_OBJECT = "delete:object"
READ_BUCKET = "read:bucket"
WRITE_BUCKET = "write:bucket"
DELETE_BUCKET = "delete:bucket"
CREATE_BUCKET = "create:bucket"
LIST_BUCKETS = "list:buckets"
READ_LOGS = "read:logs"

SERVICE_UNAVAILABLE_REASON = "service unavailable"
NO_MATCH_REASON = "no matching policy"


@dataclass(frozen=True)
class ResourceRef:
    """Typed target of an authorization check: a bucket, an object in it, or every bucket."""

    bucket: Optional[str] = None
    key: Optional[str] = None

    def render(self) -> str:
        if self.bucket is None:
            return "bucket:*"
        if self.key is None:
            return f"bucket:{self.bucket}"
        return f"bucket:{self.bucket}/object:{self.key}"


@dataclass
class Decision:
    allowed: bool
    reason: str = ""
    policy_id: Optional[str] = None
    unavailable: bool = False


class OracleUnavailableError(Exception):
    """The oracle could not produce a decision."""


class PermissionOracle(Protocol):
    async def check(
        self, actor_id: str, action: str, resource: ResourceRef, context: Dict[str, Any]
    ) -> Decision: ...


class HttpPermissionOracle:
    """Adapter for the external permission service (``POST {base}/permissions/check``)."""

    def __init__(self, base_url: str, timeout_seconds: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self._url = f"{base_url.rstrip('/')}/permissions/check"
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)

    async def check(
        self, actor_id: str, action: str, resource: ResourceRef, context: Dict[str, Any]
    ) -> Decision:
        payload = {
            "userId": actor_id,
            "action": action,
            "resource": resource.render(),
            "context": context,
        }
        try:
            response = await self._client.post(self._url, json=payload)
        except httpx.TimeoutException as e:
            raise OracleUnavailableError(f"Timeout: {e}") from e
        except httpx.HTTPError as e:
            raise OracleUnavailableError(f"Transport error: {type(e).__name__}") from e

        if response.status_code != 200:
            raise OracleUnavailableError(f"HTTP {response.status_code}")
        try:
            body = response.json()
        except ValueError as e:
            raise OracleUnavailableError("Response is not JSON") from e

        # The service answers either bare or wrapped in {"data": {...}}.
        if isinstance(body, dict) and isinstance(body.get("data"), dict):
            body = body["data"]
        if not isinstance(body, dict) or not isinstance(body.get("allowed"), bool):
            raise OracleUnavailableError("Response has no boolean 'allowed'")
        return Decision(
            allowed=body["allowed"],
            reason=str(body.get("reason") or ""),
            policy_id=body.get("policy") or body.get("policyId"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _matches(pattern: str, value: str) -> bool:
    if pattern == "*":
        return True
    if pattern.endswith("*"):
        return value.startswith(pattern[:-1])
    return pattern == value


class StaticPolicyOracle:
    """
    Evaluates IAM-style statements held in memory.

    Document shape::

        {
          "actors":  {"alice": [{"id": "...", "effect": "Allow", "actions": [...], "resources": [...]}]},
          "default": [ ...statements applied to every actor... ]
        }

    Actions and resources accept a trailing ``*``; resources may contain
    ``${actor}``, replaced by the caller's id. An explicit Deny overrides any
    Allow; when nothing matches the request is denied.
    """

    def __init__(self, document: Dict[str, Any]):
        self._actors: Dict[str, List[Dict[str, Any]]] = document.get("actors") or {}
        self._default: List[Dict[str, Any]] = document.get("default") or []

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticPolicyOracle":
        with open(path, "r", encoding="utf-8") as f:
            document = json.load(f)
        if not isinstance(document, dict):
            raise ValueError(f"Policy file {path} must hold a JSON object")
        return cls(document)

    @classmethod
    def allow_all(cls) -> "StaticPolicyOracle":
        return cls({"default": [{"id": "allow-all", "effect": "Allow", "actions": ["*"], "resources": ["*"]}]})

    async def check(
        self, actor_id: str, action: str, resource: ResourceRef, context: Dict[str, Any]
    ) -> Decision:
        rendered = resource.render()
        allow: Optional[Dict[str, Any]] = None
        for statement in self._actors.get(actor_id, []) + self._default:
            if not any(_matches(a, action) for a in statement.get("actions", [])):
                continue
            patterns = [r.replace("${actor}", actor_id) for r in statement.get("resources", [])]
            if not any(_matches(p, rendered) for p in patterns):
                continue
            if statement.get("effect") == "Deny":
                return Decision(False, "explicit deny", statement.get("id"))
            if statement.get("effect") == "Allow" and allow is None:
                allow = statement
        if allow is not None:
            return Decision(True, "allowed by policy", allow.get("id"))
        return Decision(False, NO_MATCH_REASON)


class AuthorizationGateway:
    def __init__(self, oracle: PermissionOracle, timeout_seconds: float = 5.0):
        self._oracle = oracle
        self._timeout = timeout_seconds

    @property
    def oracle(self) -> PermissionOracle:
        return self._oracle

    async def check(
        self,
        actor_id: str,
        action: str,
        resource: ResourceRef,
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        """Ask the oracle; never raises. Oracle failure or timeout is a denial."""
        try:
            decision = await asyncio.wait_for(
                self._oracle.check(actor_id, action, resource, context or {}), self._timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Permission check timed out after %.1fs: actor=%s action=%s resource=%s",
                self._timeout, actor_id, action, resource.render(),
            )
            return Decision(False, SERVICE_UNAVAILABLE_REASON, unavailable=True)
        except Exception as e:
            logger.error(
                "Permission check failed: actor=%s action=%s resource=%s error=%s",
                actor_id, action, resource.render(), e,
            )
            return Decision(False, SERVICE_UNAVAILABLE_REASON, unavailable=True)

        if not decision.allowed:
            logger.info(
                "Permission denied: actor=%s action=%s resource=%s reason=%s",
                actor_id, action, resource.render(), decision.reason,
            )
        return decision

    async def require(
        self,
        actor_id: str,
        action: str,
        resource: ResourceRef,
        context: Optional[Dict[str, Any]] = None,
    ) -> Decision:
        """Like check, but a denial raises AccessDeniedError."""
        decision = await self.check(actor_id, action, resource, context)
        if not decision.allowed:
            raise AccessDeniedError(decision.reason or "access denied", decision.policy_id)
        return decision

    async def aclose(self) -> None:
        close = getattr(self._oracle, "aclose", None)
        if close is not None:
            await close()


def build_oracle(iam_url: str, policy_file: Optional[str], timeout_seconds: float) -> PermissionOracle:
    if iam_url:
        logger.info("Using permission service at %s", iam_url)
        return HttpPermissionOracle(iam_url, timeout_seconds)
    if policy_file:
        logger.info("Using local policy file %s", policy_file)
        return StaticPolicyOracle.from_file(policy_file)
    logger.warning("No permission service or policy file configured; every request is allowed")
    return StaticPolicyOracle.allow_all()
