import asyncio
import logging
import math
from typing import Any, Dict, List, Optional

from objectstore import iam
from objectstore.audit import AccessAuditTrail
from objectstore.auth import RequestContext
from objectstore.catalog import CatalogConflictError, MetadataCatalog
from objectstore.errors import ConflictError, NotFoundError
from objectstore.iam import AuthorizationGateway, ResourceRef
from objectstore.locks import KeyedLocks
from objectstore.models import AccessLogEntry, Bucket
from objectstore.storage import BlobRef, BucketNotEmptyError, FileSystemStore
from objectstore.validation import validate_bucket_name, validate_cors, validate_policy

logger = logging.getLogger(__name__)


class BucketService:
    """Bucket lifecycle: creation, configuration documents, deletion and orphan cleanup."""

    def __init__(
        self,
        catalog: MetadataCatalog,
        store: FileSystemStore,
        gateway: AuthorizationGateway,
        audit: AccessAuditTrail,
        locks: KeyedLocks,
        default_region: str = "us-east-1",
    ):
        self._catalog = catalog
        self._store = store
        self._gateway = gateway
        self._audit = audit
        self._locks = locks
        self._default_region = default_region

    async def resolve(self, name: str) -> Bucket:
        bucket = await asyncio.to_thread(self._catalog.get_bucket, name)
        if bucket is None:
            raise NotFoundError(f"Bucket {name} not found", "BUCKET_NOT_FOUND")
        return bucket

    async def _authorize(self, ctx: RequestContext, action: str, resource: ResourceRef, scope) -> None:
        scope.decision = await self._gateway.require(ctx.actor.id, action, resource, ctx.oracle_context())

    # --- buckets ---

    async def create_bucket(
        self,
        ctx: RequestContext,
        name: str,
        region: Optional[str] = None,
        versioning_enabled: bool = False,
        cors_configuration: Optional[Dict[str, Any]] = None,
        tags: Optional[Dict[str, str]] = None,
    ) -> Bucket:
        resource = ResourceRef(name)
        async with self._audit.track(ctx, iam.CREATE_BUCKET, resource) as scope:
            validate_bucket_name(name)
            if cors_configuration is not None:
                validate_cors(cors_configuration)
            await self._authorize(ctx, iam.CREATE_BUCKET, resource, scope)

            bucket = Bucket(
                name=name,
                region=region or self._default_region,
                versioning_enabled=versioning_enabled,
                cors_configuration=cors_configuration,
                tags=dict(tags or {}),
                owner_id=ctx.actor.id,
            )
            try:
                bucket = await asyncio.to_thread(self._catalog.create_bucket, bucket)
            except CatalogConflictError:
                raise ConflictError(f"Bucket {name} already exists", "BUCKET_ALREADY_EXISTS")
            await self._store.create_bucket(name)
            scope.status = 201
            logger.info("Bucket created: %s by %s", name, ctx.actor.id)
            return bucket

    async def list_buckets(self, ctx: RequestContext, page: int = 1, limit: int = 50) -> Dict[str, Any]:
        """Buckets owned by the caller, newest first."""
        resource = ResourceRef()
        async with self._audit.track(ctx, iam.LIST_BUCKETS, resource) as scope:
            await self._authorize(ctx, iam.LIST_BUCKETS, resource, scope)
            offset = (page - 1) * limit
            buckets, total = await asyncio.to_thread(self._catalog.list_buckets, ctx.actor.id, offset, limit)
            return {
                "buckets": buckets,
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": total,
                    "totalPages": math.ceil(total / limit) if limit else 0,
                },
            }

    async def get_bucket(self, ctx: RequestContext, name: str) -> Bucket:
        resource = ResourceRef(name)
        async with self._audit.track(ctx, iam.READ_BUCKET, resource) as scope:
            bucket = await self.resolve(name)
            await self._authorize(ctx, iam.READ_BUCKET, resource, scope)
            return bucket

    async def delete_bucket(self, ctx: RequestContext, name: str) -> None:
        """
        Delete an empty bucket.

        Only complete object versions count; pending multipart rows are purged
        with the bucket. Blobs on disk that no row references are leftovers of
        interrupted writes and are swept before the directory is removed.
        """
        resource = ResourceRef(name)
        async with self._audit.track(ctx, iam.DELETE_BUCKET, resource) as scope:
            bucket = await self.resolve(name)
            await self._authorize(ctx, iam.DELETE_BUCKET, resource, scope)

            live = await asyncio.to_thread(self._catalog.count_live_versions, bucket.id)
            if live:
                raise ConflictError(f"Bucket {name} is not empty", "BUCKET_NOT_EMPTY")

            try:
                await self._store.delete_bucket(name)
            except BucketNotEmptyError:
                removed = await self._sweep(bucket)
                logger.warning("Removed %d orphaned blob(s) before deleting bucket %s", len(removed), name)
                try:
                    await self._store.delete_bucket(name)
                except BucketNotEmptyError:
                    # A put landed after the emptiness check and its blob is referenced now.
                    raise ConflictError(f"Bucket {name} is not empty", "BUCKET_NOT_EMPTY")

            purged = await asyncio.to_thread(self._catalog.delete_bucket, bucket.id)
            if purged:
                logger.info("Discarded %d pending upload(s) of bucket %s", purged, name)
            scope.status = 204
            logger.info("Bucket deleted: %s by %s", name, ctx.actor.id)

    # --- configuration documents ---

    async def get_policy(self, ctx: RequestContext, name: str) -> Dict[str, Any]:
        bucket = await self._read_config(ctx, name)
        if not bucket.policy:
            raise NotFoundError(f"Bucket {name} has no policy", "POLICY_NOT_FOUND")
        return bucket.policy

    async def put_policy(self, ctx: RequestContext, name: str, policy: Dict[str, Any]) -> Bucket:
        return await self._write_config(ctx, name, policy=validate_policy(policy))

    async def delete_policy(self, ctx: RequestContext, name: str) -> Bucket:
        return await self._write_config(ctx, name, policy=None)

    async def get_versioning(self, ctx: RequestContext, name: str) -> Dict[str, Any]:
        bucket = await self._read_config(ctx, name)
        return {"enabled": bucket.versioning_enabled, "status": "Enabled" if bucket.versioning_enabled else "Suspended"}

    async def put_versioning(self, ctx: RequestContext, name: str, enabled: bool) -> Bucket:
        return await self._write_config(ctx, name, versioning_enabled=enabled)

    async def get_cors(self, ctx: RequestContext, name: str) -> Dict[str, Any]:
        bucket = await self._read_config(ctx, name)
        if not bucket.cors_configuration:
            raise NotFoundError(f"Bucket {name} has no CORS configuration", "CORS_NOT_FOUND")
        return bucket.cors_configuration

    async def put_cors(self, ctx: RequestContext, name: str, cors: Dict[str, Any]) -> Bucket:
        return await self._write_config(ctx, name, cors_configuration=validate_cors(cors))

    async def delete_cors(self, ctx: RequestContext, name: str) -> Bucket:
        return await self._write_config(ctx, name, cors_configuration=None)

    async def _read_config(self, ctx: RequestContext, name: str) -> Bucket:
        resource = ResourceRef(name)
        async with self._audit.track(ctx, iam.READ_BUCKET, resource) as scope:
            bucket = await self.resolve(name)
            await self._authorize(ctx, iam.READ_BUCKET, resource, scope)
            return bucket

    async def _write_config(self, ctx: RequestContext, name: str, **fields: Any) -> Bucket:
        resource = ResourceRef(name)
        async with self._audit.track(ctx, iam.WRITE_BUCKET, resource) as scope:
            bucket = await self.resolve(name)
            await self._authorize(ctx, iam.WRITE_BUCKET, resource, scope)
            bucket = await asyncio.to_thread(self._catalog.update_bucket, bucket.id, **fields)
            logger.info("Bucket %s updated (%s) by %s", name, ", ".join(fields), ctx.actor.id)
            return bucket

    # --- maintenance ---

    async def sweep(self, ctx: RequestContext, name: str) -> List[BlobRef]:
        """Delete blobs of the bucket that no catalog row references."""
        resource = ResourceRef(name)
        async with self._audit.track(ctx, iam.WRITE_BUCKET, resource) as scope:
            bucket = await self.resolve(name)
            await self._authorize(ctx, iam.WRITE_BUCKET, resource, scope)
            removed = await self._sweep(bucket)
            if removed:
                logger.warning("Swept %d orphaned blob(s) from bucket %s", len(removed), name)
            return removed

    async def _sweep(self, bucket: Bucket) -> List[BlobRef]:
        refs = await self._store.blob_refs(bucket.name)
        owned = await asyncio.to_thread(self._catalog.storage_paths, bucket.id)
        removed = []
        for ref in refs:
            if ref.location in owned:
                continue
            # A put may be between its physical and catalog writes; it holds the key lock.
            async with self._locks.hold(bucket.name, ref.key if ref.key is not None else ref.location):
                if await asyncio.to_thread(self._catalog.is_referenced, bucket.id, ref.location):
                    continue
                await self._store.delete_location(bucket.name, ref.location)
                removed.append(ref)
        return removed

    async def access_logs(
        self,
        ctx: RequestContext,
        bucket: Optional[str] = None,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        allowed: Optional[bool] = None,
        limit: int = 100,
    ) -> List[AccessLogEntry]:
        resource = ResourceRef(bucket)
        # Reading the log is not itself logged.
        await self._gateway.require(ctx.actor.id, iam.READ_LOGS, resource, ctx.oracle_context())
        return await asyncio.to_thread(
            self._catalog.query_access_logs, bucket, action, actor_id, allowed, limit
        )
