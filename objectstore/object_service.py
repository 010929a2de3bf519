"""
Object Lifecycle Engine.

Coordinates the Physical Store and the Metadata Catalog for every object
operation. The order of steps is fixed:

* resolve the bucket, authorize, then resolve the object;
* bytes reach the Physical Store before the catalog row that references them,
  so a crash in between leaves an orphaned blob (removed by the bucket sweep)
  and never a row pointing at missing bytes;
* while versioning is off a key has one row and one blob at the unversioned
  location; with versioning on every version owns its own blob.

The read-modify-write sequence of a put, delete or ACL/tag update runs under a
per-(bucket, key) lock. The catalog's "one latest row per key" index catches
writers outside this process; those conflicts are retried a bounded number of
times and then reported as CONCURRENT_MODIFICATION.
"""

import asyncio
import itertools
import logging
import uuid
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from objectstore import iam
from objectstore.audit import AccessAuditTrail, AuditScope
from objectstore.auth import RequestContext
from objectstore.bucket_service import BucketService
from objectstore.catalog import CatalogConflictError, MetadataCatalog
from objectstore.errors import ConflictError, InternalError, NotFoundError, ValidationFailedError
from objectstore.iam import AuthorizationGateway, ResourceRef
from objectstore.listing import MAX_KEYS_LIMIT, ListPage, common_prefix_of, paginate
from objectstore.locks import KeyedLocks
from objectstore.models import Bucket, ObjectVersion
from objectstore.storage import DEFAULT_CONTENT_TYPE, BlobInfo, BlobMeta, BlobNotFoundError, FileSystemStore, Payload
from objectstore.validation import parse_copy_source, validate_grants, validate_object_key, validate_tag_set

logger = logging.getLogger(__name__)


@dataclass
class ObjectDownload:
    version: ObjectVersion
    stream: AsyncIterator[bytes]


@dataclass
class CopyResult:
    version: ObjectVersion
    source_bucket: str
    source_key: str
    source_version_id: str


def default_acl(owner_id: str) -> Dict[str, Any]:
    owner = {"id": owner_id, "displayName": owner_id}
    return {
        "owner": owner,
        "grants": [
            {
                "grantee": dict(owner, type="CanonicalUser"),
                "permission": "FULL_CONTROL",
            }
        ],
    }


def tag_set(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"key": k, "value": v} for k, v in tags.items()]


class ObjectService:
    def __init__(
        self,
        catalog: MetadataCatalog,
        store: FileSystemStore,
        gateway: AuthorizationGateway,
        audit: AccessAuditTrail,
        locks: KeyedLocks,
        buckets: BucketService,
        catalog_retries: int = 3,
        list_batch: int = 500,
    ):
        self._catalog = catalog
        self._store = store
        self._gateway = gateway
        self._audit = audit
        self._locks = locks
        self._buckets = buckets
        self._retries = catalog_retries
        self._list_batch = list_batch

    async def _authorize(self, ctx: RequestContext, action: str, resource: ResourceRef, scope: AuditScope) -> None:
        scope.decision = await self._gateway.require(ctx.actor.id, action, resource, ctx.oracle_context())

    async def _resolve_version(self, bucket: Bucket, key: str, version_id: Optional[str] = None) -> ObjectVersion:
        if version_id:
            row = await asyncio.to_thread(self._catalog.get_version, bucket.id, key, version_id)
            if row is None:
                raise NotFoundError(f"Version {version_id} of {bucket.name}/{key} not found", "VERSION_NOT_FOUND")
            return row
        row = await asyncio.to_thread(self._catalog.get_latest_version, bucket.id, key)
        if row is None:
            raise NotFoundError(f"Object {bucket.name}/{key} not found", "OBJECT_NOT_FOUND")
        return row

    # --- put ---

    async def put_object(
        self,
        ctx: RequestContext,
        bucket_name: str,
        key: str,
        data: Payload,
        content_type: Optional[str] = None,
        user_metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectVersion:
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.WRITE_OBJECT, resource) as scope:
            validate_object_key(key)
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.WRITE_OBJECT, resource, scope)

            meta = BlobMeta(content_type or DEFAULT_CONTENT_TYPE, dict(user_metadata or {}))
            version_id = str(uuid.uuid4())
            async with self._locks.hold(bucket_name, key):
                if bucket.versioning_enabled:
                    row = await self._put_versioned(ctx, bucket, key, data, meta, version_id)
                else:
                    row = await self._put_unversioned(ctx, bucket, key, data, meta, version_id)

            scope.status = 201
            scope.bytes_transferred = row.size
            logger.info(
                "Object stored: %s/%s version=%s size=%d by %s",
                bucket_name, key, row.version_id, row.size, ctx.actor.id,
            )
            return row

    async def _put_versioned(
        self, ctx: RequestContext, bucket: Bucket, key: str, data: Payload, meta: BlobMeta, version_id: str
    ) -> ObjectVersion:
        info = await self._store.put(bucket.name, key, data, meta, version_id=version_id)

        def build() -> ObjectVersion:
            return self._new_row(ctx, bucket, key, version_id, info, storage_version=version_id)

        try:
            return await self._with_retries(lambda: self._catalog.insert_versioned(build()))
        except ConflictError:
            # The new row never landed; its blob would only be an orphan.
            await self._store.delete(bucket.name, key, version_id)
            raise

    async def _put_unversioned(
        self, ctx: RequestContext, bucket: Bucket, key: str, data: Payload, meta: BlobMeta, version_id: str
    ) -> ObjectVersion:
        # Replaces the previous unversioned blob of the key in one rename.
        info = await self._store.put(bucket.name, key, data, meta)

        async def commit() -> ObjectVersion:
            old = await asyncio.to_thread(self._catalog.list_key_versions, bucket.id, key)
            for row in old:
                if row.storage_path != info.location:
                    await self._store.delete(bucket.name, key, row.storage_version)
            new = self._new_row(ctx, bucket, key, version_id, info, storage_version=None)
            return await asyncio.to_thread(self._catalog.replace_versions, new, [r.id for r in old])

        return await self._with_retries(commit, run_in_thread=False)

    async def _with_retries(self, operation: Callable[[], Any], run_in_thread: bool = True) -> ObjectVersion:
        for attempt in range(1, self._retries + 1):
            try:
                if run_in_thread:
                    return await asyncio.to_thread(operation)
                return await operation()
            except CatalogConflictError:
                if attempt == self._retries:
                    break
                logger.warning("Catalog conflict, retrying (%d/%d)", attempt, self._retries)
                await asyncio.sleep(0.01 * attempt)
        raise ConflictError("Object was modified concurrently, try again", "CONCURRENT_MODIFICATION")

    @staticmethod
    def _new_row(
        ctx: RequestContext,
        bucket: Bucket,
        key: str,
        version_id: str,
        info: BlobInfo,
        storage_version: Optional[str],
    ) -> ObjectVersion:
        return ObjectVersion(
            bucket_id=bucket.id,
            key=key,
            version_id=version_id,
            is_latest=True,
            size=info.size,
            etag=info.etag,
            last_modified=info.last_modified,
            content_type=info.content_type,
            user_metadata=dict(info.user_metadata),
            owner_id=ctx.actor.id,
            storage_path=info.location,
            storage_version=storage_version,
        )

    # --- reads ---

    async def get_object(
        self, ctx: RequestContext, bucket_name: str, key: str, version_id: Optional[str] = None
    ) -> ObjectDownload:
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.READ_OBJECT, resource) as scope:
            validate_object_key(key)
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.READ_OBJECT, resource, scope)
            row = await self._resolve_version(bucket, key, version_id)
            try:
                blob = await self._store.get(bucket_name, key, row.storage_version)
            except BlobNotFoundError:
                logger.error(
                    "Catalog row without bytes: %s/%s version=%s location=%s",
                    bucket_name, key, row.version_id, row.storage_path,
                )
                raise InternalError("Object data is missing", "OBJECT_DATA_MISSING")
            scope.bytes_transferred = row.size
            return ObjectDownload(version=row, stream=blob.stream)

    async def get_object_metadata(
        self, ctx: RequestContext, bucket_name: str, key: str, version_id: Optional[str] = None
    ) -> ObjectVersion:
        """Catalog record of the latest or given version, without touching the bytes."""
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.READ_OBJECT, resource) as scope:
            validate_object_key(key)
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.READ_OBJECT, resource, scope)
            return await self._resolve_version(bucket, key, version_id)

    async def list_objects(
        self,
        ctx: RequestContext,
        bucket_name: str,
        prefix: str = "",
        delimiter: str = "",
        marker: str = "",
        max_keys: int = MAX_KEYS_LIMIT,
        versions: bool = False,
    ) -> ListPage[ObjectVersion]:
        """
        List latest versions, or every version when ``versions`` is set.

        In versions mode all versions of a key stay on the same page and
        max_keys counts keys, not rows.
        """
        resource = ResourceRef(bucket_name)
        async with self._audit.track(ctx, iam.READ_BUCKET, resource) as scope:
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.READ_BUCKET, resource, scope)
            max_keys = max(0, min(max_keys, MAX_KEYS_LIMIT))

            groups = await self._scan_groups(bucket, prefix, delimiter, marker, max_keys, not versions)
            grouped = paginate(groups, lambda g: g[0].key, prefix, delimiter, marker, max_keys)
            return ListPage(
                entries=[row for group in grouped.entries for row in group],
                common_prefixes=grouped.common_prefixes,
                is_truncated=grouped.is_truncated,
                next_marker=grouped.next_marker,
            )

    async def _scan_groups(
        self,
        bucket: Bucket,
        prefix: str,
        delimiter: str,
        marker: str,
        max_keys: int,
        latest_only: bool,
    ) -> List[List[ObjectVersion]]:
        """
        Rows grouped by key, read from the catalog one batch of keys at a time.

        The scan stops once it holds one page entry (key or common prefix)
        more than max_keys, which is all paginate needs to decide truncation. Only the
        first key of each common prefix is kept.
        """
        groups: List[List[ObjectVersion]] = []
        entries = 0
        last_entry: Optional[str] = None
        cursor = marker
        while True:
            keys = await asyncio.to_thread(
                self._catalog.list_keys, bucket.id, prefix, cursor, self._list_batch, latest_only
            )
            rows = await asyncio.to_thread(self._catalog.list_versions_for_keys, bucket.id, keys, latest_only)
            for key, group in itertools.groupby(rows, key=lambda r: r.key):
                entry = common_prefix_of(key, prefix, delimiter) or key
                if entry == last_entry or (marker and entry <= marker):
                    continue
                groups.append(list(group))
                entries += 1
                last_entry = entry
                if entries > max_keys:
                    return groups
            if len(keys) < self._list_batch:
                return groups
            cursor = keys[-1]

    # --- delete ---

    async def delete_object(
        self, ctx: RequestContext, bucket_name: str, key: str, version_id: Optional[str] = None
    ) -> ObjectVersion:
        """
        Destroy the latest or given version: bytes first, then the row.

        Deleting the latest version of a versioned key promotes the next most
        recent one. A second delete of the same target is a NotFoundError.
        """
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.DELETE_OBJECT, resource) as scope:
            validate_object_key(key)
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.DELETE_OBJECT, resource, scope)

            async with self._locks.hold(bucket_name, key):
                row = await self._resolve_version(bucket, key, version_id)
                existed = await self._store.delete(bucket_name, key, row.storage_version)
                if not existed:
                    logger.warning("Bytes already gone for %s/%s version=%s", bucket_name, key, row.version_id)
                promoted = await asyncio.to_thread(self._catalog.delete_version, row.id)

            if promoted is not None:
                logger.info("Version %s of %s/%s is now latest", promoted.version_id, bucket_name, key)
            scope.status = 204
            logger.info("Object deleted: %s/%s version=%s by %s", bucket_name, key, row.version_id, ctx.actor.id)
            return row

    # --- copy ---

    async def copy_object(
        self, ctx: RequestContext, bucket_name: str, key: str, copy_source: str
    ) -> CopyResult:
        """
        Read the source fully, then put it at the destination.

        The destination always gets a new version id and goes through the
        full put path, authorization and versioning included.
        """
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.WRITE_OBJECT, resource, failures_only=True):
            src_bucket, src_key, src_version_id = parse_copy_source(copy_source)
            if (src_bucket, src_key) == (bucket_name, key):
                raise ValidationFailedError(
                    "Source and destination of a copy must differ", "SAME_SOURCE_DESTINATION"
                )
            validate_object_key(key)
            await self._buckets.resolve(bucket_name)

        source, data = await self._read_source(ctx, src_bucket, src_key, src_version_id)
        row = await self.put_object(
            ctx, bucket_name, key, data,
            content_type=source.content_type,
            user_metadata=source.user_metadata,
        )
        return CopyResult(row, src_bucket, src_key, source.version_id)

    async def _read_source(self, ctx: RequestContext, bucket_name: str, key: str, version_id: Optional[str]):
        download = await self.get_object(ctx, bucket_name, key, version_id)
        data = b"".join([chunk async for chunk in download.stream])
        return download.version, data

    # --- multipart ---

    async def initiate_multipart_upload(
        self,
        ctx: RequestContext,
        bucket_name: str,
        key: str,
        content_type: Optional[str] = None,
        user_metadata: Optional[Dict[str, str]] = None,
    ) -> ObjectVersion:
        """Record a pending upload. Part upload and completion are not implemented."""
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.WRITE_OBJECT, resource) as scope:
            validate_object_key(key)
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.WRITE_OBJECT, resource, scope)
            row = ObjectVersion(
                bucket_id=bucket.id,
                key=key,
                version_id=str(uuid.uuid4()),
                content_type=content_type or DEFAULT_CONTENT_TYPE,
                user_metadata=dict(user_metadata or {}),
                owner_id=ctx.actor.id,
                upload_id=uuid.uuid4().hex,
            )
            try:
                row = await asyncio.to_thread(self._catalog.add_pending_upload, row)
            except CatalogConflictError:
                raise ConflictError("Object was modified concurrently, try again", "CONCURRENT_MODIFICATION")
            logger.info("Multipart upload initiated: %s/%s upload=%s", bucket_name, key, row.upload_id)
            return row

    # --- ACL and tagging ---

    async def get_acl(self, ctx: RequestContext, bucket_name: str, key: str) -> Dict[str, Any]:
        row = await self.get_object_metadata(ctx, bucket_name, key)
        return row.acl or default_acl(row.owner_id)

    async def put_acl(self, ctx: RequestContext, bucket_name: str, key: str, grants: Any) -> Dict[str, Any]:
        """Replace the grants of the latest version wholesale."""
        validate_grants(grants)

        def change(row: ObjectVersion) -> Dict[str, Any]:
            owner = (row.acl or {}).get("owner") or default_acl(row.owner_id)["owner"]
            return {"acl": {"owner": owner, "grants": list(grants)}}

        row = await self._update_latest(ctx, bucket_name, key, change)
        return row.acl

    async def get_tagging(self, ctx: RequestContext, bucket_name: str, key: str) -> Dict[str, Any]:
        row = await self.get_object_metadata(ctx, bucket_name, key)
        return {"tagSet": tag_set(row.tags or {})}

    async def put_tagging(self, ctx: RequestContext, bucket_name: str, key: str, tags: Any) -> Dict[str, Any]:
        """Replace the whole tag set of the latest version."""
        new_tags = validate_tag_set(tags)
        row = await self._update_latest(ctx, bucket_name, key, lambda _: {"tags": new_tags})
        return {"tagSet": tag_set(row.tags)}

    async def _update_latest(
        self,
        ctx: RequestContext,
        bucket_name: str,
        key: str,
        change: Callable[[ObjectVersion], Dict[str, Any]],
    ) -> ObjectVersion:
        resource = ResourceRef(bucket_name, key)
        async with self._audit.track(ctx, iam.WRITE_OBJECT, resource) as scope:
            validate_object_key(key)
            bucket = await self._buckets.resolve(bucket_name)
            await self._authorize(ctx, iam.WRITE_OBJECT, resource, scope)
            async with self._locks.hold(bucket_name, key):
                row = await self._resolve_version(bucket, key)
                updated = await asyncio.to_thread(self._catalog.update_version, row.id, **change(row))
            if updated is None:
                raise NotFoundError(f"Object {bucket_name}/{key} not found", "OBJECT_NOT_FOUND")
            return updated
