"""Physical Store: object bytes on the local filesystem.

Layout under the store root:

    {root}/{bucket}/{key_hash}/data                       bytes written while versioning is off
    {root}/{bucket}/{key_hash}/meta                       sidecar metadata (JSON)
    {root}/{bucket}/{key_hash}/key                        the object key, verbatim
    {root}/_versions/{bucket}/{key_hash}/{version_id}/... the same three entries for one version

``key_hash`` is the SHA-256 of the key, so every key gets its own directory no
matter which characters it contains, and no key can name a sidecar, a temp
file or another key's directory. Bucket names always start with a letter or
digit, so ``_versions`` can never collide with a bucket directory.

Writes go to a ``*.partial`` file in the entry directory and are renamed into
place only after the last byte is on disk; a cancelled or failed upload never
leaves a truncated blob under the real name.
"""

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Union

import aiofiles
import aiofiles.os

from objectstore.listing import ListPage, paginate

logger = logging.getLogger(__name__)

DATA_NAME = "data"
SIDECAR_NAME = "meta"
KEY_NAME = "key"
PARTIAL_SUFFIX = ".partial"
VERSIONS_DIR = "_versions"
DEFAULT_CONTENT_TYPE = "application/octet-stream"
CHUNK_SIZE = 64 * 1024

_SAFE_COMPONENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

Payload = Union[bytes, bytearray, memoryview, AsyncIterable[bytes]]


class StorageError(Exception):
    """The filesystem refused an operation."""

    def __init__(self, message: str, *, bucket: Optional[str] = None, key: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.bucket = bucket
        self.key = key

    def __str__(self) -> str:
        parts = [self.message]
        if self.bucket:
            parts.append(f"bucket={self.bucket}")
        if self.key:
            parts.append(f"key={self.key}")
        return " ".join(parts)


class BlobNotFoundError(StorageError):
    pass


class BucketNotEmptyError(StorageError):
    pass


class PathTraversalError(StorageError):
    pass


@dataclass
class BlobMeta:
    content_type: str = DEFAULT_CONTENT_TYPE
    user_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BlobInfo:
    etag: str
    size: int
    last_modified: datetime
    location: str
    content_type: str = DEFAULT_CONTENT_TYPE
    user_metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class StoredBlob:
    stream: AsyncIterator[bytes]
    info: BlobInfo


@dataclass
class BlobRef:
    """One blob entry on disk. ``key`` is None when its key record is gone."""

    location: str
    key: Optional[str] = None
    version_id: Optional[str] = None


def key_hash(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def check_component(value: str, bucket: Optional[str] = None) -> str:
    """Bucket names and version ids become directory names as they are."""
    if not _SAFE_COMPONENT.match(value or ""):
        raise PathTraversalError("Unsafe path component", bucket=bucket or value)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FileSystemStore:
    def __init__(self, root: Union[str, Path]) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        logger.debug("FileSystemStore initialised at %s", self._root)

    @property
    def root(self) -> Path:
        return self._root

    # --- path resolution ---

    def bucket_path(self, bucket: str) -> Path:
        return self._within_root(self._root / check_component(bucket), bucket)

    def versions_path(self, bucket: str) -> Path:
        return self._within_root(self._root / VERSIONS_DIR / check_component(bucket), bucket)

    def entry_path(self, bucket: str, key: str, version_id: Optional[str] = None) -> Path:
        """Directory holding data, sidecar and key record of one blob."""
        if version_id is None:
            path = self.bucket_path(bucket) / key_hash(key)
        else:
            path = self.versions_path(bucket) / key_hash(key) / check_component(version_id, bucket)
        return self._within_root(path, bucket, key)

    def blob_path(self, bucket: str, key: str, version_id: Optional[str] = None) -> Path:
        return self.entry_path(bucket, key, version_id) / DATA_NAME

    def location_of(self, bucket: str, key: str, version_id: Optional[str] = None) -> str:
        """Location reference relative to the store root, as recorded in the catalog."""
        return self.blob_path(bucket, key, version_id).relative_to(self._root).as_posix()

    def _within_root(self, path: Path, bucket: str, key: Optional[str] = None) -> Path:
        resolved = path.resolve()
        if resolved != self._root and self._root not in resolved.parents:
            raise PathTraversalError("Path resolves outside the store root", bucket=bucket, key=key)
        return resolved

    # --- buckets ---

    async def create_bucket(self, bucket: str) -> None:
        await asyncio.to_thread(self.bucket_path(bucket).mkdir, parents=True, exist_ok=True)

    async def delete_bucket(self, bucket: str) -> bool:
        """Remove the bucket directories; refuses while any blob remains."""
        return await asyncio.to_thread(self._delete_bucket_sync, bucket)

    def _delete_bucket_sync(self, bucket: str) -> bool:
        dirs = [p for p in (self.bucket_path(bucket), self.versions_path(bucket)) if p.exists()]
        for directory in dirs:
            for _, _, files in os.walk(directory):
                if files:
                    raise BucketNotEmptyError("Bucket directory is not empty", bucket=bucket)
        for directory in dirs:
            shutil.rmtree(directory)
        return bool(dirs)

    # --- objects ---

    async def put(
        self,
        bucket: str,
        key: str,
        data: Payload,
        meta: Optional[BlobMeta] = None,
        version_id: Optional[str] = None,
    ) -> BlobInfo:
        """
        Write bytes, key record and sidecar for (bucket, key[, version_id]).

        Size and MD5 come from the same pass that writes the data, so a stream
        is never buffered twice. The key record lands before the data so that
        any data file on disk can be traced back to its key.
        """
        meta = meta or BlobMeta()
        entry = self.entry_path(bucket, key, version_id)
        path = entry / DATA_NAME
        partial = self._partial_path(path)

        try:
            await asyncio.to_thread(entry.mkdir, parents=True, exist_ok=True)
            await self._write_text(entry / KEY_NAME, key)
            async with aiofiles.open(partial, "wb") as f:
                if isinstance(data, (bytes, bytearray, memoryview)):
                    await f.write(data)
                    digest = hashlib.md5(data)
                    size = len(data)
                else:
                    digest = hashlib.md5()
                    size = 0
                    async for chunk in data:
                        if not chunk:
                            continue
                        await f.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
            await aiofiles.os.replace(partial, path)
        except OSError as e:
            await self._abandon(bucket, entry, partial)
            raise StorageError(f"Cannot write blob: {e.strerror}", bucket=bucket, key=key) from e
        except BaseException:
            await self._abandon(bucket, entry, partial)
            raise

        info = BlobInfo(
            etag=digest.hexdigest(),
            size=size,
            last_modified=_utcnow(),
            location=self.location_of(bucket, key, version_id),
            content_type=meta.content_type or DEFAULT_CONTENT_TYPE,
            user_metadata=dict(meta.user_metadata),
        )
        await self._write_sidecar(entry, info)
        logger.info("Blob stored: %s/%s size=%d etag=%s", bucket, key, size, info.etag)
        return info

    async def get(self, bucket: str, key: str, version_id: Optional[str] = None) -> StoredBlob:
        path = self.blob_path(bucket, key, version_id)
        try:
            handle = await aiofiles.open(path, "rb")
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise BlobNotFoundError("Blob not found", bucket=bucket, key=key)
        except OSError as e:
            raise StorageError(f"Cannot open blob: {e.strerror}", bucket=bucket, key=key) from e

        try:
            info = await self._read_info(path, bucket, key, version_id)
        except BaseException:
            await handle.close()
            raise
        return StoredBlob(stream=self._iter_file(handle), info=info)

    async def head(self, bucket: str, key: str, version_id: Optional[str] = None) -> BlobInfo:
        path = self.blob_path(bucket, key, version_id)
        if not await aiofiles.os.path.isfile(path):
            raise BlobNotFoundError("Blob not found", bucket=bucket, key=key)
        return await self._read_info(path, bucket, key, version_id)

    async def exists(self, bucket: str, key: str, version_id: Optional[str] = None) -> bool:
        return await aiofiles.os.path.isfile(self.blob_path(bucket, key, version_id))

    async def delete(self, bucket: str, key: str, version_id: Optional[str] = None) -> bool:
        """Remove blob, sidecar and key record. Returns False if the blob was already gone."""
        existed = await self.delete_location(bucket, self.location_of(bucket, key, version_id))
        if existed:
            logger.info("Blob deleted: %s/%s", bucket, key)
        return existed

    async def delete_location(self, bucket: str, location: str) -> bool:
        """Delete by catalog location; used where the key record may be missing."""
        path = self._within_root(self._root / location, bucket)
        if path.name != DATA_NAME or not (
            self.bucket_path(bucket) in path.parents or self.versions_path(bucket) in path.parents
        ):
            raise PathTraversalError("Location is not a blob of this bucket", bucket=bucket)
        entry = path.parent
        try:
            await aiofiles.os.remove(path)
            existed = True
        except FileNotFoundError:
            existed = False
        except OSError as e:
            raise StorageError(f"Cannot delete blob: {e.strerror}", bucket=bucket) from e
        await self._discard(entry / SIDECAR_NAME)
        await self._discard(entry / KEY_NAME)

        await asyncio.to_thread(self._prune_empty_dirs, entry, self._prune_stop(bucket, entry))
        return existed

    async def copy(
        self,
        src_bucket: str,
        src_key: str,
        dst_bucket: str,
        dst_key: str,
        src_version_id: Optional[str] = None,
        dst_version_id: Optional[str] = None,
    ) -> BlobInfo:
        """Byte-level copy including the sidecar; the destination gets a fresh lastModified."""
        source = await self.get(src_bucket, src_key, src_version_id)
        meta = BlobMeta(source.info.content_type, source.info.user_metadata)
        return await self.put(dst_bucket, dst_key, source.stream, meta, version_id=dst_version_id)

    async def list(
        self,
        bucket: str,
        prefix: str = "",
        delimiter: str = "",
        marker: str = "",
        max_keys: int = 1000,
    ) -> ListPage[BlobInfo]:
        """List unversioned blobs of a bucket; the key of each entry is in BlobInfo.location."""
        infos: List[BlobInfo] = []
        for ref in await self.blob_refs(bucket):
            if ref.version_id is not None:
                continue
            if ref.key is None:
                logger.warning("Skipping blob without key record: %s", ref.location)
                continue
            try:
                info = await self._read_info(self._root / ref.location, bucket, ref.key, None)
            except OSError as e:
                logger.warning("Skipping unreadable blob %s/%s: %s", bucket, ref.key, e)
                continue
            info.location = ref.key
            infos.append(info)
        return paginate(infos, lambda i: i.location, prefix, delimiter, marker, max_keys)

    async def blob_refs(self, bucket: str) -> List[BlobRef]:
        """Every blob entry held for a bucket, unversioned and versioned."""
        return await asyncio.to_thread(self._blob_refs_sync, bucket)

    def _blob_refs_sync(self, bucket: str) -> List[BlobRef]:
        entries = [(e, None) for e in self._entries(self.bucket_path(bucket))]
        for hashed in self._entries(self.versions_path(bucket)):
            entries.extend((e, e.name) for e in self._entries(hashed))

        refs = []
        for entry, version_id in entries:
            names = {p.name for p in entry.iterdir() if p.is_file()}
            # An entry holding only temp files is an upload still in flight.
            if not names & {DATA_NAME, SIDECAR_NAME, KEY_NAME}:
                continue
            key = None
            if KEY_NAME in names:
                try:
                    key = (entry / KEY_NAME).read_text(encoding="utf-8")
                except OSError as e:
                    logger.warning("Unreadable key record in %s: %s", entry, e)
            location = (entry / DATA_NAME).relative_to(self._root).as_posix()
            refs.append(BlobRef(location, key, version_id))
        return sorted(refs, key=lambda r: (r.key or "", r.version_id or "", r.location))

    async def recover_partials(self) -> int:
        """Delete temp files left behind by uploads interrupted before completion."""
        return await asyncio.to_thread(self._recover_partials_sync)

    def _recover_partials_sync(self) -> int:
        removed = 0
        for dirpath, _, files in os.walk(self._root):
            for name in files:
                if name.endswith(PARTIAL_SUFFIX):
                    os.remove(os.path.join(dirpath, name))
                    removed += 1
        if removed:
            logger.warning("Removed %d interrupted upload file(s) under %s", removed, self._root)
        return removed

    # --- helpers ---

    @staticmethod
    def _partial_path(path: Path) -> Path:
        return path.with_name(f"{path.name}.{uuid.uuid4().hex}{PARTIAL_SUFFIX}")

    @staticmethod
    def _entries(root: Path) -> List[Path]:
        if not root.is_dir():
            return []
        return sorted(p for p in root.iterdir() if p.is_dir())

    def _prune_stop(self, bucket: str, entry: Path) -> Path:
        versions = self.versions_path(bucket)
        return versions if versions in entry.parents else self.bucket_path(bucket)

    @staticmethod
    def _prune_empty_dirs(start: Path, stop: Path) -> None:
        current = start
        while current != stop and stop in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    async def _iter_file(self, handle: Any) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await handle.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await handle.close()

    async def _write_text(self, target: Path, text: str) -> None:
        partial = self._partial_path(target)
        try:
            async with aiofiles.open(partial, "w", encoding="utf-8") as f:
                await f.write(text)
            await aiofiles.os.replace(partial, target)
        except BaseException:
            await self._discard(partial)
            raise

    async def _write_sidecar(self, entry: Path, info: BlobInfo) -> None:
        document = {
            "size": info.size,
            "etag": info.etag,
            "lastModified": info.last_modified.isoformat(),
            "contentType": info.content_type,
            "userMetadata": info.user_metadata,
        }
        await self._write_text(entry / SIDECAR_NAME, json.dumps(document, indent=2))

    async def _read_info(self, path: Path, bucket: str, key: str, version_id: Optional[str]) -> BlobInfo:
        """Sidecar first; stat-derived values when the sidecar is missing or stale."""
        stat = await aiofiles.os.stat(path)
        location = self.location_of(bucket, key, version_id)
        fallback = BlobInfo(
            etag="",
            size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            location=location,
        )
        try:
            async with aiofiles.open(path.with_name(SIDECAR_NAME), "r", encoding="utf-8") as f:
                document = json.loads(await f.read())
        except FileNotFoundError:
            logger.warning("Sidecar missing for %s/%s", bucket, key)
            return fallback
        except (OSError, ValueError) as e:
            logger.warning("Unreadable sidecar for %s/%s: %s", bucket, key, e)
            return fallback

        if not isinstance(document, dict) or document.get("size") != stat.st_size:
            logger.warning("Stale sidecar for %s/%s", bucket, key)
            return fallback
        try:
            last_modified = datetime.fromisoformat(document["lastModified"])
        except (KeyError, TypeError, ValueError):
            last_modified = fallback.last_modified
        return BlobInfo(
            etag=str(document.get("etag") or ""),
            size=stat.st_size,
            last_modified=last_modified,
            location=location,
            content_type=document.get("contentType") or DEFAULT_CONTENT_TYPE,
            user_metadata=dict(document.get("userMetadata") or {}),
        )

    async def _abandon(self, bucket: str, entry: Path, partial: Path) -> None:
        """Undo a failed put; an earlier blob under the same entry keeps its key record."""
        await self._discard(partial)
        if not await aiofiles.os.path.isfile(entry / DATA_NAME):
            await self._discard(entry / KEY_NAME)
            await asyncio.to_thread(self._prune_empty_dirs, entry, self._prune_stop(bucket, entry))

    @staticmethod
    async def _discard(path: Path) -> None:
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
