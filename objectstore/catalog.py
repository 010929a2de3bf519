"""Metadata Catalog: durable bucket, object-version and access-log records.

All methods are synchronous and open one short session each; the lifecycle
layer runs them on worker threads. Rows are returned detached with their
attributes loaded (``expire_on_commit=False``).
"""

import logging
from typing import Any, Iterable, List, Optional, Set, Tuple

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, func, select

from objectstore.models import AccessLogEntry, Bucket, ObjectVersion

logger = logging.getLogger(__name__)


class CatalogConflictError(Exception):
    """A unique constraint rejected the write."""


class MetadataCatalog:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def session(self) -> Session:
        return Session(self._engine, expire_on_commit=False)

    def ping(self) -> bool:
        with self.session() as session:
            session.exec(select(func.count()).select_from(Bucket)).one()
        return True

    # --- buckets ---

    def create_bucket(self, bucket: Bucket) -> Bucket:
        with self.session() as session:
            session.add(bucket)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise CatalogConflictError(f"bucket {bucket.name} already exists") from e
            return bucket

    def get_bucket(self, name: str) -> Optional[Bucket]:
        with self.session() as session:
            return session.exec(select(Bucket).where(Bucket.name == name)).first()

    def list_buckets(self, owner_id: str, offset: int = 0, limit: int = 50) -> Tuple[List[Bucket], int]:
        with self.session() as session:
            total = session.exec(
                select(func.count()).select_from(Bucket).where(Bucket.owner_id == owner_id)
            ).one()
            stmt = (
                select(Bucket)
                .where(Bucket.owner_id == owner_id)
                .order_by(Bucket.creation_date.desc(), Bucket.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(session.exec(stmt).all()), total

    def update_bucket(self, bucket_id: int, **fields: Any) -> Bucket:
        with self.session() as session:
            bucket = session.get(Bucket, bucket_id)
            if bucket is None:
                raise LookupError(f"bucket id {bucket_id} vanished")
            for name, value in fields.items():
                setattr(bucket, name, value)
            session.add(bucket)
            session.commit()
            return bucket

    def delete_bucket(self, bucket_id: int) -> int:
        """Drop pending multipart rows and the bucket row. Returns the number of pending rows purged."""
        with self.session() as session:
            pending = session.exec(
                select(ObjectVersion).where(
                    ObjectVersion.bucket_id == bucket_id,
                    ObjectVersion.is_complete == False,  # noqa: E712
                )
            ).all()
            for row in pending:
                session.delete(row)
            session.flush()
            bucket = session.get(Bucket, bucket_id)
            if bucket is not None:
                session.delete(bucket)
            session.commit()
            return len(pending)

    def count_live_versions(self, bucket_id: int) -> int:
        with self.session() as session:
            return session.exec(
                select(func.count())
                .select_from(ObjectVersion)
                .where(
                    ObjectVersion.bucket_id == bucket_id,
                    ObjectVersion.is_complete == True,  # noqa: E712
                )
            ).one()

    # --- object versions ---

    def get_latest_version(self, bucket_id: int, key: str) -> Optional[ObjectVersion]:
        with self.session() as session:
            stmt = select(ObjectVersion).where(
                ObjectVersion.bucket_id == bucket_id,
                ObjectVersion.key == key,
                ObjectVersion.is_latest == True,  # noqa: E712
                ObjectVersion.is_complete == True,  # noqa: E712
            )
            return session.exec(stmt).first()

    def get_version(self, bucket_id: int, key: str, version_id: str) -> Optional[ObjectVersion]:
        with self.session() as session:
            stmt = select(ObjectVersion).where(
                ObjectVersion.bucket_id == bucket_id,
                ObjectVersion.key == key,
                ObjectVersion.version_id == version_id,
                ObjectVersion.is_complete == True,  # noqa: E712
            )
            return session.exec(stmt).first()

    def list_key_versions(self, bucket_id: int, key: str) -> List[ObjectVersion]:
        """All complete versions of one key, most recent first."""
        with self.session() as session:
            stmt = (
                select(ObjectVersion)
                .where(
                    ObjectVersion.bucket_id == bucket_id,
                    ObjectVersion.key == key,
                    ObjectVersion.is_complete == True,  # noqa: E712
                )
                .order_by(ObjectVersion.last_modified.desc(), ObjectVersion.id.desc())
            )
            return list(session.exec(stmt).all())

    def list_keys(
        self,
        bucket_id: int,
        prefix: str = "",
        marker: str = "",
        limit: int = 500,
        latest_only: bool = True,
    ) -> List[str]:
        """Distinct keys with at least one complete version, in key order."""
        with self.session() as session:
            stmt = select(ObjectVersion.key).where(
                ObjectVersion.bucket_id == bucket_id,
                ObjectVersion.is_complete == True,  # noqa: E712
            )
            if latest_only:
                stmt = stmt.where(ObjectVersion.is_latest == True)  # noqa: E712
            if prefix:
                stmt = stmt.where(col(ObjectVersion.key).startswith(prefix, autoescape=True))
            if marker:
                stmt = stmt.where(ObjectVersion.key > marker)
            stmt = stmt.distinct().order_by(ObjectVersion.key).limit(limit)
            return list(session.exec(stmt).all())

    def list_versions_for_keys(
        self, bucket_id: int, keys: List[str], latest_only: bool = True
    ) -> List[ObjectVersion]:
        """Complete rows of the given keys, ordered by key, then most recent first within a key."""
        if not keys:
            return []
        with self.session() as session:
            stmt = select(ObjectVersion).where(
                ObjectVersion.bucket_id == bucket_id,
                ObjectVersion.is_complete == True,  # noqa: E712
                col(ObjectVersion.key).in_(keys),
            )
            if latest_only:
                stmt = stmt.where(ObjectVersion.is_latest == True)  # noqa: E712
            stmt = stmt.order_by(
                ObjectVersion.key, ObjectVersion.last_modified.desc(), ObjectVersion.id.desc()
            )
            return list(session.exec(stmt).all())

    def insert_versioned(self, row: ObjectVersion) -> ObjectVersion:
        """Demote every version of the key and insert ``row`` as the latest, in one transaction."""
        with self.session() as session:
            current = session.exec(
                select(ObjectVersion).where(
                    ObjectVersion.bucket_id == row.bucket_id,
                    ObjectVersion.key == row.key,
                    ObjectVersion.is_latest == True,  # noqa: E712
                )
            ).all()
            for old in current:
                old.is_latest = False
                session.add(old)
            session.flush()
            row.is_latest = True
            session.add(row)
            self._commit_or_conflict(session, row)
            return row

    def replace_versions(self, row: ObjectVersion, old_ids: Iterable[int]) -> ObjectVersion:
        """Destroy the given rows and insert ``row`` as the only version, in one transaction."""
        with self.session() as session:
            for old_id in old_ids:
                old = session.get(ObjectVersion, old_id)
                if old is not None:
                    session.delete(old)
            session.flush()
            row.is_latest = True
            session.add(row)
            self._commit_or_conflict(session, row)
            return row

    def delete_version(self, row_id: int) -> Optional[ObjectVersion]:
        """
        Destroy one version row. When it was the latest, the next most recent
        version of the key becomes latest; that promoted row is returned.
        """
        with self.session() as session:
            row = session.get(ObjectVersion, row_id)
            if row is None:
                return None
            was_latest = row.is_latest
            bucket_id, key = row.bucket_id, row.key
            session.delete(row)
            session.flush()

            promoted = None
            if was_latest:
                promoted = session.exec(
                    select(ObjectVersion)
                    .where(
                        ObjectVersion.bucket_id == bucket_id,
                        ObjectVersion.key == key,
                        ObjectVersion.is_complete == True,  # noqa: E712
                    )
                    .order_by(ObjectVersion.last_modified.desc(), ObjectVersion.id.desc())
                ).first()
                if promoted is not None:
                    promoted.is_latest = True
                    session.add(promoted)
            session.commit()
            return promoted

    def update_version(self, row_id: int, **fields: Any) -> Optional[ObjectVersion]:
        with self.session() as session:
            row = session.get(ObjectVersion, row_id)
            if row is None:
                return None
            for name, value in fields.items():
                setattr(row, name, value)
            session.add(row)
            session.commit()
            return row

    def add_pending_upload(self, row: ObjectVersion) -> ObjectVersion:
        with self.session() as session:
            row.is_latest = False
            row.is_complete = False
            row.is_multipart = True
            session.add(row)
            self._commit_or_conflict(session, row)
            return row

    def storage_paths(self, bucket_id: int) -> Set[str]:
        """Locations of every blob a complete row owns."""
        with self.session() as session:
            rows = session.exec(
                select(ObjectVersion.storage_path).where(
                    ObjectVersion.bucket_id == bucket_id,
                    ObjectVersion.is_complete == True,  # noqa: E712
                )
            ).all()
            return {path for path in rows if path}

    def is_referenced(self, bucket_id: int, storage_path: str) -> bool:
        with self.session() as session:
            row = session.exec(
                select(ObjectVersion.id).where(
                    ObjectVersion.bucket_id == bucket_id,
                    ObjectVersion.storage_path == storage_path,
                    ObjectVersion.is_complete == True,  # noqa: E712
                )
            ).first()
            return row is not None

    # --- access log ---

    def add_access_log(self, entry: AccessLogEntry) -> AccessLogEntry:
        with self.session() as session:
            session.add(entry)
            session.commit()
            return entry

    def query_access_logs(
        self,
        bucket_name: Optional[str] = None,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        allowed: Optional[bool] = None,
        limit: int = 100,
    ) -> List[AccessLogEntry]:
        with self.session() as session:
            stmt = select(AccessLogEntry)
            if bucket_name is not None:
                stmt = stmt.where(AccessLogEntry.bucket_name == bucket_name)
            if action is not None:
                stmt = stmt.where(AccessLogEntry.action == action)
            if actor_id is not None:
                stmt = stmt.where(AccessLogEntry.actor_id == actor_id)
            if allowed is not None:
                stmt = stmt.where(AccessLogEntry.allowed == allowed)
            stmt = stmt.order_by(AccessLogEntry.created_at.desc(), AccessLogEntry.id.desc()).limit(limit)
            return list(session.exec(stmt).all())

    @staticmethod
    def _commit_or_conflict(session: Session, row: ObjectVersion) -> None:
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.warning("Catalog conflict writing version of key %r: %s", row.key, e.orig)
            raise CatalogConflictError(f"concurrent write to key {row.key}") from e
