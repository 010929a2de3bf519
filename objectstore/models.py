from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Bucket(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    region: str = Field(default="us-east-1")
    versioning_enabled: bool = Field(default=False)
    cors_configuration: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    policy: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    # Stored for API completeness; no expiration engine reads it.
    lifecycle_configuration: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    tags: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    owner_id: str = Field(index=True)
    creation_date: datetime = Field(default_factory=utcnow)


class ObjectVersion(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("bucket_id", "key", "version_id", name="uq_objectversion_bucket_key_version"),
        Index("ix_objectversion_bucket_key", "bucket_id", "key"),
        # At most one latest row per key, enforced by the database as well.
        Index(
            "uq_objectversion_one_latest",
            "bucket_id",
            "key",
            unique=True,
            sqlite_where=text("is_latest = 1"),
            postgresql_where=text("is_latest"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    bucket_id: int = Field(foreign_key="bucket.id", index=True)
    key: str = Field(max_length=1024)
    version_id: str = Field(index=True)
    is_latest: bool = Field(default=True)
    size: int = Field(default=0)
    etag: str = Field(default="")
    last_modified: datetime = Field(default_factory=utcnow)
    content_type: str = Field(default="application/octet-stream")
    storage_class: str = Field(default="STANDARD")
    user_metadata: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    tags: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    acl: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    owner_id: str = Field(index=True)
    # Path relative to the store root, and the version id the blob is addressed by
    # (None when the blob lives at the unversioned (bucket, key) location).
    storage_path: Optional[str] = Field(default=None)
    storage_version: Optional[str] = Field(default=None)
    upload_id: Optional[str] = Field(default=None, index=True)
    is_multipart: bool = Field(default=False)
    is_complete: bool = Field(default=True)
    expires_at: Optional[datetime] = Field(default=None)


class AccessLogEntry(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: Optional[str] = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str
    bucket_name: Optional[str] = Field(default=None, index=True)
    object_key: Optional[str] = Field(default=None)
    http_method: Optional[str] = Field(default=None)
    outcome: str
    http_status: int
    allowed: bool = Field(index=True)
    reason: Optional[str] = Field(default=None)
    policy: Optional[str] = Field(default=None)
    error_code: Optional[str] = Field(default=None)
    bytes_transferred: int = Field(default=0)
    request_id: Optional[str] = Field(default=None)
    ip_address: Optional[str] = Field(default=None)
    user_agent: Optional[str] = Field(default=None)
    started_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow, index=True)
    duration_ms: int = Field(default=0)
