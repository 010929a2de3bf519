from datetime import timedelta

import pytest

from objectstore.catalog import CatalogConflictError, MetadataCatalog
from objectstore.models import AccessLogEntry, Bucket, ObjectVersion, utcnow


def add_bucket(catalog: MetadataCatalog, name: str = "docs", owner: str = "alice") -> Bucket:
    return catalog.create_bucket(Bucket(name=name, owner_id=owner))


def version(bucket: Bucket, key: str, version_id: str, minutes: int = 0, **fields) -> ObjectVersion:
    return ObjectVersion(
        bucket_id=bucket.id,
        key=key,
        version_id=version_id,
        owner_id="alice",
        last_modified=utcnow() + timedelta(minutes=minutes),
        storage_path=f"_versions/{bucket.name}/{key}/{version_id}",
        storage_version=version_id,
        **fields,
    )


def test_bucket_name_is_unique(catalog: MetadataCatalog):
    add_bucket(catalog)
    with pytest.raises(CatalogConflictError):
        add_bucket(catalog, owner="bob")


def test_list_buckets_is_owner_scoped_and_paginated(catalog: MetadataCatalog):
    for name in ["aaa", "bbb", "ccc"]:
        add_bucket(catalog, name)
    add_bucket(catalog, "other", owner="bob")

    first, total = catalog.list_buckets("alice", offset=0, limit=2)
    rest, _ = catalog.list_buckets("alice", offset=2, limit=2)
    assert total == 3
    assert len(first) == 2 and len(rest) == 1
    assert {b.name for b in first + rest} == {"aaa", "bbb", "ccc"}


def test_insert_versioned_keeps_one_latest(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    catalog.insert_versioned(version(bucket, "a.txt", "v2", minutes=1))

    rows = catalog.list_key_versions(bucket.id, "a.txt")
    assert [r.version_id for r in rows] == ["v2", "v1"]
    assert [r.is_latest for r in rows] == [True, False]
    assert catalog.get_latest_version(bucket.id, "a.txt").version_id == "v2"


def test_second_latest_row_is_rejected(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    # Inserting as latest without demoting the current row violates the index.
    with pytest.raises(CatalogConflictError):
        catalog.replace_versions(version(bucket, "a.txt", "v2"), old_ids=[])
    assert len(catalog.list_key_versions(bucket.id, "a.txt")) == 1


def test_replace_versions_leaves_single_row(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    old = catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    catalog.replace_versions(version(bucket, "a.txt", "v2"), old_ids=[old.id])
    rows = catalog.list_key_versions(bucket.id, "a.txt")
    assert [(r.version_id, r.is_latest) for r in rows] == [("v2", True)]


def test_delete_latest_promotes_previous(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    catalog.insert_versioned(version(bucket, "a.txt", "v2", minutes=1))
    catalog.insert_versioned(version(bucket, "a.txt", "v3", minutes=2))

    latest = catalog.get_latest_version(bucket.id, "a.txt")
    promoted = catalog.delete_version(latest.id)
    assert promoted.version_id == "v2"
    assert catalog.get_latest_version(bucket.id, "a.txt").version_id == "v2"

    # Deleting an older version leaves the latest alone.
    v1 = catalog.get_version(bucket.id, "a.txt", "v1")
    assert catalog.delete_version(v1.id) is None
    assert catalog.get_latest_version(bucket.id, "a.txt").version_id == "v2"


def test_list_keys_prefix_is_literal(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    for key in ["a_b.txt", "axb.txt", "a%c.txt", "b.txt"]:
        catalog.insert_versioned(version(bucket, key, "v1"))

    assert catalog.list_keys(bucket.id, prefix="a_") == ["a_b.txt"]
    assert catalog.list_keys(bucket.id, prefix="a%") == ["a%c.txt"]
    assert catalog.list_keys(bucket.id, marker="axb.txt") == ["b.txt"]
    assert catalog.list_keys(bucket.id, limit=2) == ["a%c.txt", "a_b.txt"]


def test_list_versions_for_keys(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    catalog.insert_versioned(version(bucket, "a.txt", "v2", minutes=1))
    catalog.insert_versioned(version(bucket, "b.txt", "v1"))

    assert catalog.list_keys(bucket.id, latest_only=False) == ["a.txt", "b.txt"]
    rows = catalog.list_versions_for_keys(bucket.id, ["a.txt"], latest_only=False)
    assert [r.version_id for r in rows] == ["v2", "v1"]
    rows = catalog.list_versions_for_keys(bucket.id, ["a.txt", "b.txt"])
    assert [(r.key, r.version_id) for r in rows] == [("a.txt", "v2"), ("b.txt", "v1")]
    assert catalog.list_versions_for_keys(bucket.id, []) == []


def test_pending_uploads_are_invisible_and_purged(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    pending = catalog.add_pending_upload(version(bucket, "big.bin", "up-1", upload_id="u1"))
    assert pending.is_complete is False and pending.is_latest is False

    assert catalog.count_live_versions(bucket.id) == 0
    assert catalog.get_latest_version(bucket.id, "big.bin") is None
    assert catalog.list_keys(bucket.id, latest_only=False) == []

    assert catalog.delete_bucket(bucket.id) == 1
    assert catalog.get_bucket("docs") is None


def test_storage_paths_and_references(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    row = catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    assert catalog.storage_paths(bucket.id) == {row.storage_path}
    assert catalog.is_referenced(bucket.id, row.storage_path)
    assert not catalog.is_referenced(bucket.id, "docs/a.txt")


def test_update_version_fields(catalog: MetadataCatalog):
    bucket = add_bucket(catalog)
    row = catalog.insert_versioned(version(bucket, "a.txt", "v1"))
    updated = catalog.update_version(row.id, tags={"env": "prod"})
    assert updated.tags == {"env": "prod"}
    assert catalog.get_version(bucket.id, "a.txt", "v1").tags == {"env": "prod"}
    assert catalog.update_version(9999, tags={}) is None


def test_access_log_filters(catalog: MetadataCatalog):
    for actor, allowed in [("alice", True), ("bob", False), ("alice", False)]:
        catalog.add_access_log(
            AccessLogEntry(
                actor_id=actor,
                action="read:object",
                resource="bucket:docs/object:a.txt",
                bucket_name="docs",
                outcome="SUCCESS" if allowed else "DENIED",
                http_status=200 if allowed else 403,
                allowed=allowed,
            )
        )

    assert len(catalog.query_access_logs(bucket_name="docs")) == 3
    assert len(catalog.query_access_logs(actor_id="alice")) == 2
    denied = catalog.query_access_logs(allowed=False)
    assert {e.actor_id for e in denied} == {"alice", "bob"}
    assert len(catalog.query_access_logs(limit=1)) == 1
    assert catalog.query_access_logs(bucket_name="other") == []
