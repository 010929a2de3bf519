import pytest

from objectstore.auth import Actor, RequestContext
from objectstore.errors import AccessDeniedError, ConflictError, NotFoundError, ValidationFailedError
from tests.fakes import FakeOracle, make_services

POLICY = {"Version": "2012-10-17", "Statement": [{"Effect": "Allow", "Action": "s3:GetObject"}]}
CORS = {"CORSRules": [{"AllowedMethods": ["GET"], "AllowedOrigins": ["https://example.com"]}]}


@pytest.mark.asyncio
async def test_create_and_get(bucket_service, store, ctx):
    bucket = await bucket_service.create_bucket(ctx, "photos", tags={"env": "dev"})
    assert bucket.owner_id == "alice"
    assert bucket.region == "us-east-1"
    assert bucket.versioning_enabled is False
    assert store.bucket_path("photos").is_dir()

    fetched = await bucket_service.get_bucket(ctx, "photos")
    assert fetched.tags == {"env": "dev"}


@pytest.mark.asyncio
async def test_duplicate_name(bucket_service, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    with pytest.raises(ConflictError) as exc:
        await bucket_service.create_bucket(ctx, "photos")
    assert exc.value.code == "BUCKET_ALREADY_EXISTS"


@pytest.mark.asyncio
async def test_invalid_name(bucket_service, ctx):
    with pytest.raises(ValidationFailedError) as exc:
        await bucket_service.create_bucket(ctx, "192.168.1.1")
    assert exc.value.code == "INVALID_BUCKET_NAME"


@pytest.mark.asyncio
async def test_list_is_owner_scoped(bucket_service, ctx):
    for name in ["aaa", "bbb", "ccc"]:
        await bucket_service.create_bucket(ctx, name)
    bob = RequestContext(actor=Actor(id="bob"))
    await bucket_service.create_bucket(bob, "bobs-bucket")

    result = await bucket_service.list_buckets(ctx, page=2, limit=2)
    assert len(result["buckets"]) == 1
    assert result["pagination"] == {"page": 2, "limit": 2, "total": 3, "totalPages": 2}

    result = await bucket_service.list_buckets(bob)
    assert [b.name for b in result["buckets"]] == ["bobs-bucket"]


@pytest.mark.asyncio
async def test_policy_lifecycle(bucket_service, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    with pytest.raises(NotFoundError) as exc:
        await bucket_service.get_policy(ctx, "photos")
    assert exc.value.code == "POLICY_NOT_FOUND"

    await bucket_service.put_policy(ctx, "photos", POLICY)
    assert await bucket_service.get_policy(ctx, "photos") == POLICY

    await bucket_service.delete_policy(ctx, "photos")
    with pytest.raises(NotFoundError):
        await bucket_service.get_policy(ctx, "photos")


@pytest.mark.asyncio
async def test_invalid_policy(bucket_service, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    with pytest.raises(ValidationFailedError) as exc:
        await bucket_service.put_policy(ctx, "photos", {"Statement": "everything"})
    assert exc.value.code == "INVALID_POLICY"


@pytest.mark.asyncio
async def test_versioning_toggle(bucket_service, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    assert await bucket_service.get_versioning(ctx, "photos") == {"enabled": False, "status": "Suspended"}
    await bucket_service.put_versioning(ctx, "photos", True)
    assert await bucket_service.get_versioning(ctx, "photos") == {"enabled": True, "status": "Enabled"}


@pytest.mark.asyncio
async def test_cors_lifecycle(bucket_service, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    with pytest.raises(NotFoundError) as exc:
        await bucket_service.get_cors(ctx, "photos")
    assert exc.value.code == "CORS_NOT_FOUND"

    await bucket_service.put_cors(ctx, "photos", CORS)
    assert await bucket_service.get_cors(ctx, "photos") == CORS
    await bucket_service.delete_cors(ctx, "photos")
    with pytest.raises(NotFoundError):
        await bucket_service.get_cors(ctx, "photos")


@pytest.mark.asyncio
async def test_delete_missing_bucket(bucket_service, ctx):
    with pytest.raises(NotFoundError) as exc:
        await bucket_service.delete_bucket(ctx, "nowhere")
    assert exc.value.code == "BUCKET_NOT_FOUND"


@pytest.mark.asyncio
async def test_existence_is_checked_before_authorization(bucket_service, catalog, store, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    denied, _ = make_services(catalog, store, FakeOracle(deny={"*"}))

    with pytest.raises(NotFoundError):
        await denied.get_bucket(ctx, "nowhere")
    with pytest.raises(AccessDeniedError) as exc:
        await denied.get_bucket(ctx, "photos")
    assert exc.value.reason == "explicit deny"


@pytest.mark.asyncio
async def test_every_outcome_is_logged(bucket_service, catalog, ctx):
    await bucket_service.create_bucket(ctx, "photos")
    with pytest.raises(NotFoundError):
        await bucket_service.get_bucket(ctx, "nowhere")

    outcomes = {(e.action, e.outcome, e.http_status) for e in catalog.query_access_logs()}
    assert outcomes == {("create:bucket", "SUCCESS", 201), ("read:bucket", "NOT_FOUND", 404)}

    logs = await bucket_service.access_logs(ctx, bucket="photos")
    assert [e.action for e in logs] == ["create:bucket"]


@pytest.mark.asyncio
async def test_put_landing_after_emptiness_check_is_a_conflict(
    bucket_service, object_service, catalog, ctx, monkeypatch
):
    await bucket_service.create_bucket(ctx, "photos")
    await object_service.put_object(ctx, "photos", "a.txt", b"hello")
    # The catalog still looks empty when checked; the put commits right after.
    monkeypatch.setattr(catalog, "count_live_versions", lambda bucket_id: 0)

    with pytest.raises(ConflictError) as exc:
        await bucket_service.delete_bucket(ctx, "photos")
    assert exc.value.code == "BUCKET_NOT_EMPTY"

    download = await object_service.get_object(ctx, "photos", "a.txt")
    assert b"".join([chunk async for chunk in download.stream]) == b"hello"
    assert catalog.get_bucket("photos") is not None
