import logging

import pytest

from objectstore.audit import AccessAuditTrail
from objectstore.auth import Actor, RequestContext
from objectstore.errors import AccessDeniedError, NotFoundError
from objectstore.iam import Decision, ResourceRef
from objectstore.models import AccessLogEntry
from tests.fakes import BrokenCatalog

RESOURCE = ResourceRef("docs", "a.txt")


@pytest.fixture
def trail(catalog):
    return AccessAuditTrail(catalog)


@pytest.mark.asyncio
async def test_success_is_recorded(trail, catalog, ctx):
    async with trail.track(ctx, "read:object", RESOURCE) as scope:
        scope.decision = Decision(True, "allowed", "ReadPolicy")
        scope.bytes_transferred = 42

    [entry] = catalog.query_access_logs()
    assert entry.outcome == "SUCCESS"
    assert entry.allowed is True
    assert entry.policy == "ReadPolicy"
    assert entry.http_status == 200
    assert entry.bytes_transferred == 42
    assert entry.resource == "bucket:docs/object:a.txt"
    assert entry.actor_id == "alice"


@pytest.mark.asyncio
async def test_denial_is_recorded_and_reraised(trail, catalog, ctx):
    with pytest.raises(AccessDeniedError):
        async with trail.track(ctx, "write:object", RESOURCE):
            raise AccessDeniedError("service unavailable")

    [entry] = catalog.query_access_logs()
    assert entry.outcome == "DENIED"
    assert entry.allowed is False
    assert entry.http_status == 403
    assert entry.reason == "service unavailable"


@pytest.mark.asyncio
async def test_not_found_keeps_the_decision(trail, catalog, ctx):
    with pytest.raises(NotFoundError):
        async with trail.track(ctx, "read:object", RESOURCE) as scope:
            scope.decision = Decision(True, "allowed")
            raise NotFoundError("Object docs/a.txt not found", "OBJECT_NOT_FOUND")

    [entry] = catalog.query_access_logs()
    assert entry.outcome == "NOT_FOUND"
    assert entry.allowed is True
    assert entry.error_code == "OBJECT_NOT_FOUND"


@pytest.mark.asyncio
async def test_log_failure_never_reaches_caller(caplog):
    trail = AccessAuditTrail(BrokenCatalog())
    ctx = RequestContext(actor=Actor(id="alice"))
    with caplog.at_level(logging.ERROR, logger="objectstore.audit"):
        async with trail.track(ctx, "read:object", RESOURCE) as scope:
            scope.decision = Decision(True)
        await trail.record(AccessLogEntry(action="x", resource="y", outcome="SUCCESS", http_status=200, allowed=True))
    assert "Failed to write access log" in caplog.text
