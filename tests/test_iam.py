import json

import httpx
import pytest

from objectstore.errors import AccessDeniedError
from objectstore.iam import (
    AuthorizationGateway,
    HttpPermissionOracle,
    OracleUnavailableError,
    ResourceRef,
    StaticPolicyOracle,
    build_oracle,
)
from tests.fakes import FakeOracle

OBJECT = ResourceRef("docs", "a.txt")


def test_resource_rendering():
    assert ResourceRef().render() == "bucket:*"
    assert ResourceRef("docs").render() == "bucket:docs"
    assert OBJECT.render() == "bucket:docs/object:a.txt"


class TestStaticPolicyOracle:
    @pytest.fixture
    def oracle(self):
        return StaticPolicyOracle({
            "actors": {
                "alice": [
                    {"id": "alice-own", "effect": "Allow", "actions": ["*"], "resources": ["bucket:alice-*"]},
                    {"id": "no-secrets", "effect": "Deny", "actions": ["read:*"], "resources": ["bucket:alice-secret*"]},
                ],
            },
            "default": [
                {"id": "home", "effect": "Allow", "actions": ["read:object", "write:object"],
                 "resources": ["bucket:home/object:${actor}/*"]},
            ],
        })

    @pytest.mark.asyncio
    async def test_allow_with_wildcards(self, oracle):
        decision = await oracle.check("alice", "write:object", ResourceRef("alice-photos", "x.jpg"), {})
        assert decision.allowed
        assert decision.policy_id == "alice-own"

    @pytest.mark.asyncio
    async def test_deny_overrides_allow(self, oracle):
        decision = await oracle.check("alice", "read:object", ResourceRef("alice-secret", "x"), {})
        assert not decision.allowed
        assert decision.policy_id == "no-secrets"

    @pytest.mark.asyncio
    async def test_actor_variable(self, oracle):
        assert (await oracle.check("bob", "read:object", ResourceRef("home", "bob/notes.txt"), {})).allowed
        assert not (await oracle.check("bob", "read:object", ResourceRef("home", "carol/notes.txt"), {})).allowed

    @pytest.mark.asyncio
    async def test_no_match_denies(self, oracle):
        decision = await oracle.check("bob", "delete:bucket", ResourceRef("alice-photos"), {})
        assert not decision.allowed
        assert decision.reason == "no matching policy"

    def test_from_file(self, tmp_path):
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"default": [{"effect": "Allow", "actions": ["*"], "resources": ["*"]}]}))
        assert isinstance(StaticPolicyOracle.from_file(path), StaticPolicyOracle)


class TestHttpPermissionOracle:
    def oracle(self, handler) -> HttpPermissionOracle:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpPermissionOracle("http://iam.local/", client=client)

    @pytest.mark.asyncio
    async def test_posts_check_and_reads_decision(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"allowed": True, "reason": "ok", "policy": "ReadPolicy"})

        decision = await self.oracle(handler).check("alice", "read:object", OBJECT, {"requestId": "r1"})
        assert decision.allowed
        assert decision.policy_id == "ReadPolicy"
        assert seen["url"] == "http://iam.local/permissions/check"
        assert seen["body"] == {
            "userId": "alice",
            "action": "read:object",
            "resource": "bucket:docs/object:a.txt",
            "context": {"requestId": "r1"},
        }

    @pytest.mark.asyncio
    async def test_wrapped_response(self):
        def handler(request):
            return httpx.Response(200, json={"success": True, "data": {"allowed": False, "reason": "nope"}})

        decision = await self.oracle(handler).check("alice", "read:object", OBJECT, {})
        assert not decision.allowed
        assert decision.reason == "nope"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response",
        [httpx.Response(500), httpx.Response(200, text="not json"), httpx.Response(200, json={"ok": True})],
    )
    async def test_bad_answers_are_unavailable(self, response):
        with pytest.raises(OracleUnavailableError):
            await self.oracle(lambda request: response).check("alice", "read:object", OBJECT, {})

    @pytest.mark.asyncio
    async def test_transport_error_is_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(OracleUnavailableError):
            await self.oracle(handler).check("alice", "read:object", OBJECT, {})


class TestAuthorizationGateway:
    @pytest.mark.asyncio
    async def test_passes_decision_through(self):
        decision = await AuthorizationGateway(FakeOracle()).check("alice", "read:object", OBJECT)
        assert decision.allowed
        assert not decision.unavailable

    @pytest.mark.asyncio
    async def test_timeout_fails_closed(self):
        gateway = AuthorizationGateway(FakeOracle(stall={"*"}, delay=1.0), timeout_seconds=0.05)
        decision = await gateway.check("alice", "write:object", OBJECT)
        assert not decision.allowed
        assert decision.unavailable
        assert decision.reason == "service unavailable"

    @pytest.mark.asyncio
    async def test_oracle_error_fails_closed(self):
        decision = await AuthorizationGateway(FakeOracle(fail={"*"})).check("alice", "write:object", OBJECT)
        assert not decision.allowed
        assert decision.reason == "service unavailable"

    @pytest.mark.asyncio
    async def test_explicit_deny_is_distinct(self):
        gateway = AuthorizationGateway(FakeOracle(deny={"write:object"}))
        decision = await gateway.check("alice", "write:object", OBJECT)
        assert not decision.allowed
        assert not decision.unavailable
        assert decision.reason == "explicit deny"

    @pytest.mark.asyncio
    async def test_require_raises(self):
        gateway = AuthorizationGateway(FakeOracle(deny={"*"}))
        with pytest.raises(AccessDeniedError) as exc:
            await gateway.require("alice", "read:object", OBJECT)
        assert exc.value.policy_id == "TestDenyPolicy"
        assert exc.value.status_code == 403


@pytest.mark.asyncio
async def test_build_oracle_defaults_to_allow_all():
    oracle = build_oracle("", None, 1.0)
    assert (await oracle.check("anyone", "delete:bucket", ResourceRef("x"), {})).allowed


def test_build_oracle_prefers_service_url():
    assert isinstance(build_oracle("http://iam.local", None, 1.0), HttpPermissionOracle)
