import time

import jwt
import pytest

from objectstore.auth import decode_token
from objectstore.errors import UnauthorizedError
from tests.conftest import TEST_SECRET, make_token


def test_subject_becomes_actor():
    actor = decode_token(make_token("alice", username="Alice", roles=["admin"]), TEST_SECRET)
    assert actor.id == "alice"
    assert actor.username == "Alice"
    assert actor.roles == ["admin"]


def test_user_id_claim_is_accepted():
    token = jwt.encode({"userId": "u-123"}, TEST_SECRET, algorithm="HS256")
    assert decode_token(token, TEST_SECRET).id == "u-123"


def test_expired_token():
    token = make_token("alice", exp=int(time.time()) - 60)
    with pytest.raises(UnauthorizedError) as exc:
        decode_token(token, TEST_SECRET)
    assert exc.value.code == "TOKEN_EXPIRED"


def test_wrong_secret():
    with pytest.raises(UnauthorizedError) as exc:
        decode_token(make_token("alice", secret="another-secret"), TEST_SECRET)
    assert exc.value.code == "INVALID_TOKEN"


def test_garbage_token():
    with pytest.raises(UnauthorizedError) as exc:
        decode_token("not.a.jwt", TEST_SECRET)
    assert exc.value.code == "INVALID_TOKEN"


def test_token_without_actor():
    with pytest.raises(UnauthorizedError) as exc:
        decode_token(jwt.encode({"scope": "read"}, TEST_SECRET, algorithm="HS256"), TEST_SECRET)
    assert exc.value.code == "INVALID_TOKEN"
