"""Shared fixtures: every test gets its own SQLite catalog and storage root under tmp_path."""

import jwt
import pytest
from fastapi.testclient import TestClient

from objectstore.auth import Actor, RequestContext
from objectstore.catalog import MetadataCatalog
from objectstore.config import Settings
from objectstore.database import build_engine, create_db_and_tables
from objectstore.main import create_app
from objectstore.storage import FileSystemStore
from tests.fakes import FakeOracle, make_services

TEST_SECRET = "test-secret"


def make_token(sub: str = "alice", secret: str = TEST_SECRET, **claims) -> str:
    return jwt.encode({"sub": sub, **claims}, secret, algorithm="HS256")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'catalog.db'}",
        storage_root=str(tmp_path / "blobs"),
        jwt_secret=TEST_SECRET,
        iam_timeout_seconds=0.2,
    )


@pytest.fixture
def engine(settings):
    engine = build_engine(settings.database_url)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def catalog(engine) -> MetadataCatalog:
    return MetadataCatalog(engine)


@pytest.fixture
def store(settings) -> FileSystemStore:
    return FileSystemStore(settings.storage_root)


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def services(catalog, store, oracle):
    return make_services(catalog, store, oracle, timeout=0.2)


@pytest.fixture
def bucket_service(services):
    return services[0]


@pytest.fixture
def object_service(services):
    return services[1]


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(actor=Actor(id="alice"), method="TEST")


@pytest.fixture
def app(settings, oracle):
    return create_app(settings, oracle=oracle)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token()}"}
