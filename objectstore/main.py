import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from objectstore import __version__
from objectstore.audit import AccessAuditTrail
from objectstore.bucket_service import BucketService
from objectstore.catalog import MetadataCatalog
from objectstore.config import Settings, load_settings
from objectstore.database import build_engine, create_db_and_tables
from objectstore.errors import register_exception_handlers
from objectstore.iam import AuthorizationGateway, PermissionOracle, build_oracle
from objectstore.locks import KeyedLocks
from objectstore.logging_config import configure_logging
from objectstore.object_service import ObjectService
from objectstore.s3_routes import router as s3_routes
from objectstore.storage import FileSystemStore

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    oracle: Optional[PermissionOracle] = None,
    store: Optional[FileSystemStore] = None,
) -> FastAPI:
    """Wire the services together. Tests pass their own settings, oracle or store."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        if settings.uses_dev_secret:
            logger.warning("OBJECTSTORE_JWT_SECRET is not set; using the development secret")
        create_db_and_tables(app.state.engine)
        await app.state.store.recover_partials()
        logger.info("Object store ready: storage=%s catalog=%s", app.state.store.root, settings.database_url)
        yield
        await app.state.gateway.aclose()
        app.state.engine.dispose()

    app = FastAPI(title="Python ObjectStorage S3", version=__version__, lifespan=lifespan)

    engine = build_engine(settings.database_url)
    catalog = MetadataCatalog(engine)
    store = store or FileSystemStore(settings.storage_root)
    oracle = oracle or build_oracle(settings.iam_url, settings.policy_file, settings.iam_timeout_seconds)
    gateway = AuthorizationGateway(oracle, settings.iam_timeout_seconds)
    audit = AccessAuditTrail(catalog)
    locks = KeyedLocks()
    bucket_service = BucketService(catalog, store, gateway, audit, locks, settings.default_region)

    app.state.settings = settings
    app.state.engine = engine
    app.state.catalog = catalog
    app.state.store = store
    app.state.gateway = gateway
    app.state.bucket_service = bucket_service
    app.state.object_service = ObjectService(
        catalog, store, gateway, audit, locks, bucket_service, settings.catalog_retries
    )

    register_exception_handlers(app)
    app.include_router(s3_routes)
    return app


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
