"""FastAPI providers for the services built at startup and kept on ``app.state``."""

from fastapi import Request

from objectstore.bucket_service import BucketService
from objectstore.catalog import MetadataCatalog
from objectstore.object_service import ObjectService
from objectstore.storage import FileSystemStore


def get_bucket_service(request: Request) -> BucketService:
    return request.app.state.bucket_service


def get_object_service(request: Request) -> ObjectService:
    return request.app.state.object_service


def get_catalog(request: Request) -> MetadataCatalog:
    return request.app.state.catalog


def get_store(request: Request) -> FileSystemStore:
    return request.app.state.store
