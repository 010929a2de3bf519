import asyncio
import logging
from email.utils import format_datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from objectstore import __version__
from objectstore.auth import RequestContext, get_request_context
from objectstore.bucket_service import BucketService
from objectstore.dependencies import get_bucket_service, get_catalog, get_object_service, get_store
from objectstore.errors import ValidationFailedError, success
from objectstore.listing import MAX_KEYS_LIMIT
from objectstore.models import AccessLogEntry, Bucket, ObjectVersion, as_utc
from objectstore.object_service import ObjectService
from objectstore.schemas import (
    AclRequest,
    CopyObjectRequest,
    CorsRequest,
    CreateBucketRequest,
    PolicyRequest,
    TaggingRequest,
    VersioningRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()

USER_METADATA_PREFIX = "x-amz-meta-"


# --- Helpers ---

def http_date(dt) -> str:
    return format_datetime(as_utc(dt), usegmt=True)


def iso_timestamp(dt) -> str:
    return as_utc(dt).isoformat().replace("+00:00", "Z")


def bucket_to_dict(bucket: Bucket) -> Dict[str, Any]:
    return {
        "name": bucket.name,
        "region": bucket.region,
        "versioningEnabled": bucket.versioning_enabled,
        "corsConfiguration": bucket.cors_configuration,
        "policy": bucket.policy,
        "tags": bucket.tags,
        "ownerId": bucket.owner_id,
        "creationDate": iso_timestamp(bucket.creation_date),
    }


def object_to_dict(bucket_name: str, row: ObjectVersion) -> Dict[str, Any]:
    return {
        "bucket": bucket_name,
        "key": row.key,
        "versionId": row.version_id,
        "isLatest": row.is_latest,
        "size": row.size,
        "etag": row.etag,
        "contentType": row.content_type,
        "lastModified": iso_timestamp(row.last_modified),
        "storageClass": row.storage_class,
        "userMetadata": row.user_metadata,
        "tags": row.tags,
        "ownerId": row.owner_id,
    }


def object_summary(row: ObjectVersion, versions: bool) -> Dict[str, Any]:
    summary = {
        "key": row.key,
        "size": row.size,
        "etag": row.etag,
        "lastModified": iso_timestamp(row.last_modified),
        "storageClass": row.storage_class,
    }
    if versions:
        summary["versionId"] = row.version_id
        summary["isLatest"] = row.is_latest
    return summary


def log_to_dict(entry: AccessLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "actorId": entry.actor_id,
        "action": entry.action,
        "resource": entry.resource,
        "bucket": entry.bucket_name,
        "key": entry.object_key,
        "httpMethod": entry.http_method,
        "outcome": entry.outcome,
        "httpStatus": entry.http_status,
        "allowed": entry.allowed,
        "reason": entry.reason,
        "policy": entry.policy,
        "errorCode": entry.error_code,
        "bytesTransferred": entry.bytes_transferred,
        "requestId": entry.request_id,
        "ipAddress": entry.ip_address,
        "userAgent": entry.user_agent,
        "startedAt": iso_timestamp(entry.started_at),
        "createdAt": iso_timestamp(entry.created_at),
        "durationMs": entry.duration_ms,
    }


def object_headers(row: ObjectVersion) -> Dict[str, str]:
    headers = {
        "Content-Type": row.content_type,
        "Content-Length": str(row.size),
        "ETag": f'"{row.etag}"',
        "Last-Modified": http_date(row.last_modified),
        "x-amz-version-id": row.version_id,
    }
    for name, value in (row.user_metadata or {}).items():
        headers[f"{USER_METADATA_PREFIX}{name}"] = str(value)
    return headers


def user_metadata_from(request: Request) -> Dict[str, str]:
    return {
        name[len(USER_METADATA_PREFIX):]: value
        for name, value in request.headers.items()
        if name.startswith(USER_METADATA_PREFIX) and len(name) > len(USER_METADATA_PREFIX)
    }


# --- System ---

@router.get("/health")
async def health(request: Request):
    catalog = get_catalog(request)
    store = get_store(request)
    try:
        await asyncio.to_thread(catalog.ping)
        catalog_status = "ok"
    except Exception as e:
        logger.error("Health check: catalog unavailable: %s", e)
        catalog_status = "unavailable"
    storage_status = "ok" if await asyncio.to_thread(store.root.is_dir) else "unavailable"

    ok = catalog_status == "ok" and storage_status == "ok"
    body = {
        "status": "ok" if ok else "degraded",
        "version": __version__,
        "storage": storage_status,
        "catalog": catalog_status,
    }
    return JSONResponse(status_code=200 if ok else 503, content=body)


@router.get("/logs/access")
async def access_logs(
    bucket: Optional[str] = None,
    action: Optional[str] = None,
    actor: Optional[str] = None,
    allowed: Optional[bool] = None,
    limit: int = Query(100, ge=1, le=1000),
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    entries = await buckets.access_logs(ctx, bucket, action, actor, allowed, limit)
    return success([log_to_dict(e) for e in entries])


# --- Bucket Operations ---

@router.post("/buckets", status_code=201)
async def create_bucket(
    body: CreateBucketRequest,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    bucket = await buckets.create_bucket(
        ctx,
        body.name,
        region=body.region,
        versioning_enabled=body.versioningEnabled,
        cors_configuration=body.corsConfiguration,
        tags=body.tags,
    )
    return success(bucket_to_dict(bucket))


@router.get("/buckets")
async def list_buckets(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=1000),
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    result = await buckets.list_buckets(ctx, page, limit)
    return success({
        "buckets": [bucket_to_dict(b) for b in result["buckets"]],
        "pagination": result["pagination"],
    })


@router.get("/buckets/{bucket_name}")
async def get_bucket(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    return success(bucket_to_dict(await buckets.get_bucket(ctx, bucket_name)))


@router.delete("/buckets/{bucket_name}", status_code=204)
async def delete_bucket(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    await buckets.delete_bucket(ctx, bucket_name)
    return Response(status_code=204)


@router.get("/buckets/{bucket_name}/policy")
async def get_bucket_policy(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    return success(await buckets.get_policy(ctx, bucket_name))


@router.put("/buckets/{bucket_name}/policy")
async def put_bucket_policy(
    bucket_name: str,
    body: PolicyRequest,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    bucket = await buckets.put_policy(ctx, bucket_name, body.policy)
    return success(bucket_to_dict(bucket))


@router.delete("/buckets/{bucket_name}/policy", status_code=204)
async def delete_bucket_policy(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    await buckets.delete_policy(ctx, bucket_name)
    return Response(status_code=204)


@router.get("/buckets/{bucket_name}/versioning")
async def get_bucket_versioning(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    return success(await buckets.get_versioning(ctx, bucket_name))


@router.put("/buckets/{bucket_name}/versioning")
async def put_bucket_versioning(
    bucket_name: str,
    body: VersioningRequest,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    bucket = await buckets.put_versioning(ctx, bucket_name, body.enabled)
    return success(bucket_to_dict(bucket))


@router.get("/buckets/{bucket_name}/cors")
async def get_bucket_cors(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    return success(await buckets.get_cors(ctx, bucket_name))


@router.put("/buckets/{bucket_name}/cors")
async def put_bucket_cors(
    bucket_name: str,
    body: CorsRequest,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    bucket = await buckets.put_cors(ctx, bucket_name, body.corsConfiguration)
    return success(bucket_to_dict(bucket))


@router.delete("/buckets/{bucket_name}/cors", status_code=204)
async def delete_bucket_cors(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    await buckets.delete_cors(ctx, bucket_name)
    return Response(status_code=204)


@router.post("/buckets/{bucket_name}/sweep")
async def sweep_bucket(
    bucket_name: str,
    ctx: RequestContext = Depends(get_request_context),
    buckets: BucketService = Depends(get_bucket_service),
):
    removed = await buckets.sweep(ctx, bucket_name)
    return success({
        "removed": [{"key": r.key, "versionId": r.version_id} for r in removed],
        "count": len(removed),
    })


# --- Object Operations ---

@router.get("/objects/{bucket_name}")
async def list_objects(
    bucket_name: str,
    prefix: str = "",
    delimiter: str = "",
    marker: str = "",
    maxKeys: int = Query(MAX_KEYS_LIMIT, ge=1, le=MAX_KEYS_LIMIT),
    versions: bool = False,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    page = await objects.list_objects(ctx, bucket_name, prefix, delimiter, marker, maxKeys, versions)
    return success({
        "contents": [object_summary(row, versions) for row in page.entries],
        "commonPrefixes": page.common_prefixes,
        "isTruncated": page.is_truncated,
        "nextMarker": page.next_marker,
    })


@router.post("/objects/{bucket_name}")
async def initiate_multipart_upload(
    bucket_name: str,
    request: Request,
    key: str = Query(...),
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    if "uploads" not in request.query_params:
        raise ValidationFailedError("POST on a bucket requires the ?uploads parameter", "MISSING_UPLOADS_PARAM")
    row = await objects.initiate_multipart_upload(
        ctx, bucket_name, key,
        content_type=request.headers.get("content-type"),
        user_metadata=user_metadata_from(request),
    )
    return success({"bucket": bucket_name, "key": row.key, "uploadId": row.upload_id})


# Sub-resource routes come first so ".../acl" and ".../tagging" are not taken as part of the key.

@router.get("/objects/{bucket_name}/{key:path}/acl")
async def get_object_acl(
    bucket_name: str,
    key: str,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    return success(await objects.get_acl(ctx, bucket_name, key))


@router.put("/objects/{bucket_name}/{key:path}/acl")
async def put_object_acl(
    bucket_name: str,
    key: str,
    body: AclRequest,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    return success(await objects.put_acl(ctx, bucket_name, key, body.grants))


@router.get("/objects/{bucket_name}/{key:path}/tagging")
async def get_object_tagging(
    bucket_name: str,
    key: str,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    return success(await objects.get_tagging(ctx, bucket_name, key))


@router.put("/objects/{bucket_name}/{key:path}/tagging")
async def put_object_tagging(
    bucket_name: str,
    key: str,
    body: TaggingRequest,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    return success(await objects.put_tagging(ctx, bucket_name, key, body.tagSet))


@router.head("/objects/{bucket_name}/{key:path}")
async def head_object(
    bucket_name: str,
    key: str,
    versionId: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    row = await objects.get_object_metadata(ctx, bucket_name, key, versionId)
    headers = object_headers(row)
    headers["x-amz-version-status"] = "latest" if row.is_latest else "previous"
    return Response(status_code=200, headers=headers)


@router.get("/objects/{bucket_name}/{key:path}")
async def get_object(
    bucket_name: str,
    key: str,
    versionId: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    download = await objects.get_object(ctx, bucket_name, key, versionId)
    return StreamingResponse(
        content=download.stream,
        headers=object_headers(download.version),
        media_type=download.version.content_type,
    )


@router.put("/objects/{bucket_name}/{key:path}", status_code=201)
async def put_object(
    bucket_name: str,
    key: str,
    request: Request,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    # The raw body is streamed into the store; S3 clients send bytes, not forms.
    row = await objects.put_object(
        ctx,
        bucket_name,
        key,
        request.stream(),
        content_type=request.headers.get("content-type"),
        user_metadata=user_metadata_from(request),
    )
    return JSONResponse(
        status_code=201,
        content=success(object_to_dict(bucket_name, row)),
        headers={"ETag": f'"{row.etag}"', "x-amz-version-id": row.version_id},
    )


@router.post("/objects/{bucket_name}/{key:path}", status_code=201)
async def copy_object(
    bucket_name: str,
    key: str,
    body: CopyObjectRequest,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    result = await objects.copy_object(ctx, bucket_name, key, body.copySource)
    data = object_to_dict(bucket_name, result.version)
    data["copySource"] = {
        "bucket": result.source_bucket,
        "key": result.source_key,
        "versionId": result.source_version_id,
    }
    return JSONResponse(
        status_code=201,
        content=success(data),
        headers={"ETag": f'"{result.version.etag}"', "x-amz-version-id": result.version.version_id},
    )


@router.delete("/objects/{bucket_name}/{key:path}", status_code=204)
async def delete_object(
    bucket_name: str,
    key: str,
    versionId: Optional[str] = None,
    ctx: RequestContext = Depends(get_request_context),
    objects: ObjectService = Depends(get_object_service),
):
    row = await objects.delete_object(ctx, bucket_name, key, versionId)
    return Response(status_code=204, headers={"x-amz-version-id": row.version_id})
