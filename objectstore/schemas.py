from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class CreateBucketRequest(BaseModel):
    name: str
    region: Optional[str] = None
    versioningEnabled: bool = False
    corsConfiguration: Optional[Dict[str, Any]] = None
    tags: Dict[str, str] = {}


class VersioningRequest(BaseModel):
    enabled: bool


class PolicyRequest(BaseModel):
    policy: Dict[str, Any]


class CorsRequest(BaseModel):
    corsConfiguration: Dict[str, Any]


class CopyObjectRequest(BaseModel):
    copySource: str


# Items stay loosely typed so the lifecycle validation reports INVALID_GRANTS / INVALID_TAG.
class AclRequest(BaseModel):
    grants: List[Any]


class TaggingRequest(BaseModel):
    tagSet: List[Any]
