"""Input validation for bucket names, object keys and the JSON documents attached to them."""

import ipaddress
import re
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, unquote

from objectstore.errors import ValidationFailedError

BUCKET_NAME_MIN = 3
BUCKET_NAME_MAX = 63
KEY_MAX_BYTES = 1024

ACL_PERMISSIONS = ("FULL_CONTROL", "READ", "WRITE", "READ_ACP", "WRITE_ACP")
CORS_METHODS = ("GET", "PUT", "POST", "DELETE", "HEAD")

_BUCKET_NAME = re.compile(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_COPY_SOURCE = re.compile(r"^/([^/]+)/(.+)$")


def validate_bucket_name(name: str) -> str:
    if not isinstance(name, str) or not BUCKET_NAME_MIN <= len(name) <= BUCKET_NAME_MAX:
        raise ValidationFailedError(
            f"Bucket name must be between {BUCKET_NAME_MIN} and {BUCKET_NAME_MAX} characters",
            "INVALID_BUCKET_NAME",
        )
    if not _BUCKET_NAME.match(name):
        raise ValidationFailedError(
            "Bucket name may only contain lowercase letters, digits, dots and hyphens, "
            "and must start and end with a letter or digit",
            "INVALID_BUCKET_NAME",
        )
    if ".." in name or ".-" in name or "-." in name:
        raise ValidationFailedError(
            "Bucket name must not contain consecutive dots or a dot next to a hyphen",
            "INVALID_BUCKET_NAME",
        )
    try:
        ipaddress.IPv4Address(name)
    except ValueError:
        return name
    raise ValidationFailedError("Bucket name must not be formatted as an IP address", "INVALID_BUCKET_NAME")


def validate_object_key(key: str) -> str:
    if not key:
        raise ValidationFailedError("Object key must not be empty", "INVALID_OBJECT_KEY")
    if len(key.encode("utf-8")) > KEY_MAX_BYTES:
        raise ValidationFailedError(f"Object key exceeds {KEY_MAX_BYTES} bytes", "INVALID_OBJECT_KEY")
    if _CONTROL_CHARS.search(key):
        raise ValidationFailedError("Object key must not contain control characters", "INVALID_OBJECT_KEY")
    if key.startswith("/"):
        raise ValidationFailedError("Object key must not start with '/'", "INVALID_OBJECT_KEY")
    return key


def validate_tag_set(tag_set: Any) -> Dict[str, str]:
    """Turn a ``[{key, value}]`` list into a tag map; every key and value must be a non-empty string."""
    if not isinstance(tag_set, list):
        raise ValidationFailedError("tagSet must be a list of {key, value} objects", "INVALID_TAGSET")
    tags: Dict[str, str] = {}
    for tag in tag_set:
        if not isinstance(tag, dict):
            raise ValidationFailedError("Each tag must be an object with key and value", "INVALID_TAG")
        key, value = tag.get("key"), tag.get("value")
        if not isinstance(key, str) or not key or not isinstance(value, str) or not value:
            raise ValidationFailedError("Each tag requires a non-empty key and value", "INVALID_TAG")
        tags[key] = value
    return tags


def validate_grants(grants: Any) -> List[Dict[str, Any]]:
    if not isinstance(grants, list):
        raise ValidationFailedError("grants must be a list", "INVALID_GRANTS")
    for grant in grants:
        if not isinstance(grant, dict):
            raise ValidationFailedError("Each grant must be an object", "INVALID_GRANTS")
        grantee = grant.get("grantee")
        if not isinstance(grantee, dict) or not any(grantee.get(f) for f in ("id", "uri", "emailAddress")):
            raise ValidationFailedError("Each grant needs a grantee with an id, uri or emailAddress", "INVALID_GRANTS")
        if grant.get("permission") not in ACL_PERMISSIONS:
            raise ValidationFailedError(
                f"Grant permission must be one of {', '.join(ACL_PERMISSIONS)}", "INVALID_GRANTS"
            )
    return grants


def parse_copy_source(copy_source: str) -> Tuple[str, str, Optional[str]]:
    """Split ``/bucket/key[?versionId=id]`` into its parts."""
    if not isinstance(copy_source, str):
        raise ValidationFailedError("copySource must be a string", "INVALID_COPY_SOURCE")
    path, _, query = copy_source.partition("?")
    match = _COPY_SOURCE.match(unquote(path))
    if not match:
        raise ValidationFailedError("copySource must look like /bucket/key", "INVALID_COPY_SOURCE")
    version_id = None
    if query:
        values = parse_qs(query).get("versionId")
        if not values or not values[0]:
            raise ValidationFailedError("copySource query only accepts versionId=<id>", "INVALID_COPY_SOURCE")
        version_id = values[0]
    return match.group(1), match.group(2), version_id


def validate_policy(policy: Any) -> Dict[str, Any]:
    if not isinstance(policy, dict):
        raise ValidationFailedError("Policy must be a JSON object", "INVALID_POLICY")
    statements = policy.get("Statement")
    if not isinstance(statements, list) or not statements:
        raise ValidationFailedError("Policy must contain a non-empty Statement list", "INVALID_POLICY")
    for statement in statements:
        if not isinstance(statement, dict) or statement.get("Effect") not in ("Allow", "Deny"):
            raise ValidationFailedError("Each policy statement needs Effect Allow or Deny", "INVALID_POLICY")
    return policy


def validate_cors(cors: Any) -> Dict[str, Any]:
    if not isinstance(cors, dict):
        raise ValidationFailedError("CORS configuration must be a JSON object", "INVALID_CORS")
    rules = cors.get("CORSRules")
    if not isinstance(rules, list) or not rules:
        raise ValidationFailedError("CORS configuration must contain a non-empty CORSRules list", "INVALID_CORS")
    for rule in rules:
        if not isinstance(rule, dict):
            raise ValidationFailedError("Each CORS rule must be an object", "INVALID_CORS")
        methods = rule.get("AllowedMethods")
        origins = rule.get("AllowedOrigins")
        if not isinstance(methods, list) or not methods or any(m not in CORS_METHODS for m in methods):
            raise ValidationFailedError(
                f"AllowedMethods must list one or more of {', '.join(CORS_METHODS)}", "INVALID_CORS"
            )
        if not isinstance(origins, list) or not origins or not all(isinstance(o, str) and o for o in origins):
            raise ValidationFailedError("AllowedOrigins must list one or more origins", "INVALID_CORS")
    return cors
