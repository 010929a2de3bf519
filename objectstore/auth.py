import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jwt
from fastapi import Depends, Header, Request

from objectstore.config import Settings
from objectstore.errors import UnauthorizedError

logger = logging.getLogger(__name__)

# Claims that may carry the actor id, in order of preference.
ACTOR_CLAIMS = ("sub", "userId", "id")


@dataclass
class Actor:
    id: str
    username: Optional[str] = None
    roles: List[str] = field(default_factory=list)


@dataclass
class RequestContext:
    """Who is calling and from where; passed from the HTTP layer into every lifecycle operation."""

    actor: Actor
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    method: Optional[str] = None

    def oracle_context(self) -> Dict[str, Any]:
        return {"requestId": self.request_id, "ip": self.ip_address, "method": self.method}


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Actor:
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token has expired", "TOKEN_EXPIRED")
    except jwt.InvalidTokenError as e:
        logger.info("Rejected bearer token: %s", type(e).__name__)
        raise UnauthorizedError("Invalid token", "INVALID_TOKEN")

    actor_id = next((str(claims[c]) for c in ACTOR_CLAIMS if claims.get(c)), None)
    if actor_id is None:
        raise UnauthorizedError("Token carries no actor id", "INVALID_TOKEN")
    roles = claims.get("roles") or []
    return Actor(
        id=actor_id,
        username=claims.get("username"),
        roles=[str(r) for r in roles] if isinstance(roles, list) else [],
    )


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


async def get_current_actor(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> Actor:
    if not authorization:
        raise UnauthorizedError("Missing bearer token", "MISSING_TOKEN")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise UnauthorizedError("Authorization header must be 'Bearer <token>'", "MISSING_TOKEN")
    return decode_token(token.strip(), settings.jwt_secret, settings.jwt_algorithm)


async def get_request_context(request: Request, actor: Actor = Depends(get_current_actor)) -> RequestContext:
    return RequestContext(
        actor=actor,
        request_id=request.headers.get("x-request-id") or uuid.uuid4().hex,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        method=request.method,
    )
