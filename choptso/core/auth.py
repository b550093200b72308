"""
Bearer token validation.

Tokens are issued elsewhere and signed with a shared secret (HS256). We only
validate them and read the claims:

    sub    user id
    name   display name (falls back to sub)
    scope  space-separated scopes; ADMIN_SCOPE grants admin rights
    type   optional; refresh tokens are rejected
"""

from typing import List

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel

from choptso.core.logging_config import get_logger
from choptso.config import settings

logger = get_logger(__name__)

security = HTTPBearer()


class Actor(BaseModel):
    """The authenticated user behind a request."""
    user_id: str
    display_name: str
    scopes: List[str] = []

    @property
    def is_admin(self) -> bool:
        return settings.ADMIN_SCOPE in self.scopes

    @classmethod
    def from_jwt_payload(cls, payload: dict) -> "Actor":
        return cls(
            user_id=payload["sub"],
            display_name=payload.get("name") or payload["sub"],
            scopes=payload.get("scope", "").split(),
        )


def decode_token_string(token: str) -> Actor:
    """
    Decode and validate a raw JWT string.

    Used directly for WebSocket query-param authentication.

    Raises:
        jwt.InvalidTokenError: Invalid signature, expired, missing sub, or refresh token
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["sub"], "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise
    except jwt.InvalidTokenError as e:
        logger.warning("token_invalid", error=str(e))
        raise

    if payload.get("type", "access") != "access":
        logger.warning("token_wrong_type", token_type=payload.get("type"), expected="access")
        raise jwt.InvalidTokenError("Invalid token type")

    return Actor.from_jwt_payload(payload)


def get_current_actor(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> Actor:
    """
    FastAPI dependency: the authenticated actor.

    Raises:
        HTTPException: 401 if the token is invalid or expired
    """
    try:
        actor = decode_token_string(credentials.credentials)
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug("token_validated", user_id=actor.user_id, is_admin=actor.is_admin)
    return actor
