# apps/api/creativewriter/middleware/auth.py
"""
Authentication Dependencies - CreativeWriter
Verifies HS256 bearer JWTs issued by the identity service and exposes the
caller as an AuthUser. Token issuance lives elsewhere.
"""

import logging
from typing import Annotated, Optional

import jwt
import sentry_sdk
from fastapi import Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from creativewriter.core.config import get_settings
from creativewriter.core.exceptions import AppException

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)  # Optional Bearer, fallback to cookie


class AuthUser(BaseModel):
    """Current authenticated user context"""
    id: str
    email: Optional[str] = None
    roles: list[str] = ["user"]

    @property
    def is_admin(self) -> bool:
        return "admin" in self.roles


def decode_token(token: str) -> AuthUser:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
            options={"require": ["exp", "sub"], "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise AppException("Token expired", status.HTTP_401_UNAUTHORIZED, code="TOKEN_EXPIRED")
    except jwt.InvalidTokenError as e:
        logger.warning(f"Invalid JWT: {e}")
        raise AppException("Invalid token", status.HTTP_401_UNAUTHORIZED, code="INVALID_TOKEN")

    roles = payload.get("roles") or [payload.get("role", "user")]
    return AuthUser(id=str(payload["sub"]), email=payload.get("email"), roles=list(roles))


async def get_optional_user(
    request: Request,
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)] = None,
) -> Optional[AuthUser]:
    """
    Dependency: the caller if a token is present, else None.
    A present-but-invalid token is still rejected with 401.
    """
    token = request.cookies.get("access_token")
    if not token and credentials:
        token = credentials.credentials
    if not token:
        return None

    user = decode_token(token)
    request.state.user_id = user.id
    sentry_sdk.set_user({"id": user.id})
    return user


async def get_current_user(
    user: Annotated[Optional[AuthUser], Depends(get_optional_user)],
) -> AuthUser:
    if user is None:
        raise AppException("Not authenticated", status.HTTP_401_UNAUTHORIZED, code="NOT_AUTHENTICATED")
    return user


async def require_admin(
    user: Annotated[AuthUser, Depends(get_current_user)],
) -> AuthUser:
    """RBAC dependency: admin role required."""
    if not user.is_admin:
        raise AppException(
            "Insufficient permissions. Required role: admin",
            status.HTTP_403_FORBIDDEN,
            code="FORBIDDEN",
        )
    return user
