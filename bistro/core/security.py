"""
Request-scoped identity.

The authentication provider issues HS256 access tokens whose ``sub`` claim
is a user id. Each request resolves its token into a ``RequestContext``
which is handed explicitly to every service call; nothing about the
caller is kept in module state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from bistro.core.config import get_settings
from bistro.core.errors import AuthenticationError, AuthorizationError
from bistro.database import get_db
from bistro.models import Role, STAFF_ROLES, User, UserStatus

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    """Authenticated caller for the duration of one request."""
    user_id: str
    role: Role
    email: str
    name: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def has_role(self, *roles: Role) -> bool:
        return self.role in roles


def ensure_role(ctx: RequestContext, *roles: Role) -> None:
    """Raise AuthorizationError unless the caller holds one of ``roles``."""
    if ctx.role not in roles:
        allowed = ", ".join(r.value for r in roles)
        raise AuthorizationError(f"Unauthorized: requires one of {allowed}")


def context_for(user: User) -> RequestContext:
    return RequestContext(
        user_id=user.id,
        role=user.role,
        email=user.email,
        name=user.name,
    )


# =============================================================================
# TOKENS
# =============================================================================

def create_access_token(subject: str, expires_minutes: Optional[int] = None) -> str:
    settings = get_settings()
    ttl = expires_minutes or settings.access_token_ttl_minutes
    now = datetime.now(timezone.utc)
    payload = {"sub": subject, "iat": now, "exp": now + timedelta(minutes=ttl)}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[dict]:
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

async def get_current_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> RequestContext:
    """Resolve the bearer token into an active user's context."""
    if credentials is None:
        raise AuthenticationError("Unauthorized: sign in required")

    claims = decode_access_token(credentials.credentials)
    if not claims or not claims.get("sub"):
        raise AuthenticationError("Unauthorized: invalid or expired token")

    user = await db.get(User, claims["sub"])
    if user is None:
        raise AuthenticationError("User not found")
    if user.status != UserStatus.ACTIVE:
        raise AuthorizationError("Account is not active")

    return context_for(user)


def require_roles(*roles: Role):
    """Build a dependency that only admits callers holding one of ``roles``."""

    async def dependency(ctx: RequestContext = Depends(get_current_context)) -> RequestContext:
        ensure_role(ctx, *roles)
        return ctx

    return dependency
