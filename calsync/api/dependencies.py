# ============================================================================
# FILE: calsync/api/dependencies.py
# JWT authentication and service wiring for the HTTP layer
# ============================================================================
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime, timedelta, timezone
from jose import JWTError, jwt
from uuid import UUID
import redis.asyncio as aioredis

from calsync.config.database import get_db
from calsync.config.redis import get_redis
from calsync.config.settings import settings
from calsync.core.permissions import Actor
from calsync.services.calendar.providers import (
    CalendarProviderRegistry,
    build_provider_registry,
    build_vault,
    read_denial_policy,
)
from calsync.services.credentials.credential_vault import CredentialVault
from calsync.services.integration.integration_service import CalendarIntegrationService
from calsync.services.oauth.oauth_flow_service import CalendarOAuthService
from calsync.services.sync.calendar_sync_service import CalendarSyncService

# JWT security for user authentication
jwt_security = HTTPBearer(
    scheme_name="JWT Bearer Token",
    description="Enter your JWT access token"
)


# ============================================================================
# JWT Token Functions
# ============================================================================

def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode; "sub" is the user id, "permissions" a list of capabilities
        expires_delta: Lifetime of the token (default 30 minutes)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def verify_access_token(token: str) -> dict:
    """Decode a dashboard access token; 401 when it is invalid, expired or not an access token"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        raise _unauthorized(f"Could not validate credentials: {e}")

    if payload.get("type") != "access":
        raise _unauthorized("Invalid token type")
    return payload


async def get_current_actor(
        credentials: HTTPAuthorizationCredentials = Depends(jwt_security),
) -> Actor:
    """
    Dependency resolving the bearer token into the acting identity.

    The "permissions" claim carries capabilities such as
    manage_all_calendar_integrations; absent means a plain user.
    """
    payload = verify_access_token(credentials.credentials)

    try:
        user_id = UUID(str(payload["sub"]))
    except (KeyError, ValueError):
        raise _unauthorized("Invalid user ID in token")

    return Actor.for_user(user_id, payload.get("permissions") or [])


# ============================================================================
# Service wiring
# ============================================================================

def get_vault(db: Session = Depends(get_db)) -> CredentialVault:
    return build_vault(db, settings)


def get_providers(vault: CredentialVault = Depends(get_vault)) -> CalendarProviderRegistry:
    return build_provider_registry(vault, settings)


def get_integration_service(
        db: Session = Depends(get_db),
        vault: CredentialVault = Depends(get_vault),
        providers: CalendarProviderRegistry = Depends(get_providers),
) -> CalendarIntegrationService:
    return CalendarIntegrationService(db, vault, providers)


def get_sync_service(
        db: Session = Depends(get_db),
        providers: CalendarProviderRegistry = Depends(get_providers),
) -> CalendarSyncService:
    return CalendarSyncService(
        db,
        providers,
        read_denial_policy=read_denial_policy(settings),
        batch_size=settings.SYNC_BATCH_SIZE,
        error_disable_threshold=settings.SYNC_ERROR_DISABLE_THRESHOLD,
        retention_days=settings.EVENT_RETENTION_DAYS,
    )


def get_oauth_service(
        redis_client: aioredis.Redis = Depends(get_redis),
        providers: CalendarProviderRegistry = Depends(get_providers),
        integrations: CalendarIntegrationService = Depends(get_integration_service),
) -> CalendarOAuthService:
    return CalendarOAuthService(
        redis_client,
        providers,
        integrations,
        secret_key=settings.SECRET_KEY,
        state_ttl=settings.OAUTH_STATE_TTL_SECONDS,
        user_index_ttl=settings.OAUTH_USER_INDEX_TTL_SECONDS,
        enforce_origin_ip=settings.OAUTH_ENFORCE_ORIGIN_IP,
    )
