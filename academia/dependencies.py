import logging
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from .application.auth_rate_limit import LoginLimiter
from .config import settings
from .crud.analytics import AnalyticsRepository
from .crud.viewing_session import ViewingSessionRepository
from .database import AsyncSessionLocal, get_session
from .domain.policy import ConcurrencyPolicy
from .domain.ports.analytics import AnalyticsRepository as AnalyticsRepositoryPort
from .domain.ports.viewing_session import (
    ViewingSessionRepository as ViewingSessionRepositoryPort,
    ViewingSessionRepositoryFactory,
)
from .models.profile import Profile
from .security.token_inspection import (
    ExpiredTokenError,
    InvalidTokenError,
    subject_profile_id,
    validate_access_token,
)
from .use_cases.auth.login_user import CredentialVerifier, HttpCredentialVerifier

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


def get_viewing_session_port(
    db: AsyncSession = Depends(get_db),
) -> ViewingSessionRepositoryPort:
    return ViewingSessionRepository(db)


def get_viewing_session_port_factory() -> ViewingSessionRepositoryFactory:
    @asynccontextmanager
    async def factory() -> AsyncIterator[ViewingSessionRepositoryPort]:
        async with AsyncSessionLocal() as session:
            yield ViewingSessionRepository(session)

    return factory


def get_analytics_port(db: AsyncSession = Depends(get_db)) -> AnalyticsRepositoryPort:
    return AnalyticsRepository(db)


def get_concurrency_policy() -> ConcurrencyPolicy:
    return ConcurrencyPolicy(
        max_concurrent_sessions=settings.tracking_max_concurrent_sessions,
        warn_concurrent_sessions=settings.tracking_warn_concurrent_sessions,
        max_distinct_ips=settings.tracking_max_distinct_ips,
        max_distinct_devices=settings.tracking_max_distinct_devices,
    )


def get_login_limiter(request: Request) -> LoginLimiter:
    limiter = getattr(request.app.state, "login_limiter", None)
    if limiter is None:
        raise RuntimeError("Login limiter is not configured")
    return limiter


def get_credential_verifier() -> CredentialVerifier:
    return HttpCredentialVerifier(
        settings.auth_service_url, settings.auth_service_api_key
    )


async def get_current_profile(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Profile:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated"
        )

    try:
        payload = validate_access_token(credentials.credentials)
        profile_id = subject_profile_id(payload)
    except ExpiredTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired"
        ) from None
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token"
        ) from None

    profile = await db.get(Profile, profile_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="Profile not found"
        )
    return profile


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None
