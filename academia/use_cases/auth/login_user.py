import logging
import math
from dataclasses import dataclass
from typing import Protocol

import httpx

from ...application.auth_rate_limit import LoginLimiter, make_login_key
from ...errors import AppError, AuthError, RateLimitedError

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None


class InvalidCredentialsError(Exception):
    """Raised by a verifier when the identity provider rejects the credentials."""


class CredentialVerifier(Protocol):
    async def verify(self, email: str, password: str) -> IssuedTokens:
        ...


class AuthServiceUnavailableError(AppError):
    code = "AUTH_SERVICE_UNAVAILABLE"
    message = "Authentication service unavailable"
    status_code = 503


class HttpCredentialVerifier:
    """Password grant against the external identity provider."""

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        if not base_url:
            raise ValueError("AUTH_SERVICE_URL environment variable must be set")
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["apikey"] = self._api_key
        return headers

    async def _post(self, client: httpx.AsyncClient, email: str, password: str) -> httpx.Response:
        return await client.post(
            f"{self._base_url}/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
            headers=self._headers(),
        )

    async def verify(self, email: str, password: str) -> IssuedTokens:
        try:
            if self._client is not None:
                response = await self._post(self._client, email, password)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, email, password)
        except httpx.HTTPError as exc:
            logger.error("operation=login action=verify error=%s", exc)
            raise AuthServiceUnavailableError() from exc

        if response.status_code in {400, 401, 403}:
            raise InvalidCredentialsError()
        if response.status_code >= 400:
            logger.error(
                "operation=login action=verify status=%d", response.status_code
            )
            raise AuthServiceUnavailableError()

        payload = response.json()
        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise AuthServiceUnavailableError("Authentication service returned no token")
        return IssuedTokens(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_in=payload.get("expires_in"),
        )


async def login_user(
    verifier: CredentialVerifier,
    limiter: LoginLimiter,
    email: str,
    password: str,
) -> IssuedTokens:
    key = make_login_key(email)
    attempt = await limiter.check(key)
    if not attempt.allowed:
        logger.warning(
            "operation=login action=limited wait_seconds=%.1f", attempt.wait_seconds
        )
        raise RateLimitedError(
            attempt.message,
            details={"retry_after_seconds": max(0, math.ceil(attempt.wait_seconds))},
        )

    try:
        tokens = await verifier.verify(email.strip().lower(), password)
    except InvalidCredentialsError:
        await limiter.record_failure(key)
        remaining = await limiter.remaining(key)
        raise AuthError(
            INVALID_CREDENTIALS_MESSAGE, details={"remaining_attempts": remaining}
        ) from None

    await limiter.reset(key)
    return tokens
