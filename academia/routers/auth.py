from fastapi import APIRouter, Depends

from ..application.auth_rate_limit import LoginLimiter
from ..dependencies import get_credential_verifier, get_login_limiter
from ..schemas.auth import LoginRequest, TokenResponse
from ..use_cases.auth.login_user import CredentialVerifier, login_user

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    verifier: CredentialVerifier = Depends(get_credential_verifier),
    limiter: LoginLimiter = Depends(get_login_limiter),
) -> TokenResponse:
    tokens = await login_user(verifier, limiter, payload.email, payload.password)
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
    )
