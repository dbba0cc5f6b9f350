from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path

from teachgram.api.schemas import (
    AccountProfile,
    Envelope,
    LockoutStatus,
    OAuthTokenRequest,
    SessionResponse,
    SigninRequest,
    SignupRequest,
)
from teachgram.config import get_settings
from teachgram.service.auth import SessionDescriptor, SignupData
from teachgram.service.errors import ForbiddenError, NotFoundError
from teachgram.service.runtime import get_runtime
from teachgram.storage.models import ROLE_ADMIN, ROLE_MODERATOR, Account, Principal

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _session_response(session: SessionDescriptor) -> SessionResponse:
    return SessionResponse(
        token=session.token,
        user_id=session.user_id,
        user_name=session.user_name,
        expires_in=session.expires_in_seconds,
    )


def _profile(account: Account) -> AccountProfile:
    return AccountProfile(
        id=account.id,
        username=account.username,
        email=account.email,
        name=account.name,
        phone=account.phone,
        profile_link=account.profile_link,
        description=account.description,
        roles=sorted(account.roles),
        created_at=account.created_at,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return runtime.auth.authenticate_bearer(authorization)


def require_roles(*roles: str) -> Callable:
    """Dependency factory admitting principals that hold any of ``roles``."""

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if not principal.has_any_role(*roles):
            raise ForbiddenError(
                "insufficient role", detail={"required": sorted(roles)}
            )
        return principal

    return _dependency


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    """Create an account and log it in.

    Raises:
        403: If signup is disabled in settings
        409: If the username, email or phone is already taken
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    session = await runtime.auth.signup(
        SignupData(
            username=body.username,
            email=body.email,
            name=body.name,
            password=body.password,
            phone=body.phone,
            profile_link=body.profile_link,
            description=body.description,
        )
    )
    return Envelope(status="ok", data=_session_response(session))


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest):
    runtime = get_runtime()
    session = await runtime.auth.login(body.identifier, body.password)
    return Envelope(status="ok", data=_session_response(session))


@router.post("/auth/oauth2/{provider}", response_model=Envelope, tags=["auth"])
async def oauth_login(body: OAuthTokenRequest, provider: str = Path(..., max_length=32)):
    """Log in with a provider-issued identity token, provisioning on first use."""
    runtime = get_runtime()
    session = await runtime.auth.login_with_provider(provider, body.id_token)
    return Envelope(status="ok", data=_session_response(session))


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def current_account(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = runtime.store.find_by_id(principal.user_id)
    if account is None:
        raise NotFoundError("account not found")
    return Envelope(status="ok", data=_profile(account))


@router.post(
    "/users/login-success/{username}", response_model=Envelope, tags=["users"]
)
async def reset_lockout(
    username: str = Path(..., max_length=50),
    principal: Principal = Depends(require_roles(ROLE_ADMIN, ROLE_MODERATOR)),
):
    """Clear the failed login counter and lock of ``username``."""
    runtime = get_runtime()
    account = runtime.auth.unlock_account(username)
    return Envelope(
        status="ok",
        data=LockoutStatus(
            username=account.username,
            failed_login_attempts=account.failed_login_attempts,
            locked=account.locked,
        ),
    )
