from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from authsvc.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    GoogleAuthRequest,
    LoginRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    SessionResponse,
    UpgradeAccountRequest,
    UserProfileResponse,
)
from authsvc.logging import bind_principal
from authsvc.service.auth import AuthContext, Session, UserProfile
from authsvc.service.runtime import get_runtime

router = APIRouter(prefix="/v1/auth", tags=["auth"])


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


def _session_envelope(session: Session) -> Envelope:
    return Envelope(
        status="ok",
        data=SessionResponse.from_session(session).model_dump(by_alias=True, mode="json"),
    )


def _profile_envelope(profile: UserProfile) -> Envelope:
    return Envelope(
        status="ok",
        data=UserProfileResponse.from_profile(profile).model_dump(
            by_alias=True, mode="json"
        ),
    )


def _message_envelope(message: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=message).model_dump())


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)
    bind_principal(ctx.user_id)
    return ctx


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    runtime = get_runtime()
    session = await runtime.auth.register(
        body.email, body.password, body.first_name, body.last_name
    )
    return _session_envelope(session)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest):
    runtime = get_runtime()
    session = await runtime.auth.login(body.email, body.password)
    return _session_envelope(session)


@router.post("/google", response_model=Envelope)
async def login_with_google(body: GoogleAuthRequest):
    """Exchange a Google authorization code and sign the user in.

    Creates the account on first use, and links an existing password account
    that shares the Google email.
    """
    runtime = get_runtime()
    session = await runtime.auth.login_with_external_provider(body.code, body.redirect_uri)
    return _session_envelope(session)


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(body: RefreshTokenRequest):
    runtime = get_runtime()
    session = await runtime.auth.refresh(body.refresh_token)
    return _session_envelope(session)


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.email,
        body.current_password,
        body.new_password,
        body.confirm_password,
    )
    return _message_envelope("Password changed successfully")


@router.get("/me", response_model=Envelope)
async def get_me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(principal.email)
    return _profile_envelope(profile)


@router.post("/logout", response_model=Envelope)
async def logout(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    token = runtime.auth.extract_bearer(authorization)
    if token:
        await runtime.auth.logout(token)
    return _message_envelope("Logged out successfully")


@router.put("/upgrade-account", response_model=Envelope)
async def upgrade_account(
    body: UpgradeAccountRequest, principal: AuthContext = Depends(get_principal)
):
    runtime = get_runtime()
    profile = await runtime.auth.upgrade_tier(principal.email, body.account_tier)
    return _profile_envelope(profile)
