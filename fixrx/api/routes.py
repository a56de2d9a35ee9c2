from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Path, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from fixrx.api.schemas import (
    Auth0CallbackRequest,
    EmailRequest,
    Envelope,
    LoginRequest,
    PhoneRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionResponse,
    SocialLoginRequest,
    TempUserData,
    TokenRequest,
    TokensResponse,
    UserResponse,
    UserStatusUpdateRequest,
    VerifyPhoneRequest,
)
from fixrx.logging import get_logger
from fixrx.service.auth import AuthContext, Authenticated, AuthOutcome, NeedsRoleSelection
from fixrx.service.runtime import Runtime
from fixrx.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

ROLE_SELECTION_MESSAGE = "Please select your role to complete registration"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _ok(message: str, data: Any = None, *, status_code: int = 200) -> JSONResponse:
    envelope = Envelope(success=True, message=message, data=data)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(envelope.to_payload()))


def _session_data(outcome: Authenticated) -> dict:
    return SessionResponse(
        user=UserResponse.from_user(outcome.user),
        tokens=TokensResponse.from_pair(outcome.tokens),
    ).model_dump(by_alias=True)


def _outcome_response(outcome: AuthOutcome, success_message: str) -> JSONResponse:
    if isinstance(outcome, NeedsRoleSelection):
        envelope = Envelope(
            success=True,
            message=ROLE_SELECTION_MESSAGE,
            needs_role_selection=True,
            temp_user_data=TempUserData.from_draft(outcome.profile_draft).model_dump(by_alias=True),
        )
        return JSONResponse(status_code=200, content=jsonable_encoder(envelope.to_payload()))
    if isinstance(outcome, Authenticated):
        return _ok(success_message, _session_data(outcome))
    raise TypeError(f"unhandled auth outcome: {type(outcome).__name__}")


async def _enforce_rate_limit(runtime: Runtime, request: Request, identity: Optional[str]) -> None:
    """Count one authentication attempt for (client IP, identity); raises 429 when over."""
    await runtime.rate_limiter.enforce(_client_ip(request), identity)


async def get_current_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return await runtime.auth.authenticate(authorization)


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    if not authorization:
        return None
    return await runtime.auth.authenticate(authorization)


async def get_admin_user(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    return runtime.auth.require_role(principal, UserRole.ADMIN)


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """Create a local account and start a session.

    Raises:
        400: If the password fails the strength policy
        409: If the email or phone is already registered
        429: If too many attempts were made for this identity
    """
    await _enforce_rate_limit(runtime, request, body.email)
    outcome = await runtime.auth.register(
        body.email,
        body.password,
        role=body.role,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return _ok("User registered successfully", _session_data(outcome), status_code=201)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is suspended
        429: If too many attempts were made for this identity
    """
    await _enforce_rate_limit(runtime, request, body.email)
    outcome = await runtime.auth.login(body.email, body.password)
    return _ok("Login successful", _session_data(outcome))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request, runtime: Runtime = Depends(get_runtime)):
    await _enforce_rate_limit(runtime, request, None)
    outcome = await runtime.auth.refresh(body.refresh_token)
    return _ok(
        "Tokens refreshed successfully",
        {"tokens": TokensResponse.from_pair(outcome.tokens).model_dump(by_alias=True)},
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
@router.delete("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    principal: AuthContext = Depends(get_current_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal.user_id)
    return _ok("Logout successful")


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_current_user)):
    return _ok("Current user", {"user": UserResponse.from_user(principal.user).model_dump(by_alias=True)})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: TokenRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.verify_email(body.token)
    return _ok("Email verified successfully")


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    body: EmailRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await _enforce_rate_limit(runtime, request, body.email)
    message = await runtime.auth.resend_verification(body.email)
    return _ok(message)


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: EmailRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    """Start a password reset.

    The response is identical whether or not the account exists.
    """
    await _enforce_rate_limit(runtime, request, body.email)
    message = await runtime.auth.forgot_password(body.email)
    return _ok(message)


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await _enforce_rate_limit(runtime, request, None)
    await runtime.auth.reset_password(body.token, body.password)
    return _ok("Password reset successfully")


@router.post("/auth/send-phone-verification", response_model=Envelope, tags=["auth"])
async def send_phone_verification(
    body: PhoneRequest, request: Request, runtime: Runtime = Depends(get_runtime)
):
    await _enforce_rate_limit(runtime, request, body.phone)
    await runtime.auth.send_phone_verification(body.phone)
    return _ok("Verification code sent")


@router.post("/auth/verify-phone", response_model=Envelope, tags=["auth"])
async def verify_phone(
    body: VerifyPhoneRequest,
    request: Request,
    principal: Optional[AuthContext] = Depends(get_optional_user),
    runtime: Runtime = Depends(get_runtime),
):
    await _enforce_rate_limit(runtime, request, body.phone)
    await runtime.auth.verify_phone(
        body.phone, body.code, user_id=principal.user_id if principal else None
    )
    return _ok("Phone verified successfully")


@router.post("/auth/social/login", response_model=Envelope, tags=["auth"])
async def social_login(body: SocialLoginRequest, runtime: Runtime = Depends(get_runtime)):
    """Sign in with a Google or Facebook profile.

    Returns ``needsRoleSelection`` with ``tempUserData`` when the profile is
    new and no role was supplied; nothing is stored in that case.
    """
    outcome = await runtime.auth.social_login(
        body.provider, body.access_token, body.profile.to_draft(), role=body.role
    )
    return _outcome_response(outcome, "Social login successful")


@router.post("/auth/auth0/callback", response_model=Envelope, tags=["auth"])
async def auth0_callback(body: Auth0CallbackRequest, runtime: Runtime = Depends(get_runtime)):
    outcome = await runtime.auth.auth0_callback(body.to_draft(), role=body.role)
    return _outcome_response(outcome, "Auth0 authentication successful")


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def set_user_status(
    body: UserStatusUpdateRequest,
    user_id: str = Path(..., min_length=1, max_length=64),
    admin: AuthContext = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.set_user_status(user_id, body.status)
    logger.info("admin_status_change", admin_id=admin.user_id, user_id=user_id, status=body.status)
    return _ok("User status updated", {"user": UserResponse.from_user(user).model_dump(by_alias=True)})
