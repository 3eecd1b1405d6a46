from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from tokenwarden.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    LockStatusResponse,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    ResetTokenValidity,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from tokenwarden.logging import get_logger
from tokenwarden.service.auth import AuthContext, TokenPair
from tokenwarden.service.rate_limit import identifier_for
from tokenwarden.service.runtime import get_runtime
from tokenwarden.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
jwks_router = APIRouter(tags=["keys"])

FORGOT_PASSWORD_MESSAGE = (
    "If an account exists for that address, a password reset link has been sent."
)
RESEND_VERIFICATION_MESSAGE = (
    "If that address is awaiting verification, a new code has been sent."
)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime,
    scope: str,
    request: Request,
    *,
    email: Optional[str] = None,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Count this request against ``scope`` and raise 429 once over the limit."""
    policy = runtime.rate_limits[scope]
    identifier = identifier_for(
        request.headers,
        request.client.host if request.client else None,
        email=email,
    )
    decision = await runtime.rate_limiter.enforce(policy, identifier)
    info = RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds)
    if response is not None:
        info.apply_headers(response)
    return info


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization, required_role=UserRole.ADMIN)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        user=UserResponse.from_user(pair.user),
    )


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a pending account and email a verification code.

    Raises:
        403: If signup is disabled
        409: If the email is already registered
        429: If the rate limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "register", request, email=body.email, response=response)
    user, code = await asyncio.to_thread(
        runtime.auth.register,
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    await asyncio.to_thread(
        runtime.email.send_verification_code,
        user.email,
        code.secret,
        name=user.first_name or "",
    )
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Exchange email and password for an access/refresh token pair.

    Raises:
        401: If credentials are invalid
        403: If the account is not verified or not active
        423: If the account is temporarily locked
        429: If the rate limit is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "login", request, email=body.email, response=response)
    pair = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: RefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, "refresh", request, response=response)
    pair = await asyncio.to_thread(runtime.auth.refresh, body.refresh_token)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/logout", response_model=Envelope)
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await asyncio.to_thread(runtime.auth.logout, principal.user_id)
    return Envelope(status="ok", data={"revoked_refresh_tokens": revoked})


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a password reset.

    The response is the same whether or not the address belongs to an account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "forgot_password", request, email=body.email, response=response
    )
    issued = await asyncio.to_thread(runtime.auth.request_password_reset, body.email)
    if issued is not None:
        user, credential = issued
        await asyncio.to_thread(
            runtime.email.send_password_reset,
            user.email,
            credential.secret,
            name=user.first_name or "",
        )
    return Envelope(status="ok", data=MessageResponse(message=FORGOT_PASSWORD_MESSAGE))


@router.get("/validate-reset-token", response_model=Envelope)
async def validate_reset_token(token: str = Query(..., min_length=1, max_length=256)):
    runtime = get_runtime()
    valid = await asyncio.to_thread(runtime.auth.validate_reset_token, token)
    return Envelope(status="ok", data=ResetTokenValidity(valid=valid))


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.reset_password, body.token, body.new_password)
    return Envelope(
        status="ok", data=MessageResponse(message="Password has been reset.")
    )


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "verify_email", request, email=body.email, response=response
    )
    user = await asyncio.to_thread(runtime.auth.verify_email, body.email, body.code)
    await asyncio.to_thread(runtime.email.send_welcome, user.email, name=user.first_name or "")
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(
    body: ResendVerificationRequest, request: Request, response: Response
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, "resend_verification", request, email=body.email, response=response
    )
    issued = await asyncio.to_thread(runtime.auth.resend_verification, body.email)
    if issued is not None:
        user, code = issued
        await asyncio.to_thread(
            runtime.email.send_verification_code,
            user.email,
            code.secret,
            name=user.first_name or "",
        )
    return Envelope(
        status="ok", data=MessageResponse(message=RESEND_VERIFICATION_MESSAGE)
    )


@router.post("/change-password", response_model=Envelope)
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await asyncio.to_thread(
        runtime.auth.change_password,
        principal.user_id,
        body.current_password,
        body.new_password,
    )
    return Envelope(status="ok", data=MessageResponse(message="Password changed."))


@router.delete("/delete-account", response_model=Envelope)
async def delete_account(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.delete_account, principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="Account deleted."))


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


def _lock_status_response(status) -> LockStatusResponse:
    return LockStatusResponse(
        user_id=status.user_id,
        locked=status.locked,
        failed_login_attempts=status.failed_login_attempts,
        locked_until=status.locked_until,
        last_failed_login_attempt=status.last_failed_login_attempt,
    )


@admin_router.post("/users/{user_id}/unlock", response_model=Envelope)
async def admin_unlock_user(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.admin_unlock, user_id)
    logger.info("admin_unlocked_user", admin_id=principal.user_id, user_id=user_id)
    status = runtime.auth.lock_status(user_id)
    return Envelope(status="ok", data=_lock_status_response(status))


@admin_router.get("/users/{user_id}/lock-status", response_model=Envelope)
async def admin_lock_status(
    user_id: int = Path(..., ge=1),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    status = runtime.auth.lock_status(user_id)
    return Envelope(status="ok", data=_lock_status_response(status))


@jwks_router.get("/.well-known/jwks.json")
async def jwks(response: Response):
    runtime = get_runtime()
    response.headers["Cache-Control"] = "public, max-age=300"
    return runtime.jwks.publish()
