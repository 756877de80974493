"""Public password reset endpoints."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from rag_mse.core.deps import (
    NO_CACHE_HEADERS,
    enforce_attempt_limit,
    get_clock,
    get_db,
    rate_limited_error,
    require_csrf_header,
)
from rag_mse.core.rate_limit import (
    FORGOT_PASSWORD_RULE,
    AttemptLimiter,
    RateLimiterUnavailable,
    get_attempt_limiter,
    guarded_check,
    record_success_quietly,
)
from rag_mse.core.security import PasswordPolicyError, validate_new_password
from rag_mse.core.structured_logging import build_log_context, mask_token
from rag_mse.core.tokens import TokenInvalidOrExpired, hash_token
from rag_mse.services import password_reset_service
from rag_mse.services.client_ip_service import get_client_key
from rag_mse.utils.clock import Clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

FORGOT_PASSWORD_MESSAGE = (
    "Wenn diese E-Mail registriert ist, erhalten Sie in Kürze einen Link zum Zurücksetzen Ihres Passworts."
)
INVALID_LINK_MESSAGE = "Link ist ungültig oder abgelaufen"
PASSWORD_CHANGED_MESSAGE = "Passwort wurde erfolgreich geändert"


# =============================================================================
# Schemas
# =============================================================================

class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    password: str
    confirm_password: str | None = Field(
        default=None, validation_alias=AliasChoices("confirm_password", "confirmPassword")
    )


class ResetTokenInfo(BaseModel):
    email: str
    expires_at: datetime


class MessageResponse(BaseModel):
    message: str


# =============================================================================
# Endpoints
# =============================================================================

@router.post(
    "/forgot-password",
    response_model=MessageResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """
    Request a password reset link.

    The response is identical whether or not the address belongs to a member.
    """
    email = password_reset_service.normalize_email(body.email)
    client_key = get_client_key(request)

    try:
        result = guarded_check(
            lambda: attempt_limiter.check(client_key, email, FORGOT_PASSWORD_RULE),
            fail_open=False,
            action="forgot_password",
            client_key=client_key,
        )
    except RateLimiterUnavailable:
        # Fail closed without revealing anything: nothing is sent.
        return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)
    if not result.allowed:
        raise rate_limited_error(result, attempt_limiter.clock())

    try:
        password_reset_service.request_reset(db, email, now=clock())
    except Exception:
        db.rollback()
        logger.exception(
            "Error processing forgot password request",
            extra=build_log_context(route="/auth/forgot-password", method="POST"),
        )

    return MessageResponse(message=FORGOT_PASSWORD_MESSAGE)


@router.get("/reset-password/{token}", response_model=ResetTokenInfo)
async def get_reset_token(
    token: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Check a reset link before showing the new-password form."""
    response.headers.update(NO_CACHE_HEADERS)
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=True,
        action="password_reset_get",
    )
    try:
        reset = password_reset_service.get_valid_reset(db, token, now=clock())
    except TokenInvalidOrExpired:
        raise HTTPException(status_code=404, detail=INVALID_LINK_MESSAGE, headers=NO_CACHE_HEADERS)

    record_success_quietly(attempt_limiter, client_key, token_hash)
    return ResetTokenInfo(email=reset.email, expires_at=reset.expires_at)


@router.post(
    "/reset-password/{token}",
    response_model=MessageResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def reset_password(
    token: str,
    body: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Set a new password with a reset link."""
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=True,
        action="password_reset_post",
    )

    try:
        validate_new_password(body.password, body.confirm_password)
    except PasswordPolicyError as e:
        raise HTTPException(status_code=400, detail=". ".join(e.errors))

    try:
        user = password_reset_service.reset_password(db, token, body.password, now=clock())
    except TokenInvalidOrExpired:
        logger.info(
            "Password reset with invalid token",
            extra=build_log_context(token_prefix=mask_token(token)),
        )
        raise HTTPException(status_code=404, detail=INVALID_LINK_MESSAGE)

    record_success_quietly(attempt_limiter, client_key, token_hash)
    logger.info("Password changed via reset link", extra=build_log_context(user_id=str(user.id)))
    return MessageResponse(message=PASSWORD_CHANGED_MESSAGE)
