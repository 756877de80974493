"""Invitations: admin creation/resend and public redemption by link."""

import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from rag_mse.core.deps import (
    NO_CACHE_HEADERS,
    enforce_attempt_limit,
    get_clock,
    get_db,
    require_admin,
    require_csrf_header,
)
from rag_mse.core.rate_limit import AttemptLimiter, get_attempt_limiter, record_success_quietly
from rag_mse.core.security import PasswordPolicyError, validate_new_password
from rag_mse.core.structured_logging import build_log_context, mask_email
from rag_mse.core.tokens import TokenInvalidOrExpired, hash_token
from rag_mse.db.enums import Role
from rag_mse.db.models import Invitation
from rag_mse.schemas.auth import UserSession
from rag_mse.services import invitation_service
from rag_mse.services.client_ip_service import get_client_key
from rag_mse.utils.clock import Clock

logger = logging.getLogger(__name__)

admin_router = APIRouter(
    prefix="/admin/invitations",
    tags=["invitations"],
    dependencies=[Depends(require_admin)],
)
router = APIRouter(prefix="/invitations", tags=["invitations"])

INVALID_INVITATION_MESSAGE = "Einladung ist ungültig oder abgelaufen"


# =============================================================================
# Schemas
# =============================================================================

class InvitationCreate(BaseModel):
    email: EmailStr
    role: Role = Role.MEMBER


class InvitationResendByEmail(BaseModel):
    email: EmailStr


class InvitationRead(BaseModel):
    id: UUID
    email: str
    role: str
    expires_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class InvitationCreateResponse(BaseModel):
    message: str
    invitation: InvitationRead


class InvitationTokenInfo(BaseModel):
    email: str
    role: str
    expires_at: datetime


class InvitationAccept(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    password: str
    confirm_password: str | None = Field(
        default=None, validation_alias=AliasChoices("confirm_password", "confirmPassword")
    )


class InvitationAcceptResponse(BaseModel):
    message: str
    email: str


def _to_response(invitation: Invitation, message: str) -> InvitationCreateResponse:
    return InvitationCreateResponse(
        message=message,
        invitation=InvitationRead.model_validate(invitation),
    )


# =============================================================================
# Admin endpoints
# =============================================================================

@admin_router.post(
    "",
    response_model=InvitationCreateResponse,
    status_code=201,
    dependencies=[Depends(require_csrf_header)],
)
async def create_invitation(
    body: InvitationCreate,
    db: Session = Depends(get_db),
    session: UserSession = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    """
    Invite a new member.

    Requires: admin role
    """
    try:
        invitation = invitation_service.create_invitation(
            db, session, body.email, role=body.role.value, now=clock()
        )
    except invitation_service.UserAlreadyExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    except invitation_service.AppUrlNotConfigured as e:
        logger.error("Invitation rejected: %s", e)
        raise HTTPException(status_code=500, detail="APP_URL ist nicht konfiguriert")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _to_response(invitation, "Einladung wurde versendet")


@admin_router.post(
    "/resend-by-email",
    response_model=InvitationCreateResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def resend_invitation_by_email(
    body: InvitationResendByEmail,
    db: Session = Depends(get_db),
    session: UserSession = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    """Resend the latest open invitation for an address."""
    try:
        invitation = invitation_service.resend_by_email(db, session, body.email, now=clock())
    except invitation_service.InvitationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except invitation_service.AppUrlNotConfigured:
        raise HTTPException(status_code=500, detail="APP_URL ist nicht konfiguriert")
    return _to_response(invitation, "Einladung wurde erneut versendet")


@admin_router.post(
    "/{invitation_id}/resend",
    response_model=InvitationCreateResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def resend_invitation(
    invitation_id: UUID,
    db: Session = Depends(get_db),
    session: UserSession = Depends(require_admin),
    clock: Clock = Depends(get_clock),
):
    """Resend an open invitation with a fresh link."""
    try:
        invitation = invitation_service.resend_invitation(db, session, invitation_id, now=clock())
    except invitation_service.InvitationNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except invitation_service.InvitationNotResendable as e:
        raise HTTPException(status_code=400, detail=str(e))
    except invitation_service.AppUrlNotConfigured:
        raise HTTPException(status_code=500, detail="APP_URL ist nicht konfiguriert")
    return _to_response(invitation, "Einladung wurde erneut versendet")


# =============================================================================
# Public endpoints
# =============================================================================

@router.get("/{token}", response_model=InvitationTokenInfo)
async def get_invitation(
    token: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Look up an invitation link before showing the registration form."""
    response.headers.update(NO_CACHE_HEADERS)
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=False,
        action="invitation_get",
        headers=NO_CACHE_HEADERS,
    )
    try:
        invitation = invitation_service.get_valid_invitation(db, token, now=clock())
    except TokenInvalidOrExpired:
        raise HTTPException(status_code=404, detail=INVALID_INVITATION_MESSAGE, headers=NO_CACHE_HEADERS)

    record_success_quietly(attempt_limiter, client_key, token_hash)
    return InvitationTokenInfo(email=invitation.email, role=invitation.role, expires_at=invitation.expires_at)


@router.post(
    "/{token}",
    response_model=InvitationAcceptResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def accept_invitation(
    token: str,
    body: InvitationAccept,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Create the account for an invitation link."""
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=False,
        action="invitation_post",
        headers=NO_CACHE_HEADERS,
    )

    try:
        validate_new_password(body.password, body.confirm_password)
    except PasswordPolicyError as e:
        raise HTTPException(status_code=400, detail=". ".join(e.errors), headers=NO_CACHE_HEADERS)

    try:
        user, created = invitation_service.redeem_invitation(
            db, token, body.name, body.password, now=clock()
        )
    except TokenInvalidOrExpired:
        raise HTTPException(status_code=404, detail=INVALID_INVITATION_MESSAGE, headers=NO_CACHE_HEADERS)

    record_success_quietly(attempt_limiter, client_key, token_hash)
    logger.info(
        "Invitation accepted",
        extra=build_log_context(user_id=str(user.id), email=mask_email(user.email), created=created),
    )
    message = "Konto wurde erstellt" if created else "Konto wurde aktualisiert"
    return InvitationAcceptResponse(message=message, email=user.email)
