"""Invitation service - admin invitations and their redemption."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from rag_mse.core.config import settings
from rag_mse.core.security import hash_password
from rag_mse.core.structured_logging import build_log_context, mask_email
from rag_mse.core.tokens import TokenInvalidOrExpired, generate_token, hash_token
from rag_mse.db.enums import EmailTemplateId, Role
from rag_mse.db.models import Invitation, User
from rag_mse.schemas.auth import UserSession
from rag_mse.services import outbox_service
from rag_mse.utils.clock import utcnow

logger = logging.getLogger(__name__)


class UserAlreadyExists(ValueError):
    pass


class InvitationNotFound(LookupError):
    pass


class InvitationNotResendable(ValueError):
    pass


class AppUrlNotConfigured(RuntimeError):
    pass


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _require_app_url() -> None:
    if not settings.APP_URL:
        raise AppUrlNotConfigured("APP_URL ist nicht konfiguriert")


def build_invite_url(token: str) -> str:
    _require_app_url()
    return f"{settings.app_url}/einladung/{token}"


def get_user_by_email(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def _supersede_active(db: Session, email: str, now: datetime, keep_id: UUID | None = None) -> int:
    query = db.query(Invitation).filter(Invitation.email == email, Invitation.used_at.is_(None))
    if keep_id is not None:
        query = query.filter(Invitation.id != keep_id)
    return query.update({Invitation.used_at: now}, synchronize_session=False)


def _queue_invitation_email(db: Session, email: str, token: str, now: datetime) -> None:
    outbox_service.enqueue(
        db,
        EmailTemplateId.INVITATION.value,
        email,
        {
            "appName": settings.APP_NAME,
            "inviteUrl": build_invite_url(token),
            "inviteValidityDays": settings.INVITATION_VALIDITY_DAYS,
        },
        now=now,
    )


# =============================================================================
# Admin operations
# =============================================================================

def create_invitation(
    db: Session,
    session: UserSession,
    email: str,
    role: str = Role.MEMBER.value,
    now: datetime | None = None,
) -> Invitation:
    """
    Invite an email address.

    Older active invitations for the address are marked used; the new
    invitation and its email are committed together.

    Raises:
        UserAlreadyExists, AppUrlNotConfigured, ValueError (unknown role)
    """
    now = now or utcnow()
    email = normalize_email(email)
    if not Role.has_value(role):
        raise ValueError("Ungültige Rolle")
    if get_user_by_email(db, email):
        raise UserAlreadyExists("Ein Benutzer mit dieser E-Mail existiert bereits")
    _require_app_url()

    token = generate_token()

    _supersede_active(db, email, now)
    invitation = Invitation(
        email=email,
        role=role,
        token_hash=hash_token(token),
        expires_at=now + timedelta(days=settings.INVITATION_VALIDITY_DAYS),
        invited_by_user_id=session.user_id,
        created_at=now,
    )
    db.add(invitation)
    _queue_invitation_email(db, email, token, now)
    db.commit()
    db.refresh(invitation)

    logger.info(
        "Invitation created and email queued",
        extra=build_log_context(
            user_id=str(session.user_id),
            invitation_id=str(invitation.id),
            email=mask_email(email),
        ),
    )
    return invitation


def _rotate(db: Session, session: UserSession, invitation: Invitation, now: datetime) -> Invitation:
    _require_app_url()
    token = generate_token()

    _supersede_active(db, invitation.email, now, keep_id=invitation.id)
    invitation.token_hash = hash_token(token)
    invitation.expires_at = now + timedelta(days=settings.INVITATION_VALIDITY_DAYS)
    _queue_invitation_email(db, invitation.email, token, now)
    db.commit()
    db.refresh(invitation)

    logger.info(
        "Invitation resent",
        extra=build_log_context(
            user_id=str(session.user_id),
            invitation_id=str(invitation.id),
            email=mask_email(invitation.email),
        ),
    )
    return invitation


def resend_invitation(
    db: Session,
    session: UserSession,
    invitation_id: UUID,
    now: datetime | None = None,
) -> Invitation:
    """
    Issue a fresh token and expiry for an open invitation and email it again.

    Raises:
        InvitationNotFound, InvitationNotResendable, AppUrlNotConfigured
    """
    now = now or utcnow()
    invitation = db.query(Invitation).filter(Invitation.id == invitation_id).first()
    if not invitation:
        raise InvitationNotFound("Einladung nicht gefunden")
    if invitation.used_at is not None:
        raise InvitationNotResendable("Einladung wurde bereits verwendet")
    if invitation.expires_at <= now:
        raise InvitationNotResendable("Einladung ist abgelaufen")
    return _rotate(db, session, invitation, now)


def resend_by_email(
    db: Session,
    session: UserSession,
    email: str,
    now: datetime | None = None,
) -> Invitation:
    """
    Resend the latest unused invitation for an address (expired ones included).

    Raises:
        InvitationNotFound, AppUrlNotConfigured
    """
    now = now or utcnow()
    invitation = (
        db.query(Invitation)
        .filter(Invitation.email == normalize_email(email), Invitation.used_at.is_(None))
        .order_by(Invitation.created_at.desc())
        .first()
    )
    if not invitation:
        raise InvitationNotFound("Keine aktive Einladung für diese E-Mail gefunden")
    return _rotate(db, session, invitation, now)


# =============================================================================
# Public redemption
# =============================================================================

def get_valid_invitation(db: Session, token: str, now: datetime | None = None) -> Invitation:
    """
    Raises:
        TokenInvalidOrExpired
    """
    now = now or utcnow()
    invitation = db.query(Invitation).filter(Invitation.token_hash == hash_token(token)).first()
    if not invitation or invitation.used_at is not None or invitation.expires_at <= now:
        raise TokenInvalidOrExpired()
    return invitation


def redeem_invitation(
    db: Session,
    token: str,
    name: str,
    password: str,
    now: datetime | None = None,
) -> tuple[User, bool]:
    """
    Create the member account (or complete an existing one) and consume the
    invitation in one transaction.

    Returns (user, created).

    Raises:
        TokenInvalidOrExpired
    """
    now = now or utcnow()
    invitation = get_valid_invitation(db, token, now)
    password_hash = hash_password(password)

    consumed = (
        db.query(Invitation)
        .filter(
            Invitation.id == invitation.id,
            Invitation.used_at.is_(None),
            Invitation.expires_at > now,
        )
        .update({Invitation.used_at: now}, synchronize_session=False)
    )
    if consumed != 1:
        db.rollback()
        raise TokenInvalidOrExpired()

    user = get_user_by_email(db, invitation.email)
    created = user is None
    if created:
        user = User(
            email=invitation.email,
            name=name.strip(),
            role=invitation.role,
            password_hash=password_hash,
            password_updated_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
    else:
        user.name = name.strip()
        user.password_hash = password_hash
        user.password_updated_at = now
        user.token_version = (user.token_version or 0) + 1
    db.commit()
    db.refresh(user)

    logger.info(
        "Invitation accepted",
        extra=build_log_context(user_id=str(user.id), invitation_id=str(invitation.id), created=created),
    )
    return user, created
