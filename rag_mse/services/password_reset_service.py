"""Password reset service - forgot-password requests and token redemption."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from rag_mse.core.config import settings
from rag_mse.core.security import hash_password
from rag_mse.core.structured_logging import build_log_context, mask_email
from rag_mse.core.tokens import TokenInvalidOrExpired, generate_token, hash_token
from rag_mse.db.enums import EmailTemplateId
from rag_mse.db.models import PasswordReset, User
from rag_mse.services import outbox_service
from rag_mse.utils.clock import utcnow

logger = logging.getLogger(__name__)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def build_reset_url(token: str, app_url: str | None = None) -> str:
    return f"{(app_url or settings.app_url).rstrip('/')}/passwort-zuruecksetzen/{token}"


def _active_filter(now: datetime):
    return (PasswordReset.used_at.is_(None), PasswordReset.expires_at > now)


def request_reset(db: Session, email: str, now: datetime | None = None) -> bool:
    """
    Issue a reset token for an active user and queue the email.

    Older active tokens for the address are marked used. Returns False (and
    writes nothing) when no active user has this email.
    """
    now = now or utcnow()
    email = normalize_email(email)

    user = db.query(User).filter(User.email == email, User.is_active.is_(True)).first()
    if not user:
        logger.info("Password reset requested for unknown email", extra=build_log_context(email=mask_email(email)))
        return False

    db.query(PasswordReset).filter(PasswordReset.email == email, *_active_filter(now)).update(
        {PasswordReset.used_at: now}, synchronize_session=False
    )

    token = generate_token()
    reset = PasswordReset(
        email=email,
        token_hash=hash_token(token),
        expires_at=now + timedelta(hours=settings.PASSWORD_RESET_VALIDITY_HOURS),
        created_at=now,
    )
    db.add(reset)
    outbox_service.enqueue(
        db,
        EmailTemplateId.PASSWORD_RESET.value,
        email,
        {
            "appName": settings.APP_NAME,
            "resetUrl": build_reset_url(token),
            "resetValidityHours": settings.PASSWORD_RESET_VALIDITY_HOURS,
        },
        now=now,
    )
    db.commit()

    logger.info("Password reset requested and email queued", extra=build_log_context(user_id=str(user.id)))
    return True


def get_valid_reset(db: Session, token: str, now: datetime | None = None) -> PasswordReset:
    """
    Look up an unused, unexpired reset by raw token.

    Raises:
        TokenInvalidOrExpired
    """
    now = now or utcnow()
    reset = db.query(PasswordReset).filter(PasswordReset.token_hash == hash_token(token)).first()
    if not reset or reset.used_at is not None or reset.expires_at <= now:
        raise TokenInvalidOrExpired()
    return reset


def reset_password(db: Session, token: str, new_password: str, now: datetime | None = None) -> User:
    """
    Set a new password and consume the token in one transaction.

    The token is consumed by a conditional UPDATE; of two concurrent requests
    only one matches. Existing sessions are revoked by bumping token_version.

    Raises:
        TokenInvalidOrExpired
    """
    now = now or utcnow()
    reset = get_valid_reset(db, token, now)

    user = db.query(User).filter(User.email == reset.email, User.is_active.is_(True)).first()
    if not user:
        raise TokenInvalidOrExpired()

    password_hash = hash_password(new_password)

    consumed = (
        db.query(PasswordReset)
        .filter(PasswordReset.id == reset.id, *_active_filter(now))
        .update({PasswordReset.used_at: now}, synchronize_session=False)
    )
    if consumed != 1:
        db.rollback()
        raise TokenInvalidOrExpired()

    user.password_hash = password_hash
    user.password_updated_at = now
    user.token_version = (user.token_version or 0) + 1
    db.commit()

    logger.info("Password reset completed", extra=build_log_context(user_id=str(user.id)))
    return user
