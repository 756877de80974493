"""Outbox service - durable queue of transactional emails.

Business actions call ``enqueue`` inside their own transaction; the
dispatcher claims due rows with ``claim_due_batch`` and records the outcome
with ``mark_sent`` / ``mark_failed``. Every state change is a conditional
UPDATE so two dispatchers never process the same row.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from rag_mse.db.enums import CLAIMABLE_STATUSES, OutboxStatus
from rag_mse.db.models import OutboxEmail
from rag_mse.services import email_template_service
from rag_mse.utils.clock import utcnow
from rag_mse.utils.pagination import DEFAULT_PAGE, DEFAULT_PER_PAGE, PaginationParams

LIST_LOOKBACK_DAYS = 30
MAX_ERROR_LENGTH = 2000


class OutboxStateError(ValueError):
    """Requested transition is not allowed from the current status."""


def _due_predicate(now: datetime):
    return and_(
        OutboxEmail.status.in_(CLAIMABLE_STATUSES),
        OutboxEmail.next_attempt_at <= now,
        or_(OutboxEmail.locked_until.is_(None), OutboxEmail.locked_until <= now),
    )


def _truncate_error(error: str) -> str:
    return error if len(error) <= MAX_ERROR_LENGTH else error[: MAX_ERROR_LENGTH - 3] + "..."


# =============================================================================
# Enqueue
# =============================================================================

def enqueue(
    db: Session,
    template_id: str,
    recipient: str,
    variables: Mapping[str, Any],
    attachments: list[dict] | None = None,
    now: datetime | None = None,
) -> OutboxEmail:
    """
    Queue an email for delivery.

    The template is rendered once to validate the variables and to store the
    subject. The row is added to the session but not committed; the caller
    commits it together with the business effect.

    Raises:
        UnknownTemplate, MissingTemplateVariable
    """
    now = now or utcnow()
    values = {key: str(value) for key, value in variables.items() if value is not None}
    rendered = email_template_service.render(template_id, values)

    email = OutboxEmail(
        template=template_id,
        recipient=recipient,
        subject=rendered.subject,
        variables=values,
        attachments=list(attachments or []),
        status=OutboxStatus.PENDING.value,
        attempt_count=0,
        queued_at=now,
        next_attempt_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(email)
    db.flush()
    return email


# =============================================================================
# Dispatcher operations
# =============================================================================

def claim_due_batch(
    db: Session,
    limit: int,
    lock_duration: timedelta,
    now: datetime | None = None,
) -> list[OutboxEmail]:
    """
    Claim up to ``limit`` due emails.

    Candidates are re-checked by the claiming UPDATE itself, so a row taken
    by a concurrent dispatcher in between is skipped. Claims are committed
    before returning.
    """
    now = now or utcnow()
    candidate_ids = [
        row_id
        for (row_id,) in db.query(OutboxEmail.id)
        .filter(_due_predicate(now))
        .order_by(OutboxEmail.next_attempt_at, OutboxEmail.created_at)
        .limit(limit)
        .all()
    ]

    claimed_ids: list[UUID] = []
    for email_id in candidate_ids:
        matched = (
            db.query(OutboxEmail)
            .filter(OutboxEmail.id == email_id, _due_predicate(now))
            .update(
                {
                    OutboxEmail.locked_until: now + lock_duration,
                    OutboxEmail.last_attempt_at: now,
                    OutboxEmail.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        if matched == 1:
            claimed_ids.append(email_id)
    db.commit()

    if not claimed_ids:
        return []
    claimed = db.query(OutboxEmail).filter(OutboxEmail.id.in_(claimed_ids)).all()
    order = {email_id: index for index, email_id in enumerate(claimed_ids)}
    return sorted(claimed, key=lambda email: order[email.id])


def renew_lock(
    db: Session,
    email_id: UUID,
    held_until: datetime | None,
    lock_duration: timedelta,
    now: datetime | None = None,
) -> datetime | None:
    """
    Extend a claim right before sending.

    Only succeeds while ``locked_until`` still holds the value this dispatcher
    wrote; if the lock lapsed and another dispatcher re-claimed the row,
    nothing is updated and None is returned.
    """
    now = now or utcnow()
    locked_until = now + lock_duration
    matched = (
        db.query(OutboxEmail)
        .filter(
            OutboxEmail.id == email_id,
            OutboxEmail.status.in_(CLAIMABLE_STATUSES),
            OutboxEmail.locked_until == held_until,
        )
        .update({OutboxEmail.locked_until: locked_until}, synchronize_session=False)
    )
    db.commit()
    return locked_until if matched == 1 else None


def mark_sent(db: Session, email_id: UUID, now: datetime | None = None) -> bool:
    """Record successful delivery. Returns False if the row was already terminal."""
    now = now or utcnow()
    matched = (
        db.query(OutboxEmail)
        .filter(OutboxEmail.id == email_id, OutboxEmail.status.in_(CLAIMABLE_STATUSES))
        .update(
            {
                OutboxEmail.status: OutboxStatus.SENT.value,
                OutboxEmail.sent_at: now,
                OutboxEmail.locked_until: None,
                OutboxEmail.last_error: None,
                OutboxEmail.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return matched == 1


def mark_failed(
    db: Session,
    email_id: UUID,
    error: str,
    next_attempt_at: datetime | None,
    now: datetime | None = None,
) -> bool:
    """
    Record a failed attempt.

    With ``next_attempt_at`` the email goes to RETRYING, without it to
    FAILED. attempt_count is incremented either way.
    """
    now = now or utcnow()
    values: dict = {
        OutboxEmail.attempt_count: OutboxEmail.attempt_count + 1,
        OutboxEmail.last_error: _truncate_error(error),
        OutboxEmail.locked_until: None,
        OutboxEmail.updated_at: now,
    }
    if next_attempt_at is None:
        values[OutboxEmail.status] = OutboxStatus.FAILED.value
    else:
        values[OutboxEmail.status] = OutboxStatus.RETRYING.value
        values[OutboxEmail.next_attempt_at] = next_attempt_at

    matched = (
        db.query(OutboxEmail)
        .filter(OutboxEmail.id == email_id, OutboxEmail.status.in_(CLAIMABLE_STATUSES))
        .update(values, synchronize_session=False)
    )
    db.commit()
    return matched == 1


# =============================================================================
# Admin operations
# =============================================================================

def get_email(db: Session, email_id: UUID) -> OutboxEmail | None:
    return db.query(OutboxEmail).filter(OutboxEmail.id == email_id).first()


def retry_failed(db: Session, email_id: UUID, now: datetime | None = None) -> OutboxEmail:
    """
    Re-queue a FAILED email with a fresh retry budget.

    Raises:
        LookupError: email does not exist
        OutboxStateError: email is not FAILED
    """
    now = now or utcnow()
    email = get_email(db, email_id)
    if email is None:
        raise LookupError("E-Mail nicht gefunden")

    matched = (
        db.query(OutboxEmail)
        .filter(OutboxEmail.id == email_id, OutboxEmail.status == OutboxStatus.FAILED.value)
        .update(
            {
                OutboxEmail.status: OutboxStatus.RETRYING.value,
                OutboxEmail.attempt_count: 0,
                OutboxEmail.next_attempt_at: now,
                OutboxEmail.locked_until: None,
                OutboxEmail.last_error: None,
                OutboxEmail.updated_at: now,
            },
            synchronize_session=False,
        )
    )
    if matched != 1:
        db.rollback()
        raise OutboxStateError("Nur fehlgeschlagene E-Mails können erneut gesendet werden")
    db.commit()
    db.refresh(email)
    return email


def list_emails(
    db: Session,
    pagination: PaginationParams | None = None,
    query: str | None = None,
    status: str | None = None,
    now: datetime | None = None,
) -> tuple[list[OutboxEmail], int]:
    """
    List emails of the last 30 days, newest first.

    ``query`` matches subject, recipient and template (case-insensitive).
    Returns (items, total).
    """
    now = now or utcnow()
    pagination = pagination or PaginationParams(page=DEFAULT_PAGE, per_page=DEFAULT_PER_PAGE)

    q = db.query(OutboxEmail).filter(OutboxEmail.created_at >= now - timedelta(days=LIST_LOOKBACK_DAYS))
    if status:
        q = q.filter(OutboxEmail.status == status)
    if query and query.strip():
        pattern = f"%{query.strip()}%"
        q = q.filter(
            or_(
                OutboxEmail.subject.ilike(pattern),
                OutboxEmail.recipient.ilike(pattern),
                OutboxEmail.template.ilike(pattern),
            )
        )

    total = q.count()
    items = (
        q.order_by(OutboxEmail.created_at.desc())
        .offset(pagination.offset)
        .limit(pagination.per_page)
        .all()
    )
    return items, total
