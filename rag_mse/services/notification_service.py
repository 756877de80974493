"""Event reminder notifications - queueing and the RSVP/unsubscribe links."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo

from sqlalchemy import exists, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from rag_mse.core.config import settings
from rag_mse.core.structured_logging import build_log_context
from rag_mse.core.tokens import TokenInvalidOrExpired, generate_token, hash_token
from rag_mse.db.enums import EmailTemplateId, OutboxStatus, VoteType
from rag_mse.db.models import Event, EventReminderDispatch, OutboxEmail, User, Vote
from rag_mse.services import calendar_service, outbox_service
from rag_mse.utils.clock import utcnow
from rag_mse.utils.pagination import DEFAULT_PAGE, DEFAULT_PER_PAGE, PaginationParams

logger = logging.getLogger(__name__)

INVALID_VOTE_MESSAGE = "Ungültige Teilnahmeanmeldung. Erlaubt sind: JA, NEIN, VIELLEICHT"

REMINDER_MIN_DAYS = 1
REMINDER_MAX_DAYS = 14
REMINDER_LOG_LOOKBACK_DAYS = 30


class EventInPast(ValueError):
    pass


def build_rsvp_url(token: str) -> str:
    return f"{settings.app_url}/anmeldung/{token}"


def build_unsubscribe_url(token: str) -> str:
    return f"{settings.app_url}/benachrichtigungen/abmelden/{token}"


def local_today(now: datetime, timezone: str | None = None) -> date:
    """Calendar date of a naive-UTC instant in the association's timezone."""
    zone = ZoneInfo(timezone or settings.APP_TIMEZONE)
    return now.replace(tzinfo=dt_timezone.utc).astimezone(zone).date()


def format_event_date(value: date) -> str:
    return value.strftime("%d.%m.%Y")


# =============================================================================
# RSVP by link
# =============================================================================

@dataclass
class RsvpContext:
    dispatch: EventReminderDispatch
    event: Event
    user: User
    current_vote: Vote | None


def _get_current_vote(db: Session, user_id, event_id) -> Vote | None:
    return db.query(Vote).filter(Vote.user_id == user_id, Vote.event_id == event_id).first()


def get_rsvp_context(db: Session, token: str, now: datetime | None = None) -> RsvpContext:
    """
    Resolve an RSVP token to its event and member.

    Unknown, used and expired tokens, and tokens for hidden events, are all
    reported as TokenInvalidOrExpired.
    """
    now = now or utcnow()
    dispatch = (
        db.query(EventReminderDispatch)
        .filter(EventReminderDispatch.rsvp_token_hash == hash_token(token))
        .first()
    )
    if (
        not dispatch
        or dispatch.rsvp_used_at is not None
        or dispatch.rsvp_token_expires_at <= now
        or not dispatch.event.visible
    ):
        raise TokenInvalidOrExpired()
    return RsvpContext(
        dispatch=dispatch,
        event=dispatch.event,
        user=dispatch.user,
        current_vote=_get_current_vote(db, dispatch.user_id, dispatch.event_id),
    )


def submit_rsvp(
    db: Session,
    token: str,
    vote: str,
    now: datetime | None = None,
    timezone: str | None = None,
) -> Vote:
    """
    Record the member's vote and consume the RSVP token.

    Raises:
        ValueError: vote is not JA, NEIN or VIELLEICHT
        TokenInvalidOrExpired
        EventInPast
    """
    now = now or utcnow()
    if not VoteType.has_value(vote):
        raise ValueError(INVALID_VOTE_MESSAGE)

    context = get_rsvp_context(db, token, now)
    if context.event.date < local_today(now, timezone):
        raise EventInPast("Teilnahmeanmeldung für vergangene Termine nicht möglich")

    consumed = (
        db.query(EventReminderDispatch)
        .filter(
            EventReminderDispatch.id == context.dispatch.id,
            EventReminderDispatch.rsvp_used_at.is_(None),
            EventReminderDispatch.rsvp_token_expires_at > now,
        )
        .update({EventReminderDispatch.rsvp_used_at: now}, synchronize_session=False)
    )
    if consumed != 1:
        db.rollback()
        raise TokenInvalidOrExpired()

    saved = context.current_vote
    if saved is None:
        saved = Vote(
            user_id=context.user.id,
            event_id=context.event.id,
            vote=vote,
            created_at=now,
            updated_at=now,
        )
        db.add(saved)
    else:
        saved.vote = vote
        saved.updated_at = now
    db.commit()
    db.refresh(saved)

    logger.info(
        "RSVP recorded via reminder link",
        extra=build_log_context(user_id=str(context.user.id), event_id=str(context.event.id), vote=vote),
    )
    return saved


# =============================================================================
# Unsubscribe by link
# =============================================================================

def unsubscribe(db: Session, token: str, now: datetime | None = None) -> User:
    """
    Disable event reminders for the member the token was issued to.

    Repeating the request with the same valid token is harmless.

    Raises:
        TokenInvalidOrExpired
    """
    now = now or utcnow()
    dispatch = (
        db.query(EventReminderDispatch)
        .filter(EventReminderDispatch.unsubscribe_token_hash == hash_token(token))
        .first()
    )
    if not dispatch or dispatch.unsubscribe_token_expires_at <= now:
        raise TokenInvalidOrExpired()

    user = dispatch.user
    user.event_reminder_enabled = False
    db.commit()

    logger.info("Event reminders disabled via link", extra=build_log_context(user_id=str(user.id)))
    return user


# =============================================================================
# Reminder settings
# =============================================================================

class ReminderSettingsError(ValueError):
    pass


def update_reminder_settings(
    db: Session,
    user: User,
    enabled: bool | None = None,
    days_before: int | None = None,
    now: datetime | None = None,
) -> User:
    """
    Change the member's own reminder preferences.

    Raises:
        ReminderSettingsError: nothing to change, or days_before outside 1..14
    """
    if enabled is None and days_before is None:
        raise ReminderSettingsError("Mindestens ein Feld muss aktualisiert werden")
    if days_before is not None and not REMINDER_MIN_DAYS <= days_before <= REMINDER_MAX_DAYS:
        raise ReminderSettingsError(
            f"Tage vor Termin müssen zwischen {REMINDER_MIN_DAYS} und {REMINDER_MAX_DAYS} liegen"
        )

    if enabled is not None:
        user.event_reminder_enabled = enabled
    if days_before is not None:
        user.event_reminder_days_before = days_before
    user.updated_at = now or utcnow()
    db.commit()
    db.refresh(user)

    logger.info(
        "Notification settings updated",
        extra=build_log_context(
            user_id=str(user.id),
            event_reminder_enabled=user.event_reminder_enabled,
            event_reminder_days_before=user.event_reminder_days_before,
        ),
    )
    return user


# =============================================================================
# Admin reminder log
# =============================================================================

def reminder_status(dispatch: EventReminderDispatch) -> str:
    """VERSENDET, FEHLGESCHLAGEN or AUSSTEHEND, from the linked outbox email."""
    outbox_email = dispatch.outbox_email
    if outbox_email is not None and outbox_email.status == OutboxStatus.SENT.value:
        return "VERSENDET"
    if outbox_email is not None and outbox_email.status == OutboxStatus.FAILED.value:
        return "FEHLGESCHLAGEN"
    return "AUSSTEHEND"


def list_reminder_dispatches(
    db: Session,
    pagination: PaginationParams | None = None,
    query: str | None = None,
    now: datetime | None = None,
) -> tuple[list[EventReminderDispatch], int]:
    """
    Reminders queued or sent in the last 30 days, newest first.

    ``query`` matches the member's name or email (case-insensitive).
    Returns (items, total).
    """
    now = now or utcnow()
    pagination = pagination or PaginationParams(page=DEFAULT_PAGE, per_page=DEFAULT_PER_PAGE)
    cutoff = now - timedelta(days=REMINDER_LOG_LOOKBACK_DAYS)

    q = (
        db.query(EventReminderDispatch)
        .join(User, EventReminderDispatch.user_id == User.id)
        .outerjoin(OutboxEmail, EventReminderDispatch.outbox_email_id == OutboxEmail.id)
        .filter(or_(EventReminderDispatch.queued_at >= cutoff, OutboxEmail.sent_at >= cutoff))
    )
    if query and query.strip():
        pattern = f"%{query.strip()}%"
        q = q.filter(or_(User.name.ilike(pattern), User.email.ilike(pattern)))

    total = q.count()
    items = (
        q.order_by(EventReminderDispatch.queued_at.desc(), EventReminderDispatch.id)
        .offset(pagination.offset)
        .limit(pagination.per_page)
        .all()
    )
    return items, total


# =============================================================================
# Reminder scheduling
# =============================================================================

def _queue_reminder(
    db: Session,
    user_id,
    email: str,
    days_before: int,
    event: Event,
    now: datetime,
) -> EventReminderDispatch:
    rsvp_token = generate_token()
    unsubscribe_token = generate_token()
    expires_at = now + timedelta(days=settings.NOTIFICATION_TOKEN_VALIDITY_DAYS)

    dispatch = EventReminderDispatch(
        user_id=user_id,
        event_id=event.id,
        days_before=days_before,
        rsvp_token_hash=hash_token(rsvp_token),
        rsvp_token_expires_at=expires_at,
        unsubscribe_token_hash=hash_token(unsubscribe_token),
        unsubscribe_token_expires_at=expires_at,
        queued_at=now,
    )
    db.add(dispatch)
    dispatch.outbox_email = outbox_service.enqueue(
        db,
        EmailTemplateId.EVENT_REMINDER.value,
        email,
        {
            "appName": settings.APP_NAME,
            "daysBefore": days_before,
            "eventDate": format_event_date(event.date),
            "eventTimeFrom": event.time_from,
            "eventTimeTo": event.time_to,
            "eventLocation": event.location,
            "rsvpUrl": build_rsvp_url(rsvp_token),
            "unsubscribeUrl": build_unsubscribe_url(unsubscribe_token),
        },
        attachments=[
            calendar_service.build_event_attachment(
                str(event.id), event.date, event.time_from, event.time_to, event.location, stamp=now
            )
        ],
        now=now,
    )
    return dispatch


def queue_event_reminders(db: Session, now: datetime | None = None, timezone: str | None = None) -> int:
    """
    Queue reminder emails for events ``days_before`` days ahead.

    For every active member with reminders enabled, visible events on
    ``today + event_reminder_days_before`` (in APP_TIMEZONE) that the member
    has not voted on and has not been reminded of get one dispatch row and
    one outbox email, committed together. Returns the number queued.
    """
    now = now or utcnow()
    if not settings.APP_URL:
        logger.error("APP_URL is required for event reminder links")
        return 0

    today = local_today(now, timezone)
    recipients = [
        (user_id, email, days_before)
        for user_id, email, days_before in db.query(User.id, User.email, User.event_reminder_days_before)
        .filter(User.event_reminder_enabled.is_(True), User.is_active.is_(True))
        .all()
    ]

    queued = 0
    for user_id, email, days_before in recipients:
        target_date = today + timedelta(days=days_before)
        events = (
            db.query(Event)
            .filter(
                Event.visible.is_(True),
                Event.date == target_date,
                ~exists().where(Vote.user_id == user_id, Vote.event_id == Event.id),
                ~exists().where(
                    EventReminderDispatch.user_id == user_id,
                    EventReminderDispatch.event_id == Event.id,
                ),
            )
            .all()
        )
        for event in events:
            event_id = event.id
            try:
                _queue_reminder(db, user_id, email, days_before, event, now)
                db.commit()
            except IntegrityError:
                # Another worker queued this (user, event) first.
                db.rollback()
                continue
            queued += 1
            logger.info(
                "Event reminder queued",
                extra=build_log_context(user_id=str(user_id), event_id=str(event_id), days_before=days_before),
            )

    if queued:
        logger.info("Event reminders queued", extra=build_log_context(count=queued))
    return queued
