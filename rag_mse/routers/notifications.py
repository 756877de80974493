"""Token links from event reminder emails: RSVP and unsubscribe."""

import logging
from datetime import date as date_type, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from pydantic import AliasChoices, BaseModel, Field, StrictBool, StrictInt
from sqlalchemy.orm import Session

from rag_mse.core.deps import (
    NO_CACHE_HEADERS,
    enforce_attempt_limit,
    get_clock,
    get_current_user,
    get_db,
    require_admin,
    require_csrf_header,
)
from rag_mse.core.rate_limit import AttemptLimiter, get_attempt_limiter, record_success_quietly
from rag_mse.core.tokens import TokenInvalidOrExpired, hash_token
from rag_mse.services import notification_service
from rag_mse.services.client_ip_service import get_client_key
from rag_mse.utils.clock import Clock
from rag_mse.utils.pagination import PaginatedResponse, PaginationParams, get_pagination

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])
settings_router = APIRouter(prefix="/user/notifications", tags=["notifications"])
admin_router = APIRouter(
    prefix="/admin/notifications",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)

INVALID_LINK_MESSAGE = "Link ist ungültig oder abgelaufen"


# =============================================================================
# Schemas
# =============================================================================

class RsvpEvent(BaseModel):
    id: UUID
    date: date_type
    time_from: str
    time_to: str
    location: str
    description: str
    type: str | None = None


class RsvpInfo(BaseModel):
    event: RsvpEvent
    user_name: str | None = None
    current_vote: str | None = None


class RsvpRequest(BaseModel):
    vote: str


class RsvpResponse(BaseModel):
    message: str
    vote: str


class MessageResponse(BaseModel):
    message: str


def _invalid_link() -> HTTPException:
    return HTTPException(status_code=404, detail=INVALID_LINK_MESSAGE, headers=NO_CACHE_HEADERS)


# =============================================================================
# Endpoints
# =============================================================================

@router.get("/rsvp/{token}", response_model=RsvpInfo)
async def get_rsvp(
    token: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Show the event behind an RSVP link with the member's current answer."""
    response.headers.update(NO_CACHE_HEADERS)
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=False,
        action="rsvp_get",
        headers=NO_CACHE_HEADERS,
    )
    try:
        context = notification_service.get_rsvp_context(db, token, now=clock())
    except TokenInvalidOrExpired:
        raise _invalid_link()

    record_success_quietly(attempt_limiter, client_key, token_hash)
    event = context.event
    return RsvpInfo(
        event=RsvpEvent(
            id=event.id,
            date=event.date,
            time_from=event.time_from,
            time_to=event.time_to,
            location=event.location,
            description=event.description,
            type=event.type,
        ),
        user_name=context.user.name,
        current_vote=context.current_vote.vote if context.current_vote else None,
    )


@router.post(
    "/rsvp/{token}",
    response_model=RsvpResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def submit_rsvp(
    token: str,
    body: RsvpRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Record the member's answer from an RSVP link. The link works once."""
    response.headers.update(NO_CACHE_HEADERS)
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=False,
        action="rsvp_post",
        headers=NO_CACHE_HEADERS,
    )
    try:
        vote = notification_service.submit_rsvp(db, token, body.vote, now=clock())
    except TokenInvalidOrExpired:
        raise _invalid_link()
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e), headers=NO_CACHE_HEADERS)

    record_success_quietly(attempt_limiter, client_key, token_hash)
    return RsvpResponse(message="Teilnahme wurde gespeichert", vote=vote.vote)


@router.post(
    "/unsubscribe/{token}",
    response_model=MessageResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def unsubscribe(
    token: str,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Turn off event reminders from the link in a reminder email."""
    response.headers.update(NO_CACHE_HEADERS)
    client_key = get_client_key(request)
    token_hash = hash_token(token)
    enforce_attempt_limit(
        attempt_limiter,
        client_key,
        token_hash,
        fail_open=False,
        action="unsubscribe",
        headers=NO_CACHE_HEADERS,
    )
    try:
        notification_service.unsubscribe(db, token, now=clock())
    except TokenInvalidOrExpired:
        raise _invalid_link()

    record_success_quietly(attempt_limiter, client_key, token_hash)
    return MessageResponse(message="Terminerinnerungen wurden deaktiviert")


# =============================================================================
# Member reminder settings
# =============================================================================

class ReminderSettings(BaseModel):
    event_reminder_enabled: bool
    event_reminder_days_before: int

    model_config = {"from_attributes": True}


class ReminderSettingsUpdate(BaseModel):
    event_reminder_enabled: StrictBool | None = Field(
        default=None, validation_alias=AliasChoices("event_reminder_enabled", "eventReminderEnabled")
    )
    event_reminder_days_before: StrictInt | None = Field(
        default=None, validation_alias=AliasChoices("event_reminder_days_before", "eventReminderDaysBefore")
    )


@settings_router.get("", response_model=ReminderSettings)
async def get_reminder_settings(user=Depends(get_current_user)):
    return ReminderSettings.model_validate(user)


@settings_router.put(
    "",
    response_model=ReminderSettings,
    dependencies=[Depends(require_csrf_header)],
)
async def update_reminder_settings(
    body: ReminderSettingsUpdate,
    user=Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Turn event reminders on or off and choose how many days ahead they arrive."""
    try:
        user = notification_service.update_reminder_settings(
            db,
            user,
            enabled=body.event_reminder_enabled,
            days_before=body.event_reminder_days_before,
            now=clock(),
        )
    except notification_service.ReminderSettingsError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return ReminderSettings.model_validate(user)


# =============================================================================
# Admin reminder log
# =============================================================================

class ReminderLogUser(BaseModel):
    id: UUID
    name: str | None = None
    email: str

    model_config = {"from_attributes": True}


class ReminderLogEvent(BaseModel):
    id: UUID
    date: date_type
    time_from: str
    time_to: str
    location: str

    model_config = {"from_attributes": True}


class ReminderLogEntry(BaseModel):
    id: UUID
    queued_at: datetime
    sent_at: datetime | None = None
    status: str
    days_before: int
    user: ReminderLogUser
    event: ReminderLogEvent


class ReminderLogResponse(BaseModel):
    items: list[ReminderLogEntry]
    total: int
    page: int
    per_page: int
    pages: int


@admin_router.get("", response_model=ReminderLogResponse)
async def list_reminders(
    pagination: PaginationParams = Depends(get_pagination),
    q: str | None = Query(None, max_length=200, description="Search member name and email"),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Event reminders of the last 30 days, newest first.

    Requires: admin role
    """
    dispatches, total = notification_service.list_reminder_dispatches(db, pagination, query=q, now=clock())
    entries = [
        ReminderLogEntry(
            id=dispatch.id,
            queued_at=dispatch.queued_at,
            sent_at=dispatch.outbox_email.sent_at if dispatch.outbox_email else None,
            status=notification_service.reminder_status(dispatch),
            days_before=dispatch.days_before,
            user=ReminderLogUser.model_validate(dispatch.user),
            event=ReminderLogEvent.model_validate(dispatch.event),
        )
        for dispatch in dispatches
    ]
    page = PaginatedResponse.create(entries, total, pagination)
    return ReminderLogResponse(
        items=page.items,
        total=page.total,
        page=page.page,
        per_page=page.per_page,
        pages=page.pages,
    )
