"""Admin view of the email outbox."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from rag_mse.core.deps import get_clock, get_db, require_admin, require_csrf_header
from rag_mse.db.enums import OutboxStatus
from rag_mse.services import outbox_service
from rag_mse.utils.clock import Clock
from rag_mse.utils.pagination import PaginatedResponse, PaginationParams, get_pagination

router = APIRouter(
    prefix="/admin/outgoing-emails",
    tags=["outgoing-emails"],
    dependencies=[Depends(require_admin)],
)


# =============================================================================
# Schemas
# =============================================================================

class OutgoingEmailRead(BaseModel):
    id: UUID
    template: str
    recipient: str
    subject: str
    status: str
    attempt_count: int
    queued_at: datetime
    next_attempt_at: datetime
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    sent_at: datetime | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class OutgoingEmailListResponse(BaseModel):
    items: list[OutgoingEmailRead]
    total: int
    page: int
    per_page: int
    pages: int


class OutgoingEmailRetryResponse(BaseModel):
    message: str
    email: OutgoingEmailRead


# =============================================================================
# Endpoints
# =============================================================================

@router.get("", response_model=OutgoingEmailListResponse)
async def list_outgoing_emails(
    pagination: PaginationParams = Depends(get_pagination),
    q: str | None = Query(None, max_length=200, description="Search subject, recipient and template"),
    status: OutboxStatus | None = Query(None),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """
    Emails of the last 30 days, newest first.

    Requires: admin role
    """
    items, total = outbox_service.list_emails(
        db,
        pagination,
        query=q,
        status=status.value if status else None,
        now=clock(),
    )
    page = PaginatedResponse.create([OutgoingEmailRead.model_validate(item) for item in items], total, pagination)
    return OutgoingEmailListResponse(
        items=page.items,
        total=page.total,
        page=page.page,
        per_page=page.per_page,
        pages=page.pages,
    )


@router.post(
    "/{email_id}/retry",
    response_model=OutgoingEmailRetryResponse,
    dependencies=[Depends(require_csrf_header)],
)
async def retry_outgoing_email(
    email_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    """Re-queue a failed email."""
    try:
        email = outbox_service.retry_failed(db, email_id, now=clock())
    except outbox_service.OutboxStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return OutgoingEmailRetryResponse(
        message="E-Mail wird erneut gesendet",
        email=OutgoingEmailRead.model_validate(email),
    )
