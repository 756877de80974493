"""Public contact form."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.orm import Session

from rag_mse.core.deps import enforce_fixed_window, get_clock, get_db, require_csrf_header
from rag_mse.core.rate_limit import (
    CONTACT_MAX_ATTEMPTS,
    CONTACT_PREFIX,
    CONTACT_WINDOW_SECONDS,
    AttemptLimiter,
    get_attempt_limiter,
)
from rag_mse.services import contact_service
from rag_mse.services.client_ip_service import get_client_key
from rag_mse.utils.clock import Clock

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/contact", tags=["contact"])


class ContactRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    message: str = Field(..., min_length=10, max_length=2000)


class ContactResponse(BaseModel):
    message: str


@router.post("", response_model=ContactResponse, dependencies=[Depends(require_csrf_header)])
async def submit_contact(
    body: ContactRequest,
    request: Request,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    attempt_limiter: AttemptLimiter = Depends(get_attempt_limiter),
):
    """Send a message to the association's admins."""
    enforce_fixed_window(
        attempt_limiter,
        CONTACT_PREFIX,
        get_client_key(request),
        window_seconds=CONTACT_WINDOW_SECONDS,
        max_attempts=CONTACT_MAX_ATTEMPTS,
        action="contact",
    )
    try:
        contact_service.submit_contact(db, body.name, body.email, body.message, now=clock())
    except contact_service.ContactNotConfigured:
        logger.error("Contact form submitted but ADMIN_EMAILS is empty")
        raise HTTPException(
            status_code=500,
            detail="E-Mail-Konfiguration unvollständig. Bitte kontaktieren Sie den Administrator.",
        )
    return ContactResponse(message="Ihre Nachricht wurde erfolgreich gesendet.")
