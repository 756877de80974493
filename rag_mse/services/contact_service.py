"""Contact form - one outbox email per configured admin recipient."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from rag_mse.core.config import settings
from rag_mse.core.structured_logging import build_log_context
from rag_mse.db.enums import EmailTemplateId
from rag_mse.db.models import OutboxEmail
from rag_mse.services import outbox_service
from rag_mse.utils.clock import utcnow

logger = logging.getLogger(__name__)


class ContactNotConfigured(RuntimeError):
    pass


def submit_contact(
    db: Session,
    name: str,
    email: str,
    message: str,
    now: datetime | None = None,
) -> list[OutboxEmail]:
    """
    Queue the contact message for every address in ADMIN_EMAILS.

    Raises:
        ContactNotConfigured: ADMIN_EMAILS is empty
    """
    now = now or utcnow()
    recipients = settings.admin_emails_list
    if not recipients:
        raise ContactNotConfigured("ADMIN_EMAILS not configured")

    variables = {"name": name.strip(), "email": email.strip(), "message": message.strip()}
    emails = [
        outbox_service.enqueue(db, EmailTemplateId.CONTACT.value, recipient, variables, now=now)
        for recipient in recipients
    ]
    db.commit()

    logger.info(
        "Contact form submitted and email queued",
        extra=build_log_context(recipients=len(recipients), message_length=len(variables["message"])),
    )
    return emails
