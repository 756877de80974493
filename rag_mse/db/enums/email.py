"""Outbox email enums."""

from enum import Enum


class OutboxStatus(str, Enum):
    """
    Delivery status of an outbox email.

    PENDING and RETRYING are claimable; SENT and FAILED are terminal
    (FAILED can be re-queued by an admin).
    """

    PENDING = "PENDING"
    RETRYING = "RETRYING"
    SENT = "SENT"
    FAILED = "FAILED"


CLAIMABLE_STATUSES = (OutboxStatus.PENDING.value, OutboxStatus.RETRYING.value)


class EmailTemplateId(str, Enum):
    """Closed set of transactional templates."""

    CONTACT = "contact"
    INVITATION = "einladung-zur-rag-mse"
    PASSWORD_RESET = "passwort-zuruecksetzen"
    EVENT_REMINDER = "termin-erinnerung"
