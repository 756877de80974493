"""Enum definitions for application constants."""

from rag_mse.db.enums.auth import Role
from rag_mse.db.enums.email import CLAIMABLE_STATUSES, EmailTemplateId, OutboxStatus
from rag_mse.db.enums.events import VoteType

DEFAULT_OUTBOX_STATUS = OutboxStatus.PENDING
DEFAULT_ROLE = Role.MEMBER

__all__ = [
    "CLAIMABLE_STATUSES",
    "DEFAULT_OUTBOX_STATUS",
    "DEFAULT_ROLE",
    "EmailTemplateId",
    "OutboxStatus",
    "Role",
    "VoteType",
]
