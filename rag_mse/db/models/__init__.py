"""SQLAlchemy ORM models."""

from rag_mse.db.models.auth import Invitation, PasswordReset, User
from rag_mse.db.models.events import Event, EventReminderDispatch, Vote
from rag_mse.db.models.outbox import OutboxEmail

__all__ = [
    "Event",
    "EventReminderDispatch",
    "Invitation",
    "OutboxEmail",
    "PasswordReset",
    "User",
    "Vote",
]
