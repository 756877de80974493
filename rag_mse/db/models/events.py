"""SQLAlchemy ORM models for events, votes and reminder dispatches."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING
from datetime import date as date_type, datetime

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rag_mse.db.base import Base
from rag_mse.utils.clock import utcnow

if TYPE_CHECKING:
    from rag_mse.db.models import OutboxEmail, User


class Event(Base):
    """Association event (shooting date) members can vote on."""

    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_date", "date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    time_from: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    time_to: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    visible: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Vote(Base):
    """A member's attendance answer for one event."""

    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="uq_votes_user_event"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    vote: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class EventReminderDispatch(Base):
    """
    One reminder email per (user, event), carrying the RSVP and unsubscribe
    token hashes embedded in that email.
    """

    __tablename__ = "event_reminder_dispatches"
    __table_args__ = (
        UniqueConstraint("user_id", "event_id", name="uq_reminder_dispatch_user_event"),
        Index("idx_reminder_dispatch_event", "event_id"),
        Index("idx_reminder_dispatch_queued_at", "queued_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    event_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    days_before: Mapped[int] = mapped_column(Integer, nullable=False)

    rsvp_token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    rsvp_token_expires_at: Mapped[datetime] = mapped_column(nullable=False)
    rsvp_used_at: Mapped[datetime | None] = mapped_column(nullable=True)

    unsubscribe_token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    unsubscribe_token_expires_at: Mapped[datetime] = mapped_column(nullable=False)

    queued_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    outbox_email_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("outgoing_emails.id", ondelete="SET NULL"), nullable=True
    )

    # Relationships
    user: Mapped["User"] = relationship()
    event: Mapped["Event"] = relationship()
    outbox_email: Mapped["OutboxEmail | None"] = relationship()
