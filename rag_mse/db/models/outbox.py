"""SQLAlchemy ORM model for the transactional email outbox."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from rag_mse.db.base import Base
from rag_mse.db.enums import DEFAULT_OUTBOX_STATUS
from rag_mse.utils.clock import utcnow


class OutboxEmail(Base):
    """
    Queued transactional email.

    Written in the same transaction as the action that triggers it and
    delivered by the outbox dispatcher. The template is rendered again at
    send time from template + variables; subject is kept for admin search.
    Rows are never deleted.
    """

    __tablename__ = "outgoing_emails"
    __table_args__ = (
        Index("idx_outgoing_emails_due", "status", "next_attempt_at"),
        Index("idx_outgoing_emails_lock", "status", "locked_until"),
        Index("idx_outgoing_emails_created", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    template: Mapped[str] = mapped_column(String(100), nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    subject: Mapped[str] = mapped_column(String(500), nullable=False)
    variables: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    attachments: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    status: Mapped[str] = mapped_column(
        String(20),
        default=DEFAULT_OUTBOX_STATUS.value,
        server_default=text(f"'{DEFAULT_OUTBOX_STATUS.value}'"),
        nullable=False,
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"), nullable=False)
    queued_at: Mapped[datetime] = mapped_column(nullable=False)
    next_attempt_at: Mapped[datetime] = mapped_column(nullable=False)
    last_attempt_at: Mapped[datetime | None] = mapped_column(nullable=True)
    locked_until: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)
