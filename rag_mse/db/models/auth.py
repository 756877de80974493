"""SQLAlchemy ORM models for members and their one-time tokens."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from rag_mse.db.base import Base
from rag_mse.db.enums import DEFAULT_ROLE
from rag_mse.utils.clock import utcnow


class User(Base):
    """
    Association member.

    Authentication itself is handled by the identity provider; this table
    holds the profile fields the mail flows read and write.
    """

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint(
            "event_reminder_days_before >= 1 AND event_reminder_days_before <= 14",
            name="ck_users_reminder_days_before",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    password_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_ROLE.value, server_default=text(f"'{DEFAULT_ROLE.value}'"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default=text("true"), nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=1, server_default=text("1"), nullable=False)
    password_updated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    event_reminder_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default=text("true"), nullable=False
    )
    event_reminder_days_before: Mapped[int] = mapped_column(
        Integer, default=7, server_default=text("7"), nullable=False
    )

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class PasswordReset(Base):
    """
    Password reset request.

    Only the SHA-256 hash of the emailed token is stored. A row is usable while
    used_at is NULL and expires_at is in the future; a newer request for the
    same email marks older rows used.
    """

    __tablename__ = "password_resets"
    __table_args__ = (
        Index("idx_password_resets_email", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Invitation(Base):
    """
    Membership invitation issued by an admin.

    Redeeming it creates (or completes) the member account. At most one
    invitation per email is active at a time.
    """

    __tablename__ = "invitations"
    __table_args__ = (
        Index("idx_invitations_email", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=DEFAULT_ROLE.value, nullable=False)
    token_hash: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(nullable=True)
    invited_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
