"""Baseline migration - members, one-time tokens, events and the mail outbox

Revision ID: 0001_baseline
Revises:
Create Date: 2026-02-01

Timestamps are naive UTC (TIMESTAMP WITHOUT TIME ZONE).
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables."""

    # ==========================================================================
    # Users
    # ==========================================================================
    op.execute('''
        CREATE TABLE users (
            id UUID PRIMARY KEY,
            email VARCHAR(255) UNIQUE NOT NULL,
            name VARCHAR(100),
            password_hash VARCHAR(255),
            role VARCHAR(20) NOT NULL DEFAULT 'MEMBER',
            is_active BOOLEAN NOT NULL DEFAULT true,
            token_version INTEGER NOT NULL DEFAULT 1,
            password_updated_at TIMESTAMP,
            event_reminder_enabled BOOLEAN NOT NULL DEFAULT true,
            event_reminder_days_before INTEGER NOT NULL DEFAULT 7,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            CONSTRAINT ck_users_reminder_days_before
                CHECK (event_reminder_days_before >= 1 AND event_reminder_days_before <= 14)
        )
    ''')

    # ==========================================================================
    # Password resets
    # ==========================================================================
    op.execute('''
        CREATE TABLE password_resets (
            id UUID PRIMARY KEY,
            email VARCHAR(255) NOT NULL,
            token_hash VARCHAR(64) UNIQUE NOT NULL,
            expires_at TIMESTAMP NOT NULL,
            used_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL
        )
    ''')
    op.execute('CREATE INDEX idx_password_resets_email ON password_resets(email)')

    # ==========================================================================
    # Invitations
    # ==========================================================================
    op.execute('''
        CREATE TABLE invitations (
            id UUID PRIMARY KEY,
            email VARCHAR(255) NOT NULL,
            role VARCHAR(20) NOT NULL,
            token_hash VARCHAR(64) UNIQUE NOT NULL,
            expires_at TIMESTAMP NOT NULL,
            used_at TIMESTAMP,
            invited_by_user_id UUID REFERENCES users(id) ON DELETE SET NULL,
            created_at TIMESTAMP NOT NULL
        )
    ''')
    op.execute('CREATE INDEX idx_invitations_email ON invitations(email)')

    # ==========================================================================
    # Events and votes
    # ==========================================================================
    op.execute('''
        CREATE TABLE events (
            id UUID PRIMARY KEY,
            date DATE NOT NULL,
            time_from VARCHAR(5) NOT NULL,
            time_to VARCHAR(5) NOT NULL,
            location VARCHAR(255) NOT NULL,
            description TEXT NOT NULL,
            type VARCHAR(50),
            visible BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMP NOT NULL
        )
    ''')
    op.execute('CREATE INDEX idx_events_date ON events(date)')

    op.execute('''
        CREATE TABLE votes (
            id UUID PRIMARY KEY,
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            event_id UUID NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            vote VARCHAR(20) NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            CONSTRAINT uq_votes_user_event UNIQUE (user_id, event_id)
        )
    ''')

    op.execute('''
        CREATE TABLE event_reminder_dispatches (
            id UUID PRIMARY KEY,
            user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            event_id UUID NOT NULL REFERENCES events(id) ON DELETE CASCADE,
            days_before INTEGER NOT NULL,
            rsvp_token_hash VARCHAR(64) UNIQUE NOT NULL,
            rsvp_token_expires_at TIMESTAMP NOT NULL,
            rsvp_used_at TIMESTAMP,
            unsubscribe_token_hash VARCHAR(64) UNIQUE NOT NULL,
            unsubscribe_token_expires_at TIMESTAMP NOT NULL,
            queued_at TIMESTAMP NOT NULL,
            CONSTRAINT uq_reminder_dispatch_user_event UNIQUE (user_id, event_id)
        )
    ''')
    op.execute('CREATE INDEX idx_reminder_dispatch_event ON event_reminder_dispatches(event_id)')

    # ==========================================================================
    # Mail outbox
    # ==========================================================================
    op.execute('''
        CREATE TABLE outgoing_emails (
            id UUID PRIMARY KEY,
            template VARCHAR(100) NOT NULL,
            recipient VARCHAR(255) NOT NULL,
            subject VARCHAR(500) NOT NULL,
            variables JSON NOT NULL,
            attachments JSON NOT NULL,
            status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
            attempt_count INTEGER NOT NULL DEFAULT 0,
            queued_at TIMESTAMP NOT NULL,
            next_attempt_at TIMESTAMP NOT NULL,
            last_attempt_at TIMESTAMP,
            locked_until TIMESTAMP,
            last_error TEXT,
            sent_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
    ''')
    op.execute('CREATE INDEX idx_outgoing_emails_due ON outgoing_emails(status, next_attempt_at)')
    op.execute('CREATE INDEX idx_outgoing_emails_lock ON outgoing_emails(status, locked_until)')
    op.execute('CREATE INDEX idx_outgoing_emails_created ON outgoing_emails(created_at)')


def downgrade() -> None:
    """Drop all tables."""
    op.execute('DROP TABLE IF EXISTS outgoing_emails')
    op.execute('DROP TABLE IF EXISTS event_reminder_dispatches')
    op.execute('DROP TABLE IF EXISTS votes')
    op.execute('DROP TABLE IF EXISTS events')
    op.execute('DROP TABLE IF EXISTS invitations')
    op.execute('DROP TABLE IF EXISTS password_resets')
    op.execute('DROP TABLE IF EXISTS users')
