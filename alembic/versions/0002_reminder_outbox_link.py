"""Link reminder dispatches to their outbox email

Revision ID: 0002_reminder_outbox_link
Revises: 0001_baseline
Create Date: 2026-02-12

The admin notification log reads delivery state from the outbox row.
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002_reminder_outbox_link"
down_revision = "0001_baseline"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "event_reminder_dispatches",
        sa.Column(
            "outbox_email_id",
            sa.Uuid(),
            sa.ForeignKey("outgoing_emails.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.create_index(
        "idx_reminder_dispatch_queued_at",
        "event_reminder_dispatches",
        ["queued_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_reminder_dispatch_queued_at", table_name="event_reminder_dispatches")
    op.drop_column("event_reminder_dispatches", "outbox_email_id")
