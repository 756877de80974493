"""CLI tools for operating the mail outbox and reminders."""

import asyncio
from uuid import UUID

import click

from rag_mse.db.session import SessionLocal
from rag_mse.services import notification_service, outbox_service
from rag_mse.services.mail_transport import build_transport
from rag_mse.services.outbox_dispatcher import OutboxDispatcher


@click.group()
def cli():
    """RAG MSE CLI tools."""
    pass


@cli.command()
def process_outbox():
    """
    Send one batch of due outbox emails and exit.

    Example:
        python -m rag_mse.cli process-outbox
    """
    dispatcher = OutboxDispatcher(SessionLocal, build_transport())
    result = asyncio.run(dispatcher.run_once())
    click.echo(
        f"✓ Claimed {result.claimed}: {result.sent} sent, "
        f"{result.retrying} retrying, {result.failed} failed, {result.skipped} skipped"
    )


@cli.command()
def queue_reminders():
    """Queue event reminder emails that are due today."""
    db = SessionLocal()
    try:
        count = notification_service.queue_event_reminders(db)
        click.echo(f"✓ Queued {count} reminder(s)")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise
    finally:
        db.close()


@cli.command()
@click.argument("email_id", type=click.UUID)
def retry_email(email_id: UUID):
    """Re-queue a FAILED outbox email."""
    db = SessionLocal()
    try:
        email = outbox_service.retry_failed(db, email_id)
        click.echo(f"✓ {email.id} re-queued for {email.recipient}")
    except (LookupError, outbox_service.OutboxStateError) as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    finally:
        db.close()


if __name__ == "__main__":
    cli()
