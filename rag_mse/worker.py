"""
Background worker: outbox dispatcher and event reminder scheduler.

Usage:
    python -m rag_mse.worker

Run as a separate process next to the API (systemd service, Docker container).
Several workers may run at once; outbox claims and reminder dispatch rows
keep them from sending the same email twice.
"""

import asyncio
import logging
import signal

from rag_mse.core.config import settings
from rag_mse.core.scheduler import PeriodicTask
from rag_mse.core.structured_logging import build_log_context, configure_logging
from rag_mse.db.session import SessionLocal
from rag_mse.services import notification_service
from rag_mse.services.mail_transport import build_transport
from rag_mse.services.outbox_dispatcher import OutboxDispatcher

configure_logging()
logger = logging.getLogger(__name__)


async def queue_reminders() -> int:
    """One reminder scheduling pass (own session)."""
    with SessionLocal() as db:
        return notification_service.queue_event_reminders(db)


def build_reminder_task() -> PeriodicTask:
    return PeriodicTask("event-reminders", queue_reminders, settings.REMINDER_POLL_INTERVAL_SECONDS)


async def worker_loop() -> None:
    """Start both loops and run until SIGTERM/SIGINT."""
    transport = build_transport()
    dispatcher = OutboxDispatcher(SessionLocal, transport)
    reminders = build_reminder_task()

    logger.info(
        "Worker starting",
        extra=build_log_context(
            transport=transport.key,
            poll_interval_seconds=dispatcher.config.poll_interval_seconds,
            batch_size=dispatcher.config.batch_size,
        ),
    )
    if settings.EMAIL_DEV_MODE:
        logger.warning("EMAIL_DEV_MODE is on - emails are logged, not sent")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; KeyboardInterrupt still works.
            pass

    dispatcher.start()
    reminders.start()
    try:
        await stop_event.wait()
    finally:
        await reminders.stop()
        await dispatcher.stop()
        logger.info("Worker stopped")


def main() -> None:
    """Entry point for the worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down")
    except Exception:
        logger.exception(
            "Worker crashed",
            extra=build_log_context(route="worker", method="background"),
        )
        raise


if __name__ == "__main__":
    main()
