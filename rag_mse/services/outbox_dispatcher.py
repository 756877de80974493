"""Outbox dispatcher - claims due emails, sends them and records the outcome."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.orm import Session

from rag_mse.core.config import settings
from rag_mse.core.scheduler import PeriodicTask, Sleep
from rag_mse.core.structured_logging import build_log_context, mask_email
from rag_mse.db.models import OutboxEmail
from rag_mse.services import email_template_service, outbox_service
from rag_mse.services.mail_transport import (
    MailAttachment,
    MailMessage,
    MailTransport,
    classify_transport_error,
)
from rag_mse.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatcherConfig:
    poll_interval_seconds: float = 10.0
    batch_size: int = 10
    lock_seconds: int = 300
    max_attempts: int = 8
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 3600.0
    backoff_jitter: float = 0.2
    send_timeout_seconds: float = 40.0

    def __post_init__(self):
        if self.lock_seconds <= self.send_timeout_seconds:
            raise ValueError("lock_seconds must be longer than send_timeout_seconds")

    @classmethod
    def from_settings(cls) -> "DispatcherConfig":
        return cls(
            poll_interval_seconds=settings.OUTBOX_POLL_INTERVAL_SECONDS,
            batch_size=settings.OUTBOX_BATCH_SIZE,
            lock_seconds=settings.OUTBOX_LOCK_SECONDS,
            max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
            backoff_base_seconds=settings.OUTBOX_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.OUTBOX_BACKOFF_MAX_SECONDS,
            backoff_jitter=settings.OUTBOX_BACKOFF_JITTER,
            send_timeout_seconds=settings.SMTP_CONNECT_TIMEOUT_SECONDS + settings.SMTP_TIMEOUT_SECONDS,
        )


@dataclass
class DispatchResult:
    claimed: int = 0
    sent: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0


def compute_backoff_seconds(
    attempt_count: int,
    base_seconds: float,
    max_seconds: float,
    jitter: float,
    rng: random.Random | None = None,
) -> float:
    """
    Exponential backoff with downward jitter.

    ``min(max, base * 2 ** attempt_count)`` scaled by a factor drawn from
    ``[1 - jitter, 1]``.
    """
    rng = rng or random.Random()
    delay = min(max_seconds, base_seconds * (2 ** min(attempt_count, 32)))
    jitter = min(max(jitter, 0.0), 1.0)
    return delay * rng.uniform(1.0 - jitter, 1.0)


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        transport: MailTransport,
        clock: Clock = utcnow,
        config: DispatcherConfig | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.transport = transport
        self.clock = clock
        self.config = config or DispatcherConfig.from_settings()
        self.rng = rng or random.Random()
        self._task = PeriodicTask(
            "outbox-dispatcher",
            self.run_once,
            self.config.poll_interval_seconds,
            sleep=sleep,
        )

    def start(self) -> asyncio.Task:
        return self._task.start()

    async def stop(self) -> None:
        await self._task.stop()

    async def run_once(self) -> DispatchResult:
        """Claim one batch of due emails and process it."""
        result = DispatchResult()
        lock_duration = timedelta(seconds=self.config.lock_seconds)
        claimed_at = self.clock()
        with self.session_factory() as db:
            jobs = outbox_service.claim_due_batch(
                db,
                limit=self.config.batch_size,
                lock_duration=lock_duration,
                now=claimed_at,
            )
            result.claimed = len(jobs)
            if jobs:
                logger.info("Claimed outbox emails", extra=build_log_context(count=len(jobs)))
            for job in jobs:
                outcome = await self._process(db, job, claimed_at + lock_duration)
                setattr(result, outcome, getattr(result, outcome) + 1)
        return result

    def _next_attempt_at(self, job: OutboxEmail, now: datetime) -> datetime | None:
        if job.attempt_count + 1 >= self.config.max_attempts:
            return None
        delay = compute_backoff_seconds(
            job.attempt_count,
            self.config.backoff_base_seconds,
            self.config.backoff_max_seconds,
            self.config.backoff_jitter,
            self.rng,
        )
        return now + timedelta(seconds=delay)

    async def _process(self, db: Session, job: OutboxEmail, held_until: datetime) -> str:
        log_context = {
            "outbox_id": str(job.id),
            "template": job.template,
            "recipient": mask_email(job.recipient),
            "attempt": job.attempt_count + 1,
        }

        # Earlier sends in the batch may have outlasted the claim
        if outbox_service.renew_lock(
            db, job.id, held_until, timedelta(seconds=self.config.lock_seconds), now=self.clock()
        ) is None:
            logger.warning("Outbox email lock lost, skipping", extra=build_log_context(**log_context))
            return "skipped"

        try:
            rendered = email_template_service.render(job.template, job.variables or {})
        except email_template_service.TemplateError as e:
            outbox_service.mark_failed(db, job.id, f"Template error: {e}", None, now=self.clock())
            logger.error("Outbox email cannot be rendered", extra=build_log_context(**log_context, error=str(e)))
            return "failed"

        message = MailMessage(
            recipient=job.recipient,
            subject=rendered.subject,
            text=rendered.text,
            html=rendered.html,
            attachments=[MailAttachment.from_dict(item) for item in (job.attachments or [])],
            reference=str(job.id),
        )

        try:
            await asyncio.wait_for(self.transport.send(message), timeout=self.config.send_timeout_seconds)
        except Exception as e:
            error = classify_transport_error(e)
            now = self.clock()
            next_attempt_at = None if error.permanent else self._next_attempt_at(job, now)
            outbox_service.mark_failed(db, job.id, str(error), next_attempt_at, now=now)
            if next_attempt_at is None:
                logger.error(
                    "Outbox email failed permanently",
                    extra=build_log_context(**log_context, error=str(error), permanent=error.permanent),
                )
                return "failed"
            logger.warning(
                "Outbox email send failed, retry scheduled",
                extra=build_log_context(**log_context, error=str(error), next_attempt_at=next_attempt_at.isoformat()),
            )
            return "retrying"

        outbox_service.mark_sent(db, job.id, now=self.clock())
        logger.info("Outbox email sent", extra=build_log_context(**log_context, transport=self.transport.key))
        return "sent"
