"""Mail transports used by the outbox dispatcher."""

from __future__ import annotations

import asyncio
import logging
import tempfile
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from pathlib import Path
from typing import Protocol

import aiosmtplib

from rag_mse.core.config import settings
from rag_mse.core.structured_logging import build_log_context, mask_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MailAttachment:
    filename: str
    content: str
    content_type: str = "application/octet-stream"

    @classmethod
    def from_dict(cls, data: dict) -> "MailAttachment":
        return cls(
            filename=data["filename"],
            content=data["content"],
            content_type=data.get("content_type") or "application/octet-stream",
        )


@dataclass(frozen=True)
class MailMessage:
    recipient: str
    subject: str
    text: str
    html: str
    attachments: list[MailAttachment] = field(default_factory=list)
    reference: str | None = None  # outbox id, for logs


class MailTransport(Protocol):
    key: str

    async def send(self, message: MailMessage) -> str | None:
        """Deliver a message; returns a provider message id when known."""


# =============================================================================
# Errors
# =============================================================================

class TransportError(Exception):
    """Delivery failed. ``permanent`` errors are not retried."""

    def __init__(self, message: str, *, permanent: bool):
        super().__init__(message)
        self.permanent = permanent


PERMANENT_ERROR_PATTERNS = (
    "invalid credentials",
    "authentication failed",
    "access denied",
    "sender address rejected",
    "recipient address rejected",
    "mailbox unavailable",
    "user unknown",
    "invalid login",
    "certificate verify failed",
    "wrong_version_number",
)

TRANSIENT_ERROR_PATTERNS = (
    "timeout",
    "timed out",
    "connection",
    "network",
    "temporary",
    "temporarily unavailable",
    "try again",
    "rate limit",
)


def _smtp_code(exc: BaseException) -> int | None:
    code = getattr(exc, "code", None)
    return code if isinstance(code, int) else None


def classify_transport_error(exc: BaseException) -> TransportError:
    """
    Map an exception raised while sending to a TransportError.

    SMTP 5xx, authentication and rejected addresses are permanent. Timeouts,
    connection problems and SMTP 4xx are transient. Anything unrecognised is
    treated as transient so it gets retried within the attempt budget.
    """
    if isinstance(exc, TransportError):
        return exc

    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransportError(f"Timeout: {message}", permanent=False)
    if isinstance(exc, aiosmtplib.SMTPAuthenticationError):
        return TransportError(f"Authentication failed: {message}", permanent=True)
    if isinstance(exc, (aiosmtplib.SMTPSenderRefused, aiosmtplib.SMTPRecipientRefused, aiosmtplib.SMTPRecipientsRefused)):
        return TransportError(f"Address rejected: {message}", permanent=True)

    code = _smtp_code(exc)
    if code is not None:
        if 500 <= code < 600:
            return TransportError(f"SMTP {code}: {message}", permanent=True)
        if 400 <= code < 500:
            return TransportError(f"SMTP {code}: {message}", permanent=False)

    if isinstance(exc, (aiosmtplib.SMTPConnectError, aiosmtplib.SMTPServerDisconnected, ConnectionError)):
        return TransportError(f"Connection error: {message}", permanent=False)

    lowered = message.lower()
    if any(pattern in lowered for pattern in PERMANENT_ERROR_PATTERNS):
        return TransportError(message, permanent=True)
    if any(pattern in lowered for pattern in TRANSIENT_ERROR_PATTERNS):
        return TransportError(message, permanent=False)
    return TransportError(f"Unknown error: {message}", permanent=False)


# =============================================================================
# MIME
# =============================================================================

def format_from_header(name: str, address: str) -> str:
    """'"Name" <addr>' with the address extracted if SMTP_FROM already has a display name."""
    address = address.strip()
    if "<" in address and ">" in address:
        address = address[address.index("<") + 1 : address.index(">")].strip()
    return formataddr((name, address))


def build_mime_message(message: MailMessage, sender: str) -> EmailMessage:
    mime = EmailMessage()
    mime["From"] = sender
    mime["To"] = message.recipient
    mime["Subject"] = message.subject
    _, _, domain = sender.rstrip(">").rpartition("@")
    mime["Message-ID"] = make_msgid(domain=domain or None)
    mime.set_content(message.text)
    mime.add_alternative(message.html, subtype="html")
    for attachment in message.attachments:
        maintype, _, subtype = attachment.content_type.partition("/")
        mime.add_attachment(
            attachment.content.encode("utf-8"),
            maintype=maintype or "application",
            subtype=(subtype or "octet-stream").split(";")[0].strip(),
            filename=attachment.filename,
        )
    return mime


# =============================================================================
# Transports
# =============================================================================

class SmtpTransport:
    """SMTP delivery via aiosmtplib (implicit TLS on 465, STARTTLS otherwise)."""

    key = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        username: str | None,
        password: str | None,
        sender: str,
        timeout_seconds: float = 30,
        connect_timeout_seconds: float = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.sender = sender
        self.timeout_seconds = timeout_seconds
        self.connect_timeout_seconds = connect_timeout_seconds

    @classmethod
    def from_settings(cls) -> "SmtpTransport":
        return cls(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            username=settings.SMTP_USER or None,
            password=settings.SMTP_PASSWORD or None,
            sender=format_from_header(settings.APP_NAME, settings.SMTP_FROM),
            timeout_seconds=settings.SMTP_TIMEOUT_SECONDS,
            connect_timeout_seconds=settings.SMTP_CONNECT_TIMEOUT_SECONDS,
        )

    async def send(self, message: MailMessage) -> str | None:
        if not self.host or "@" not in self.sender:
            raise TransportError("E-Mail-Konfiguration unvollständig", permanent=False)
        mime = build_mime_message(message, self.sender)
        implicit_tls = self.port == 465
        smtp = aiosmtplib.SMTP(
            hostname=self.host,
            port=self.port,
            use_tls=implicit_tls,
            start_tls=False if implicit_tls else None,
            timeout=self.timeout_seconds,
        )
        try:
            await smtp.connect(timeout=self.connect_timeout_seconds)
            if self.username and self.password:
                await smtp.login(self.username, self.password)
            await smtp.send_message(mime)
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException:
                    smtp.close()
        return mime["Message-ID"]


class DevLogTransport:
    """
    Development transport: logs the message and/or writes an .eml file
    instead of sending.
    """

    key = "dev-log"

    def __init__(self, method: str = "console", log_dir: str | Path = "logs/emails", sender: str = ""):
        self.method = method if method in ("console", "file", "both") else "console"
        self.log_dir = Path(log_dir)
        self.sender = sender or format_from_header(settings.APP_NAME, settings.SMTP_FROM or "noreply@localhost")

    def _writable_dir(self) -> Path:
        candidates = [self.log_dir, Path(tempfile.gettempdir()) / "rag-mse" / "emails"]
        last_error: OSError | None = None
        for candidate in candidates:
            try:
                candidate.mkdir(parents=True, exist_ok=True)
                marker = candidate / ".write-test"
                marker.write_text("", encoding="utf-8")
                marker.unlink()
            except OSError as e:
                last_error = e
                continue
            if candidate != self.log_dir:
                logger.warning(
                    "Email log directory not writable, using fallback",
                    extra=build_log_context(configured_dir=str(self.log_dir), fallback_dir=str(candidate)),
                )
            return candidate
        raise TransportError(f"No writable email log directory: {last_error}", permanent=False)

    def _write_file(self, message: MailMessage) -> Path:
        mime = build_mime_message(message, self.sender)
        directory = self._writable_dir()
        name = message.reference or mime["Message-ID"].strip("<>").split("@")[0]
        path = directory / f"{name}.eml"
        path.write_bytes(bytes(mime))
        return path

    async def send(self, message: MailMessage) -> str | None:
        if self.method in ("console", "both"):
            logger.info(
                "[DEV MODE] Email logged instead of sent via SMTP\nSubject: %s\n\n%s",
                message.subject,
                message.text,
                extra=build_log_context(
                    outbox_id=message.reference,
                    recipient=mask_email(message.recipient),
                    attachments=len(message.attachments) or None,
                ),
            )
        if self.method in ("file", "both"):
            path = await asyncio.to_thread(self._write_file, message)
            logger.info(
                "[DEV MODE] Email written to file",
                extra=build_log_context(outbox_id=message.reference, file_path=str(path)),
            )
        return f"dev-mode-{message.reference}" if message.reference else None


def build_transport() -> MailTransport:
    """SMTP in normal operation, DevLogTransport when EMAIL_DEV_MODE is set."""
    if settings.EMAIL_DEV_MODE:
        return DevLogTransport(method=settings.EMAIL_DEV_LOG_METHOD, log_dir=settings.EMAIL_DEV_LOG_DIR)
    return SmtpTransport.from_settings()
