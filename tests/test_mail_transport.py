"""Tests for mail transports and error classification."""
import asyncio
import email

import aiosmtplib
import pytest

from rag_mse.services.mail_transport import (
    DevLogTransport,
    MailAttachment,
    MailMessage,
    SmtpTransport,
    TransportError,
    build_mime_message,
    classify_transport_error,
    format_from_header,
)

MESSAGE = MailMessage(
    recipient="mitglied@rag-mse.de",
    subject="Terminerinnerung: 17.02.2026 in Schießstand",
    text="Hallo,\nbis bald.",
    html="<p>Hallo,<br />bis bald.</p>",
    attachments=[MailAttachment("termin.ics", "BEGIN:VCALENDAR\r\nEND:VCALENDAR\r\n", "text/calendar; charset=utf-8")],
    reference="3f1c",
)


@pytest.mark.parametrize(
    ("exc", "permanent"),
    [
        (asyncio.TimeoutError(), False),
        (ConnectionRefusedError("connection refused"), False),
        (aiosmtplib.SMTPServerDisconnected("Server disconnected"), False),
        (aiosmtplib.SMTPAuthenticationError(535, "5.7.8 Authentication credentials invalid"), True),
        (aiosmtplib.SMTPRecipientRefused(550, "User unknown", "ghost@example.com"), True),
        (aiosmtplib.SMTPResponseException(421, "Service not available"), False),
        (aiosmtplib.SMTPResponseException(554, "Transaction failed"), True),
        (RuntimeError("Mailbox unavailable"), True),
        (RuntimeError("Network is unreachable"), False),
        (RuntimeError("something odd"), False),
    ],
)
def test_classify_transport_error(exc, permanent):
    assert classify_transport_error(exc).permanent is permanent


def test_classify_keeps_transport_errors():
    error = TransportError("already classified", permanent=True)
    assert classify_transport_error(error) is error


def test_unknown_errors_are_labelled():
    assert str(classify_transport_error(RuntimeError("something odd"))) == "Unknown error: something odd"


def test_format_from_header():
    assert format_from_header("RAG MSE", "noreply@rag-mse.de") == "RAG MSE <noreply@rag-mse.de>"
    assert format_from_header("RAG MSE", "Verein <noreply@rag-mse.de>") == "RAG MSE <noreply@rag-mse.de>"


def test_build_mime_message():
    mime = build_mime_message(MESSAGE, "RAG MSE <noreply@rag-mse.de>")

    assert mime["To"] == "mitglied@rag-mse.de"
    assert mime["Subject"] == MESSAGE.subject
    assert mime["Message-ID"].endswith("@rag-mse.de>")

    parsed = email.message_from_bytes(bytes(mime))
    content_types = [part.get_content_type() for part in parsed.walk()]
    assert "text/plain" in content_types
    assert "text/html" in content_types
    assert "text/calendar" in content_types
    attachment = next(part for part in parsed.walk() if part.get_content_type() == "text/calendar")
    assert attachment.get_filename() == "termin.ics"
    assert b"BEGIN:VCALENDAR" in attachment.get_payload(decode=True)


async def test_dev_transport_writes_eml_file(tmp_path):
    transport = DevLogTransport(method="file", log_dir=tmp_path, sender="RAG MSE <noreply@rag-mse.de>")

    message_id = await transport.send(MESSAGE)

    assert message_id == "dev-mode-3f1c"
    written = tmp_path / "3f1c.eml"
    assert written.exists()
    parsed = email.message_from_bytes(written.read_bytes())
    assert parsed["To"] == "mitglied@rag-mse.de"


async def test_dev_transport_logs_to_console(caplog, tmp_path):
    transport = DevLogTransport(method="console", log_dir=tmp_path, sender="noreply@rag-mse.de")

    with caplog.at_level("INFO", logger="rag_mse.services.mail_transport"):
        await transport.send(MESSAGE)

    assert "[DEV MODE]" in caplog.text
    assert MESSAGE.subject in caplog.text
    assert list(tmp_path.iterdir()) == []


async def test_smtp_transport_without_host_is_retryable():
    transport = SmtpTransport(host="", port=587, username=None, password=None, sender="noreply@rag-mse.de")

    with pytest.raises(TransportError) as exc_info:
        await transport.send(MESSAGE)

    assert exc_info.value.permanent is False
