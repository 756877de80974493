"""Tests for .ics attachments."""
from datetime import date, datetime

from rag_mse.services.calendar_service import (
    ICS_CONTENT_TYPE,
    build_event_attachment,
    escape_ics_value,
)


def test_event_attachment():
    attachment = build_event_attachment(
        "42", date(2026, 2, 20), "18:00", "20:30", "Stand 1, Halle; Nord", stamp=datetime(2026, 2, 10, 9, 0)
    )
    assert attachment["filename"] == "rag-mse-termin-2026-02-20.ics"
    assert attachment["content_type"] == ICS_CONTENT_TYPE

    content = attachment["content"]
    assert content.startswith("BEGIN:VCALENDAR\r\n")
    assert content.endswith("END:VCALENDAR\r\n")
    assert "UID:event-42@rag-mse" in content
    assert "DTSTART:20260220T180000\r\n" in content
    assert "DTEND:20260220T203000\r\n" in content
    assert "DTSTAMP:20260210T090000Z" in content
    assert "LOCATION:Stand 1\\, Halle\\; Nord" in content


def test_end_before_start_defaults_to_one_hour():
    attachment = build_event_attachment("1", date(2026, 3, 1), "19:00", "19:00", "Ort")
    assert "DTEND:20260301T200000" in attachment["content"]


def test_escape_ics_value():
    assert escape_ics_value("a\\b\nc") == "a\\\\b\\nc"
