"""iCalendar (.ics) attachments for event reminder emails."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta

from rag_mse.core.config import settings
from rag_mse.utils.clock import utcnow

ICS_CONTENT_TYPE = "text/calendar; charset=utf-8; method=PUBLISH"


def escape_ics_value(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
        .replace(",", "\\,")
        .replace(";", "\\;")
    )


def _local_stamp(value: datetime) -> str:
    return value.strftime("%Y%m%dT%H%M%S")


def parse_hhmm(value: str) -> time:
    hours, _, minutes = value.partition(":")
    return time(int(hours), int(minutes or 0))


def build_calendar_event(
    *,
    uid: str,
    title: str,
    description: str,
    location: str,
    start: datetime,
    end: datetime,
    stamp: datetime | None = None,
) -> str:
    """
    Single-event VCALENDAR document.

    start/end are local wall-clock times (floating); DTSTAMP is UTC.
    """
    stamp = stamp or utcnow()
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:-//{settings.APP_NAME}//Termine//DE",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{escape_ics_value(uid)}",
        f"DTSTAMP:{_local_stamp(stamp)}Z",
        f"DTSTART:{_local_stamp(start)}",
        f"DTEND:{_local_stamp(end)}",
        f"SUMMARY:{escape_ics_value(title)}",
        f"DESCRIPTION:{escape_ics_value(description)}",
        f"LOCATION:{escape_ics_value(location)}",
        "STATUS:CONFIRMED",
        "SEQUENCE:0",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"


def build_event_attachment(
    event_id: str,
    event_date: date,
    time_from: str,
    time_to: str,
    location: str,
    stamp: datetime | None = None,
) -> dict:
    """Attachment dict (as stored on OutboxEmail.attachments) for one event."""
    start = datetime.combine(event_date, parse_hhmm(time_from))
    end = datetime.combine(event_date, parse_hhmm(time_to))
    if end <= start:
        end = start + timedelta(hours=1)

    content = build_calendar_event(
        uid=f"event-{event_id}@rag-mse",
        title=f"{settings.APP_NAME} Termin",
        description=f"Termin der {settings.APP_NAME}",
        location=location,
        start=start,
        end=end,
        stamp=stamp,
    )
    return {
        "filename": f"rag-mse-termin-{event_date.isoformat()}.ics",
        "content": content,
        "content_type": ICS_CONTENT_TYPE,
    }
