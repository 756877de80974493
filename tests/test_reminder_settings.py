"""Tests for member reminder settings and the admin reminder log."""
from datetime import date, timedelta
from typing import AsyncGenerator

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from rag_mse.core.deps import COOKIE_NAME
from rag_mse.core.security import create_session_token
from rag_mse.db.models import EventReminderDispatch, User
from rag_mse.main import app
from rag_mse.services import outbox_service
from rag_mse.services.notification_service import queue_event_reminders
from tests.conftest import (
    CSRF_HEADERS,
    FIXED_NOW,
    _override_dependencies,
    make_event,
    make_user,
)


@pytest.fixture
async def member_client(db: Session, clock, attempt_limiter, member: User) -> AsyncGenerator[AsyncClient, None]:
    """Member client with session cookie and CSRF header."""
    _override_dependencies(db, clock, attempt_limiter)
    token = create_session_token(user_id=member.id, role=member.role, token_version=member.token_version)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={COOKIE_NAME: token},
        headers=CSRF_HEADERS,
    ) as c:
        yield c

    app.dependency_overrides.clear()


# =============================================================================
# Member settings
# =============================================================================

async def test_get_settings_returns_defaults(member_client: AsyncClient):
    response = await member_client.get("/user/notifications")

    assert response.status_code == 200
    assert response.json() == {"event_reminder_enabled": True, "event_reminder_days_before": 7}


async def test_get_settings_requires_login(client: AsyncClient):
    response = await client.get("/user/notifications")

    assert response.status_code == 401


async def test_update_settings(member_client: AsyncClient, db: Session, member: User):
    response = await member_client.put(
        "/user/notifications",
        json={"eventReminderEnabled": False, "eventReminderDaysBefore": 3},
    )

    assert response.status_code == 200
    assert response.json() == {"event_reminder_enabled": False, "event_reminder_days_before": 3}
    db.refresh(member)
    assert member.event_reminder_enabled is False
    assert member.event_reminder_days_before == 3
    assert member.updated_at == FIXED_NOW


async def test_update_single_field_keeps_the_other(member_client: AsyncClient):
    response = await member_client.put("/user/notifications", json={"event_reminder_days_before": 14})

    assert response.status_code == 200
    assert response.json() == {"event_reminder_enabled": True, "event_reminder_days_before": 14}


async def test_update_without_fields_is_rejected(member_client: AsyncClient):
    response = await member_client.put("/user/notifications", json={})

    assert response.status_code == 400
    assert response.json()["detail"] == "Mindestens ein Feld muss aktualisiert werden"


@pytest.mark.parametrize("days", [0, 15])
async def test_update_days_out_of_range(member_client: AsyncClient, db: Session, member: User, days: int):
    response = await member_client.put("/user/notifications", json={"eventReminderDaysBefore": days})

    assert response.status_code == 400
    assert "zwischen 1 und 14" in response.json()["detail"]
    db.refresh(member)
    assert member.event_reminder_days_before == 7


@pytest.mark.parametrize(
    "body",
    [{"eventReminderEnabled": "ja"}, {"eventReminderDaysBefore": "3"}, {"eventReminderDaysBefore": 2.5}],
)
async def test_update_rejects_wrong_types(member_client: AsyncClient, body: dict):
    response = await member_client.put("/user/notifications", json=body)

    assert response.status_code == 422


async def test_update_requires_csrf_header(db: Session, clock, attempt_limiter, member: User):
    _override_dependencies(db, clock, attempt_limiter)
    token = create_session_token(user_id=member.id, role=member.role, token_version=member.token_version)
    try:
        async with AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            cookies={COOKIE_NAME: token},
        ) as c:
            response = await c.put("/user/notifications", json={"eventReminderEnabled": False})
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    db.refresh(member)
    assert member.event_reminder_enabled is True


# =============================================================================
# Admin reminder log
# =============================================================================

def _queue_for(db: Session, admin_auth, *emails: str) -> None:
    """Queue reminders for the given members for an event a week ahead."""
    admin_auth.user.event_reminder_enabled = False
    db.commit()
    for email in emails:
        make_user(db, email=email)
    make_event(db, date(2026, 2, 17))
    assert queue_event_reminders(db, now=FIXED_NOW) == len(emails)


async def test_admin_log_lists_recent_reminders(admin_client: AsyncClient, db: Session, admin_auth):
    _queue_for(db, admin_auth, "schuetze@rag-mse.de")

    response = await admin_client.get("/admin/notifications")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    assert data["page"] == 1
    assert data["pages"] == 1
    item = data["items"][0]
    assert item["status"] == "AUSSTEHEND"
    assert item["sent_at"] is None
    assert item["days_before"] == 7
    assert item["user"]["email"] == "schuetze@rag-mse.de"
    assert item["event"]["date"] == "2026-02-17"
    assert item["event"]["location"] == "Schießstand Neubrandenburg"


async def test_admin_log_reflects_delivery(admin_client: AsyncClient, db: Session, admin_auth):
    _queue_for(db, admin_auth, "schuetze@rag-mse.de")
    dispatch = db.query(EventReminderDispatch).one()
    assert outbox_service.mark_sent(db, dispatch.outbox_email_id, now=FIXED_NOW + timedelta(minutes=5))

    response = await admin_client.get("/admin/notifications")

    item = response.json()["items"][0]
    assert item["status"] == "VERSENDET"
    assert item["sent_at"].startswith("2026-02-10T09:05")


async def test_admin_log_search_and_pagination(admin_client: AsyncClient, db: Session, admin_auth):
    _queue_for(db, admin_auth, "anna@rag-mse.de", "bernd@rag-mse.de", "carla@rag-mse.de")

    response = await admin_client.get("/admin/notifications", params={"q": "BERND"})
    data = response.json()
    assert data["total"] == 1
    assert data["items"][0]["user"]["email"] == "bernd@rag-mse.de"

    response = await admin_client.get("/admin/notifications", params={"page": 2, "limit": 2})
    data = response.json()
    assert data["total"] == 3
    assert data["pages"] == 2
    assert len(data["items"]) == 1


async def test_admin_log_skips_old_reminders(admin_client: AsyncClient, db: Session, admin_auth):
    admin_auth.user.event_reminder_enabled = False
    db.commit()
    make_user(db, email="schuetze@rag-mse.de")
    long_ago = FIXED_NOW - timedelta(days=40)
    make_event(db, date(2026, 1, 8))
    assert queue_event_reminders(db, now=long_ago) == 1

    response = await admin_client.get("/admin/notifications")

    assert response.json()["total"] == 0


async def test_admin_log_requires_admin(member_client: AsyncClient):
    response = await member_client.get("/admin/notifications")

    assert response.status_code == 403
