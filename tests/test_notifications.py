"""Tests for the RSVP and unsubscribe links in reminder emails."""
from datetime import date

import pytest
from httpx import AsyncClient
from sqlalchemy.orm import Session

from rag_mse.core.tokens import TokenInvalidOrExpired
from rag_mse.db.models import Event, EventReminderDispatch, OutboxEmail, User, Vote
from rag_mse.db.session import SessionLocal
from rag_mse.routers.notifications import INVALID_LINK_MESSAGE
from rag_mse.services import notification_service
from rag_mse.services.notification_service import queue_event_reminders
from tests.conftest import FIXED_NOW, FakeClock, make_event

TARGET_DATE = date(2026, 2, 17)


@pytest.fixture
def reminder(db: Session, member: User) -> dict:
    """Queue one reminder for the member and return its raw link tokens."""
    event = make_event(db, TARGET_DATE, type="Training", description="Luftgewehr")
    assert queue_event_reminders(db, now=FIXED_NOW) == 1
    variables = db.query(OutboxEmail).one().variables
    return {
        "event": event,
        "rsvp": variables["rsvpUrl"].rsplit("/", 1)[1],
        "unsubscribe": variables["unsubscribeUrl"].rsplit("/", 1)[1],
    }


# =============================================================================
# RSVP
# =============================================================================

async def test_get_rsvp_shows_event(client: AsyncClient, reminder: dict):
    response = await client.get(f"/notifications/rsvp/{reminder['rsvp']}")

    assert response.status_code == 200
    data = response.json()
    assert data["event"]["id"] == str(reminder["event"].id)
    assert data["event"]["date"] == "2026-02-17"
    assert data["event"]["time_from"] == "18:00"
    assert data["event"]["description"] == "Luftgewehr"
    assert data["event"]["type"] == "Training"
    assert data["user_name"] == "Test Mitglied"
    assert data["current_vote"] is None
    assert "no-store" in response.headers["Cache-Control"]


async def test_get_rsvp_shows_current_vote(client: AsyncClient, db: Session, member: User, reminder: dict):
    db.add(Vote(user_id=member.id, event_id=reminder["event"].id, vote="VIELLEICHT"))
    db.commit()

    response = await client.get(f"/notifications/rsvp/{reminder['rsvp']}")

    assert response.json()["current_vote"] == "VIELLEICHT"


async def test_submit_rsvp_records_vote(client: AsyncClient, db: Session, member: User, reminder: dict):
    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "JA"})

    assert response.status_code == 200
    assert response.json() == {"message": "Teilnahme wurde gespeichert", "vote": "JA"}
    vote = db.query(Vote).one()
    assert (vote.user_id, vote.event_id, vote.vote) == (member.id, reminder["event"].id, "JA")
    assert db.query(EventReminderDispatch).one().rsvp_used_at == FIXED_NOW


async def test_submit_rsvp_updates_existing_vote(client: AsyncClient, db: Session, member: User, reminder: dict):
    db.add(Vote(user_id=member.id, event_id=reminder["event"].id, vote="JA"))
    db.commit()

    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "NEIN"})

    assert response.status_code == 200
    db.expire_all()
    assert [v.vote for v in db.query(Vote).all()] == ["NEIN"]


async def test_rsvp_link_works_once(client: AsyncClient, reminder: dict):
    url = f"/notifications/rsvp/{reminder['rsvp']}"
    assert (await client.post(url, json={"vote": "JA"})).status_code == 200

    second = await client.post(url, json={"vote": "NEIN"})
    assert second.status_code == 404
    assert second.json()["detail"] == INVALID_LINK_MESSAGE
    assert (await client.get(url)).status_code == 404


async def test_submit_rsvp_rejects_unknown_vote(client: AsyncClient, db: Session, reminder: dict):
    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "VIELLEICHT SPÄTER"})

    assert response.status_code == 400
    assert "JA, NEIN, VIELLEICHT" in response.json()["detail"]
    assert db.query(EventReminderDispatch).one().rsvp_used_at is None


async def test_rsvp_for_hidden_event_is_invalid(client: AsyncClient, db: Session, reminder: dict):
    event = db.get(Event, reminder["event"].id)
    event.visible = False
    db.commit()

    assert (await client.get(f"/notifications/rsvp/{reminder['rsvp']}")).status_code == 404
    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "JA"})
    assert response.status_code == 404


async def test_rsvp_for_past_event_is_rejected(client: AsyncClient, db: Session, reminder: dict, clock: FakeClock):
    clock.advance(days=8)

    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "JA"})

    assert response.status_code == 400
    assert db.query(Vote).count() == 0


async def test_rsvp_on_event_day_is_allowed(client: AsyncClient, reminder: dict, clock: FakeClock):
    clock.advance(days=7)

    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "NEIN"})

    assert response.status_code == 200


async def test_rsvp_link_expires(client: AsyncClient, db: Session, reminder: dict, clock: FakeClock):
    clock.advance(days=60)

    response = await client.get(f"/notifications/rsvp/{reminder['rsvp']}")

    assert response.status_code == 404


async def test_rsvp_unknown_token(client: AsyncClient, db: Session):
    response = await client.get("/notifications/rsvp/unbekannt")

    assert response.status_code == 404
    assert "no-store" in response.headers["Cache-Control"]


async def test_rsvp_requires_csrf_header(client: AsyncClient, reminder: dict):
    response = await client.post(
        f"/notifications/rsvp/{reminder['rsvp']}",
        json={"vote": "JA"},
        headers={"X-Requested-With": ""},
    )
    assert response.status_code == 403


async def test_rsvp_fails_closed_without_limiter(client: AsyncClient, db: Session, reminder: dict, attempt_limiter):
    class BrokenStore:
        def update(self, key, mutator):
            raise ConnectionError("redis down")

    attempt_limiter.store = BrokenStore()

    response = await client.post(f"/notifications/rsvp/{reminder['rsvp']}", json={"vote": "JA"})

    assert response.status_code == 503
    assert db.query(Vote).count() == 0


# =============================================================================
# Unsubscribe
# =============================================================================

async def test_unsubscribe_disables_reminders(client: AsyncClient, db: Session, member: User, reminder: dict):
    response = await client.post(f"/notifications/unsubscribe/{reminder['unsubscribe']}")

    assert response.status_code == 200
    assert response.json()["message"] == "Terminerinnerungen wurden deaktiviert"
    assert "no-store" in response.headers["Cache-Control"]
    db.expire_all()
    assert db.get(User, member.id).event_reminder_enabled is False


async def test_unsubscribe_is_idempotent(client: AsyncClient, reminder: dict):
    url = f"/notifications/unsubscribe/{reminder['unsubscribe']}"
    assert (await client.post(url)).status_code == 200
    assert (await client.post(url)).status_code == 200


async def test_unsubscribe_does_not_consume_rsvp_link(client: AsyncClient, reminder: dict):
    await client.post(f"/notifications/unsubscribe/{reminder['unsubscribe']}")

    response = await client.get(f"/notifications/rsvp/{reminder['rsvp']}")

    assert response.status_code == 200


async def test_rsvp_token_cannot_unsubscribe(client: AsyncClient, reminder: dict):
    response = await client.post(f"/notifications/unsubscribe/{reminder['rsvp']}")
    assert response.status_code == 404


async def test_unsubscribe_link_expires(client: AsyncClient, reminder: dict, clock: FakeClock):
    clock.advance(days=61)

    response = await client.post(f"/notifications/unsubscribe/{reminder['unsubscribe']}")

    assert response.status_code == 404
    assert response.json()["detail"] == INVALID_LINK_MESSAGE


def test_concurrent_rsvps_only_first_wins(db: Session, member: User, reminder: dict):
    # Both requests have validated the token before either commits
    notification_service.get_rsvp_context(db, reminder["rsvp"], now=FIXED_NOW)

    other = SessionLocal()
    try:
        notification_service.submit_rsvp(other, reminder["rsvp"], "JA", now=FIXED_NOW)
    finally:
        other.close()

    with pytest.raises(TokenInvalidOrExpired):
        notification_service.submit_rsvp(db, reminder["rsvp"], "NEIN", now=FIXED_NOW)

    db.expire_all()
    assert [v.vote for v in db.query(Vote).all()] == ["JA"]
