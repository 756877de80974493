"""Tests for the admin outbox endpoints."""
import uuid
from datetime import timedelta

from httpx import AsyncClient
from sqlalchemy.orm import Session

from rag_mse.db.enums import EmailTemplateId, OutboxStatus
from rag_mse.db.models import OutboxEmail
from rag_mse.services import outbox_service
from tests.conftest import FIXED_NOW

CONTACT_VARIABLES = {"name": "Max", "email": "max@example.com", "message": "Hallo Verein"}


def queue(db: Session, recipient: str, minutes_ago: int = 0) -> OutboxEmail:
    email = outbox_service.enqueue(
        db,
        EmailTemplateId.CONTACT.value,
        recipient,
        CONTACT_VARIABLES,
        now=FIXED_NOW - timedelta(minutes=minutes_ago),
    )
    db.commit()
    return email


async def test_list_outgoing_emails(admin_client: AsyncClient, db: Session):
    queue(db, "alt@example.com", minutes_ago=30)
    queue(db, "neu@example.com", minutes_ago=5)

    response = await admin_client.get("/admin/outgoing-emails")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["page"] == 1
    assert data["pages"] == 1
    assert [item["recipient"] for item in data["items"]] == ["neu@example.com", "alt@example.com"]
    item = data["items"][0]
    assert item["status"] == "PENDING"
    assert item["template"] == "contact"
    assert item["subject"] == "Neue Kontaktanfrage von Max"
    # Variables can carry tokens and are not exposed
    assert "variables" not in item


async def test_list_outgoing_emails_filters(admin_client: AsyncClient, db: Session):
    queue(db, "a@example.com", minutes_ago=3)
    failed = queue(db, "b@example.com", minutes_ago=2)
    queue(db, "c@example.com", minutes_ago=1)
    outbox_service.mark_failed(db, failed.id, "SMTP 550: No such user", None, now=FIXED_NOW)

    response = await admin_client.get("/admin/outgoing-emails", params={"status": "FAILED"})
    assert [item["recipient"] for item in response.json()["items"]] == ["b@example.com"]
    assert response.json()["items"][0]["last_error"] == "SMTP 550: No such user"

    response = await admin_client.get("/admin/outgoing-emails", params={"q": "C@EXAMPLE"})
    assert [item["recipient"] for item in response.json()["items"]] == ["c@example.com"]

    response = await admin_client.get("/admin/outgoing-emails", params={"page": 2, "limit": 2})
    data = response.json()
    assert data["total"] == 3
    assert data["pages"] == 2
    assert [item["recipient"] for item in data["items"]] == ["a@example.com"]


async def test_list_outgoing_emails_rejects_unknown_status(admin_client: AsyncClient):
    response = await admin_client.get("/admin/outgoing-emails", params={"status": "LOST"})
    assert response.status_code == 422


async def test_list_outgoing_emails_requires_admin(client: AsyncClient, db: Session):
    response = await client.get("/admin/outgoing-emails")
    assert response.status_code == 401


async def test_retry_failed_email(admin_client: AsyncClient, db: Session):
    email = queue(db, "b@example.com")
    outbox_service.mark_failed(db, email.id, "boom", None, now=FIXED_NOW)

    response = await admin_client.post(f"/admin/outgoing-emails/{email.id}/retry")

    assert response.status_code == 200
    data = response.json()
    assert data["message"] == "E-Mail wird erneut gesendet"
    assert data["email"]["status"] == OutboxStatus.RETRYING.value
    assert data["email"]["attempt_count"] == 0
    assert data["email"]["last_error"] is None

    claimed = outbox_service.claim_due_batch(db, limit=10, lock_duration=timedelta(minutes=5), now=FIXED_NOW)
    assert [e.id for e in claimed] == [email.id]


async def test_retry_rejects_emails_that_have_not_failed(admin_client: AsyncClient, db: Session):
    email = queue(db, "b@example.com")

    response = await admin_client.post(f"/admin/outgoing-emails/{email.id}/retry")

    assert response.status_code == 409


async def test_retry_unknown_email(admin_client: AsyncClient, db: Session):
    response = await admin_client.post(f"/admin/outgoing-emails/{uuid.uuid4()}/retry")
    assert response.status_code == 404


async def test_retry_requires_csrf_header(admin_client: AsyncClient, db: Session):
    email = queue(db, "b@example.com")
    outbox_service.mark_failed(db, email.id, "boom", None, now=FIXED_NOW)

    response = await admin_client.post(
        f"/admin/outgoing-emails/{email.id}/retry",
        headers={"X-Requested-With": ""},
    )

    assert response.status_code == 403
