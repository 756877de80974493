"""
Test configuration and fixtures.

Provides:
- SQLite database, tables recreated for every test
- Pinned clock shared by the app, services and the attempt limiter
- HTTPX AsyncClient (public) and admin client with session cookie
"""
import os
import tempfile
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Generator

# Settings are read at import time
_TEST_DIR = tempfile.mkdtemp(prefix="rag-mse-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["TESTING"] = "1"
os.environ["REDIS_URL"] = "memory://"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["APP_URL"] = "https://rag-mse.de/"
os.environ["ADMIN_EMAILS"] = "vorstand@rag-mse.de,kasse@rag-mse.de"
os.environ["EMAIL_DEV_MODE"] = "true"
os.environ["EMAIL_DEV_LOG_DIR"] = os.path.join(_TEST_DIR, "emails")
os.environ["SENTRY_DSN"] = ""

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import Session

from rag_mse.main import app
from rag_mse.db.base import Base
from rag_mse.db.session import engine, SessionLocal
from rag_mse.core.deps import COOKIE_NAME, get_clock, get_db
from rag_mse.core.rate_limit import AttemptLimiter, MemoryAttemptStore, get_attempt_limiter
from rag_mse.core.security import create_session_token, hash_password
from rag_mse.db.enums import Role
from rag_mse.db.models import Event, User

# Tuesday 10 February 2026, 09:00 UTC
FIXED_NOW = datetime(2026, 2, 10, 9, 0, 0)
MEMBER_PASSWORD = "Altes-Passwort1"
NEW_PASSWORD = "Neues-Passwort2"
CSRF_HEADERS = {"X-Requested-With": "XMLHttpRequest"}


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Callable naive-UTC clock that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def timestamp(self) -> float:
        return self.now.replace(tzinfo=timezone.utc).timestamp()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def attempt_limiter(clock: FakeClock) -> AttemptLimiter:
    return AttemptLimiter(MemoryAttemptStore(clock=clock.timestamp), clock=clock.timestamp)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh schema per test; app code commits freely."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


def make_user(
    db: Session,
    email: str | None = None,
    role: Role = Role.MEMBER,
    password: str = MEMBER_PASSWORD,
    **fields,
) -> User:
    user = User(
        id=uuid.uuid4(),
        email=email or f"mitglied-{uuid.uuid4().hex[:8]}@rag-mse.de",
        name="Test Mitglied",
        role=role.value,
        password_hash=hash_password(password),
        created_at=FIXED_NOW,
        updated_at=FIXED_NOW,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_event(db: Session, event_date: date, **fields) -> Event:
    values = {
        "time_from": "18:00",
        "time_to": "20:00",
        "location": "Schießstand Neubrandenburg",
        "description": "Training",
        "created_at": FIXED_NOW,
    }
    values.update(fields)
    event = Event(id=uuid.uuid4(), date=event_date, **values)
    db.add(event)
    db.commit()
    db.refresh(event)
    return event


@pytest.fixture(scope="function")
def member(db: Session) -> User:
    return make_user(db, email="mitglied@rag-mse.de")


@pytest.fixture(scope="function")
def admin_user(db: Session) -> User:
    return make_user(db, email="admin@rag-mse.de", role=Role.ADMIN)


# =============================================================================
# Client Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    token: str
    cookie_name: str = COOKIE_NAME


def _override_dependencies(db: Session, clock: FakeClock, attempt_limiter: AttemptLimiter) -> None:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_attempt_limiter] = lambda: attempt_limiter


@pytest.fixture(scope="function")
async def client(
    db: Session,
    clock: FakeClock,
    attempt_limiter: AttemptLimiter,
) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client with the CSRF header set."""
    _override_dependencies(db, clock, attempt_limiter)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=CSRF_HEADERS,
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def admin_auth(admin_user: User) -> TestAuth:
    token = create_session_token(
        user_id=admin_user.id,
        role=Role.ADMIN.value,
        token_version=admin_user.token_version,
    )
    return TestAuth(user=admin_user, token=token)


@pytest.fixture(scope="function")
async def admin_client(
    db: Session,
    clock: FakeClock,
    attempt_limiter: AttemptLimiter,
    admin_auth: TestAuth,
) -> AsyncGenerator[AsyncClient, None]:
    """Admin client with session cookie and CSRF header."""
    _override_dependencies(db, clock, attempt_limiter)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies={admin_auth.cookie_name: admin_auth.token},
        headers=CSRF_HEADERS,
    ) as c:
        yield c

    app.dependency_overrides.clear()
