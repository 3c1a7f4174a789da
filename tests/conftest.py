import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("SMTP_HOST", "")
os.environ.setdefault("RESEND_API_KEY", "")

from datetime import datetime, timedelta, timezone  # noqa: E402
from typing import Optional  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from codeevents.db import Base, get_db  # noqa: E402
from codeevents.main import app  # noqa: E402
from codeevents.models.reminder import Reminder  # noqa: E402
from codeevents.services.email import NotificationDispatcher, get_dispatcher  # noqa: E402


class FakeTransport:
    """Records every message; fails with ``error`` when one is set."""

    def __init__(self, error: Optional[str] = None):
        self.error = error
        self.sent = []

    def send(self, recipient, subject, text, html):
        self.sent.append(
            {"recipient": recipient, "subject": subject, "text": text, "html": html}
        )
        if self.error:
            raise RuntimeError(self.error)
        return f"msg-{len(self.sent)}"


@pytest.fixture
def session_factory():
    """Session factory bound to an in-memory SQLite database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    try:
        yield TestingSessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def dispatcher(transport):
    return NotificationDispatcher(transport, timeout_seconds=5)


@pytest.fixture
def client(db_session, dispatcher):
    """Create a test client with database session and dispatcher overrides."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_reminder(db_session):
    """Insert a pending reminder directly into the store."""
    def _make(
        fire_at: datetime,
        recipient: str = "a@x.com",
        name: str = "Round 1",
        **fields,
    ) -> Reminder:
        reminder = Reminder(
            recipient=recipient,
            payload={
                "name": name,
                "date": (fire_at + timedelta(minutes=10)).isoformat(),
                "url": "https://codeforces.com/contest/1",
                "platform": "Codeforces",
            },
            fire_at=fire_at,
            created_at=fire_at - timedelta(hours=1),
            **fields,
        )
        db_session.add(reminder)
        db_session.commit()
        db_session.refresh(reminder)
        return reminder

    return _make
