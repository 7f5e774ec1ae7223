"""Shared test fixtures."""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dispatch.config import settings
from dispatch.database.base import Base, utcnow
from dispatch.locks.models import LeaseLock
from dispatch.monitoring.models import JobAlertState, JobRun
from dispatch.notifications.transport import DeliveryError
from dispatch.outbox.models import DeliveryRecord
from dispatch.scheduler.models import (
    AlertEvent,
    CityEvent,
    DeliveryPreference,
    NewsArticle,
    Subscriber,
    SubscriberTier,
)

# Models must be imported so Base.metadata.create_all() sees all tables.
_ALL_MODELS = [LeaseLock, JobAlertState, JobRun, DeliveryRecord, CityEvent, NewsArticle, DeliveryPreference]


class FakeTransport:
    """Records every message; raises for addresses listed in ``fail_for``."""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = {addr.lower() for addr in fail_for}

    def send(self, message):
        if message.to.lower() in self.fail_for:
            raise DeliveryError("Mailbox unavailable")
        self.sent.append(message)
        return f"<msg-{len(self.sent)}@test.cityping.net>"

    @property
    def recipients(self):
        return [m.to for m in self.sent]

    @property
    def subjects(self):
        return [m.subject for m in self.sent]


class FailingTransport:
    def __init__(self):
        self.calls = 0

    def send(self, message):
        self.calls += 1
        raise DeliveryError("Provider unavailable")


@pytest.fixture
def db_session():
    """Create an in-memory SQLite database for testing.

    Note: SQLite drops tzinfo on readback, services normalize with as_utc().
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    TestSession = sessionmaker(bind=engine)
    session = TestSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite shared by several sessions, one connection each."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'dispatch.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def failing_transport():
    return FailingTransport()


@pytest.fixture
def admin_email(monkeypatch):
    """Enable operator alerts."""
    monkeypatch.setattr(settings, "admin_alert_email", "ops@cityping.net")
    return "ops@cityping.net"


@pytest.fixture
def make_subscriber(db_session):
    """Factory: subscribers get increasing created_at so fetch order is predictable."""
    created = []

    def _make(email, tier=SubscriberTier.FREE, is_active=True, **prefs):
        sub = Subscriber(
            id=uuid.uuid4(),
            email=email,
            tier=tier,
            is_active=is_active,
            created_at=utcnow() - timedelta(days=30) + timedelta(minutes=len(created)),
        )
        if prefs:
            sub.preference = DeliveryPreference(
                morning_enabled=prefs.get("morning"),
                noon_enabled=prefs.get("noon"),
                evening_enabled=prefs.get("evening"),
            )
        db_session.add(sub)
        db_session.commit()
        created.append(sub)
        return sub

    return _make


@pytest.fixture
def make_alert(db_session):
    def _make(title="Delays on the A train", module="transit", age_minutes=10, expires_in_minutes=None, now=None):
        now = now or utcnow()
        alert = AlertEvent(
            id=uuid.uuid4(),
            module=module,
            title=title,
            body=f"{title}. Expect longer waits.",
            created_at=now - timedelta(minutes=age_minutes),
            expires_at=now + timedelta(minutes=expires_in_minutes) if expires_in_minutes is not None else None,
        )
        db_session.add(alert)
        db_session.commit()
        return alert

    return _make


@pytest.fixture
def fresh_alerts(make_alert):
    """Enough recent content for every slot to pass the freshness gate."""
    now = utcnow()
    return [make_alert(title=f"Service change {i}", age_minutes=5 + i * 10, now=now) for i in range(6)]
