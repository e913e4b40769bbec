"""Shared fixtures: a Flask app over a throwaway SQLite file and a sample resource."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import event

from app import create_app
from config import Config
from models import db as _db
from models.resource import Resource

UTC = timezone.utc

# 2030-01-01 is a Tuesday; New York is on EST (UTC-5) through early March.
NOW = datetime(2030, 1, 1, 0, 0, tzinfo=UTC)
TUESDAY = datetime(2030, 1, 8, tzinfo=UTC).date()


def at(hour, minute=0, day=8, month=1):
    """UTC instant for the given New York wall-clock time in January 2030 (EST)."""
    return datetime(2030, month, day, hour + 5, minute, tzinfo=UTC)


STUDIO_RULES = {
    "timezone": "America/New_York",
    "slot_minutes": 30,
    "windows": [
        {
            "host": "mo@example.org",
            "days": ["Tuesday", "Wednesday", "Thursday"],
            "start": "12:00",
            "end": "16:00",
        }
    ],
}


@pytest.fixture
def app(tmp_path):
    """Create app with a file-backed SQLite database so threads can share it."""

    class TestConfig(Config):
        TESTING = True
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'bookings-test.db'}"
        AUTH_GATEWAY_SECRET = None
        NOTIFY_ASYNC = False
        SMTP_HOST = None
        HOLD_RATE_MAX_REQUESTS = 1000
        PUBLIC_BASE_URL = "https://bookings.example.org"

    app = create_app(TestConfig)
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def session(app):
    return _db.session


@pytest.fixture
def client(app):
    return app.test_client()


def make_resource(session, **overrides):
    fields = {
        "organization_id": "org-1",
        "title": "Remote Studio Visit",
        "kind": "person",
        "capacity": 1,
        "availability_rules": STUDIO_RULES,
    }
    fields.update(overrides)
    resource = Resource(**fields)
    session.add(resource)
    session.commit()
    return resource


@pytest.fixture
def studio(session):
    """Remote Studio Visit: Tue-Thu 12:00-16:00 New York, 30 minute slots, capacity 1."""
    return make_resource(session)


@pytest.fixture
def room(session):
    """A shared space for three at a time, same weekly hours."""
    return make_resource(session, title="Print Room", kind="space", capacity=3)


def headers(identity="ana@example.org", roles=(), orgs=("org-1",), email=None):
    out = {"X-Auth-Identity": identity, "X-Auth-Orgs": ",".join(orgs)}
    if roles:
        out["X-Auth-Roles"] = ",".join(roles)
    if email:
        out["X-Auth-Email"] = email
    return out


def admin_headers(identity="admin@example.org"):
    return headers(identity, roles=("ADMIN",))


def later(minutes):
    return NOW + timedelta(minutes=minutes)


def recorded_writes(action):
    """Run ``action`` and return the UPDATE/INSERT/DELETE statements it sent, in order."""
    writes = []

    def record(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().upper().startswith(("UPDATE", "INSERT", "DELETE")):
            writes.append(statement.strip())

    engine = _db.engine
    event.listen(engine, "before_cursor_execute", record)
    try:
        action()
    finally:
        event.remove(engine, "before_cursor_execute", record)
    return writes
