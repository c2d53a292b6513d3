"""Shared test fixtures for the billing engine test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, CSRF off)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- make_event / post_event: build Stripe-shaped events and deliver them
  to /webhook with a valid Stripe-Signature header
- seed_booking: insert a Booking directly
"""

import hashlib
import hmac
import json
import time
import uuid
from datetime import datetime, timezone

import pytest
from sqlalchemy import event as sa_event

from billing_engine import create_app
from billing_engine.extensions import db as _db
from billing_engine.models.booking import Booking

WEBHOOK_SECRET = "whsec_test_fake"

# 2026-01-01T00:00:00Z; events in tests are created relative to this
BASE_TS = 1767225600


def sign_payload(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Build a Stripe-Signature header for a raw body."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def ts(days=0, seconds=0):
    """Unix timestamp `days` after BASE_TS."""
    return BASE_TS + int(days * 86400) + seconds


def dt(days=0, seconds=0):
    return datetime.fromtimestamp(ts(days, seconds), tz=timezone.utc)


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")

    # pysqlite defers BEGIN until the first DML statement, which breaks
    # SAVEPOINT semantics. Take over transaction control so nested
    # transactions behave as they do on Postgres.
    with app.app_context():
        engine = _db.engine

        @sa_event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @sa_event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN")

    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def make_event():
    """Factory for Stripe-shaped webhook event dicts."""

    def _make(event_type, obj, event_id=None, created=None):
        return {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": ts() if created is None else created,
            "data": {"object": obj},
        }

    return _make


@pytest.fixture
def post_event(client):
    """POST an event dict (or raw string) to /webhook with a valid signature."""

    def _post(event, timestamp=None, secret=WEBHOOK_SECRET, signature=None):
        payload = event if isinstance(event, str) else json.dumps(event)
        header = signature or sign_payload(payload, secret=secret, timestamp=timestamp)
        return client.post(
            "/webhook",
            data=payload,
            content_type="application/json",
            headers={"Stripe-Signature": header},
        )

    return _post


def subscription_object(sub_id="sub_1", status="active", resource_id="judge-1",
                        position=1, interval="month", price_id="price_m",
                        amount=50000, period_start=None, period_end=None,
                        **extra):
    """A Stripe subscription object with slot metadata."""
    metadata = extra.pop("metadata", None)
    if metadata is None:
        metadata = {
            "resource_id": resource_id,
            "position": str(position),
            "resource_level": "federal",
        }
    obj = {
        "id": sub_id,
        "object": "subscription",
        "customer": "cus_1",
        "status": status,
        "cancel_at_period_end": False,
        "cancel_at": None,
        "canceled_at": None,
        "metadata": metadata,
        "items": {
            "data": [{
                "id": f"si_{sub_id}",
                "current_period_start": ts() if period_start is None else period_start,
                "current_period_end": ts(30) if period_end is None else period_end,
                "price": {
                    "id": price_id,
                    "unit_amount": amount,
                    "currency": "usd",
                    "recurring": {"interval": interval},
                },
            }]
        },
    }
    obj.update(extra)
    return obj


@pytest.fixture
def seed_booking(db_session):
    """Insert a Booking row directly and commit it."""

    def _seed(sub_id="sub_existing", resource_id="judge-1", position=1,
              status="active", last_event_at=None):
        booking = Booking(
            resource_id=resource_id,
            position=position,
            resource_level="federal",
            external_subscription_id=sub_id,
            billing_interval="monthly",
            status=status,
            last_event_at=last_event_at,
        )
        db_session.add(booking)
        db_session.commit()
        return booking

    return _seed
