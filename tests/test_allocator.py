"""Tests for the inventory allocator (subscription lifecycle handler).

Covers:
- Slot availability ignores non-live bookings
- Allocation on subscription.created; no slot metadata -> no booking
- Double-booking rejected by the partial unique index, including two
  deliveries racing on separate threads against a shared database
- Out-of-order delivery: update before create, delete before create
- Stale events ignored; canceled is terminal
- Deletion cancels the booking and closes open dunning cases
"""

import threading

import pytest
from sqlalchemy import event as sa_event

from billing_engine import create_app
from billing_engine.config import TestConfig
from billing_engine.errors import SlotConflict
from billing_engine.events import parse_event
from billing_engine.extensions import db
from billing_engine.models.audit import AuditEvent
from billing_engine.models.booking import LIVE_STATUSES, Booking
from billing_engine.models.dunning import DunningCase
from billing_engine.models.processed_event import ProcessedEvent
from billing_engine.services import event_router
from billing_engine.services.allocator import allocate_or_update, is_slot_available
from billing_engine.services.event_router import route_event
from billing_engine.timeutils import as_utc
from conftest import dt, subscription_object, ts


def _apply(make_event, event_type, obj, created):
    booking = allocate_or_update(parse_event(make_event(event_type, obj, created=created)))
    db.session.commit()
    return booking


def _booking(sub_id):
    return Booking.query.filter_by(external_subscription_id=sub_id).first()


class TestAvailability:
    """Tests for is_slot_available()."""

    def test_empty_slot_available(self, app):
        assert is_slot_available("judge-1", 1) is True

    def test_live_booking_blocks_slot(self, app, seed_booking):
        seed_booking(status="past_due")
        assert is_slot_available("judge-1", 1) is False
        assert is_slot_available("judge-1", 2) is True

    def test_canceled_booking_frees_slot(self, app, seed_booking):
        seed_booking(status="canceled")
        assert is_slot_available("judge-1", 1) is True


class TestAllocation:
    """Tests for subscription.created."""

    def test_created_allocates_booking(self, app, make_event):
        booking = _apply(make_event, "customer.subscription.created",
                         subscription_object(interval="year", price_id="price_a"), ts(0))

        assert booking.resource_id == "judge-1"
        assert booking.position == 1
        assert booking.status == "active"
        assert booking.billing_interval == "annual"
        assert booking.external_price_id == "price_a"
        assert as_utc(booking.current_period_end) == dt(30)
        assert as_utc(booking.last_event_at) == dt(0)

    def test_no_slot_metadata_books_nothing(self, app, make_event):
        obj = subscription_object(metadata={"category": "universal-access"})
        assert _apply(make_event, "customer.subscription.created", obj, ts(0)) is None
        assert Booking.query.count() == 0

    def test_second_live_subscription_conflicts(self, app, make_event, seed_booking):
        seed_booking(sub_id="sub_holder")
        event = parse_event(make_event(
            "customer.subscription.created", subscription_object(sub_id="sub_2"), created=ts(1)
        ))
        with pytest.raises(SlotConflict):
            allocate_or_update(event)
        db.session.rollback()

        assert _booking("sub_2") is None
        assert Booking.query.count() == 1

    def test_reactivation_into_taken_slot_conflicts(self, app, make_event, seed_booking):
        seed_booking(sub_id="sub_holder")
        # Incomplete subscriptions do not hold the slot, so this insert succeeds
        _apply(make_event, "customer.subscription.created",
               subscription_object(sub_id="sub_2", status="incomplete"), ts(0))
        assert _booking("sub_2").status == "incomplete"

        event = parse_event(make_event(
            "customer.subscription.updated", subscription_object(sub_id="sub_2"), created=ts(1)
        ))
        with pytest.raises(SlotConflict):
            allocate_or_update(event)
        db.session.rollback()
        assert _booking("sub_2").status == "incomplete"

    def test_slot_reusable_after_cancellation(self, app, make_event):
        _apply(make_event, "customer.subscription.created", subscription_object(sub_id="sub_a"), ts(0))
        _apply(make_event, "customer.subscription.deleted",
               subscription_object(sub_id="sub_a", status="canceled"), ts(1))
        booking = _apply(make_event, "customer.subscription.created",
                         subscription_object(sub_id="sub_b"), ts(2))

        assert booking.status == "active"
        assert _booking("sub_a").status == "canceled"


class TestOrdering:
    """Tests for out-of-order and stale delivery."""

    def test_update_before_create_allocates(self, app, make_event):
        _apply(make_event, "customer.subscription.updated",
               subscription_object(status="past_due"), ts(2))
        # The older created event arrives late and is ignored
        _apply(make_event, "customer.subscription.created",
               subscription_object(status="active"), ts(1))

        booking = _booking("sub_1")
        assert booking.status == "past_due"
        assert as_utc(booking.last_event_at) == dt(2)

    def test_stale_update_ignored(self, app, make_event):
        _apply(make_event, "customer.subscription.created", subscription_object(), ts(5))
        _apply(make_event, "customer.subscription.updated",
               subscription_object(status="past_due"), ts(3))

        assert _booking("sub_1").status == "active"

    def test_newer_update_applied(self, app, make_event):
        _apply(make_event, "customer.subscription.created", subscription_object(), ts(0))
        _apply(make_event, "customer.subscription.updated",
               subscription_object(status="past_due", cancel_at_period_end=True), ts(1))

        booking = _booking("sub_1")
        assert booking.status == "past_due"
        assert booking.cancel_at_period_end is True

    def test_canceled_is_terminal(self, app, make_event):
        _apply(make_event, "customer.subscription.created", subscription_object(), ts(0))
        _apply(make_event, "customer.subscription.deleted",
               subscription_object(status="canceled"), ts(1))
        _apply(make_event, "customer.subscription.updated", subscription_object(), ts(2))

        assert _booking("sub_1").status == "canceled"

    def test_delete_before_create_leaves_canceled_row(self, app, make_event):
        _apply(make_event, "customer.subscription.deleted",
               subscription_object(status="canceled"), ts(2))
        _apply(make_event, "customer.subscription.created", subscription_object(), ts(1))

        booking = _booking("sub_1")
        assert booking.status == "canceled"
        assert booking.canceled_at is not None
        assert is_slot_available("judge-1", 1) is True


class TestDeletion:
    """Tests for subscription.deleted."""

    def test_deleted_cancels_booking_and_dunning(self, app, make_event):
        _apply(make_event, "customer.subscription.created", subscription_object(), ts(0))
        db.session.add(DunningCase(
            invoice_id="in_1",
            subscription_id="sub_1",
            overdue_since=dt(0),
            escalation_stage="urgent",
        ))
        db.session.add(DunningCase(
            invoice_id="in_old",
            subscription_id="sub_1",
            overdue_since=dt(0),
            escalation_stage="resolved",
        ))
        db.session.commit()

        _apply(make_event, "customer.subscription.deleted",
               subscription_object(status="canceled", canceled_at=ts(3)), ts(3))

        booking = _booking("sub_1")
        assert booking.status == "canceled"
        assert as_utc(booking.canceled_at) == dt(3)
        stages = {c.invoice_id: c.escalation_stage for c in DunningCase.query.all()}
        assert stages == {"in_1": "subscription-canceled", "in_old": "resolved"}


@pytest.fixture
def race_app(tmp_path, monkeypatch):
    """App on a file-backed SQLite database that threads can share.

    Each transaction opens with BEGIN IMMEDIATE so concurrent writers queue
    on the database lock (up to the busy timeout) instead of failing fast.
    """
    monkeypatch.setattr(TestConfig, "SQLALCHEMY_DATABASE_URI",
                        f"sqlite:///{tmp_path / 'race.db'}")
    monkeypatch.setattr(TestConfig, "SQLALCHEMY_ENGINE_OPTIONS",
                        {"connect_args": {"timeout": 30, "check_same_thread": False}})
    shared_app = create_app("testing")

    with shared_app.app_context():
        engine = db.engine

        @sa_event.listens_for(engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @sa_event.listens_for(engine, "begin")
        def _emit_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        db.create_all()

    yield shared_app

    with shared_app.app_context():
        db.session.remove()
        db.engine.dispose()


def _deliver(app, event, barrier, results):
    with app.app_context():
        barrier.wait()
        try:
            results.append(route_event(event))
        except Exception as e:
            results.append(e)
        finally:
            db.session.remove()


class TestConcurrentAllocation:

    def test_racing_subscriptions_book_slot_once(self, race_app, make_event):
        events = [
            parse_event(make_event("customer.subscription.created",
                                   subscription_object(sub_id=sub_id), event_id=f"evt_{sub_id}",
                                   created=ts(0)))
            for sub_id in ("sub_a", "sub_b")
        ]
        barrier = threading.Barrier(len(events))
        results = []
        threads = [
            threading.Thread(target=_deliver, args=(race_app, event, barrier, results))
            for event in events
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        assert sorted(results) == [event_router.CONFLICT, event_router.PROCESSED]

        with race_app.app_context():
            live = Booking.query.filter(Booking.status.in_(LIVE_STATUSES)).all()
            assert len(live) == 1
            assert (live[0].resource_id, live[0].position) == ("judge-1", 1)
            assert ProcessedEvent.query.count() == 2

            loser = "sub_b" if live[0].external_subscription_id == "sub_a" else "sub_a"
            flag = AuditEvent.query.filter_by(event_id=f"evt_{loser}", needs_review=True).one()
            assert flag.metadata_["code"] == "slot_conflict"
