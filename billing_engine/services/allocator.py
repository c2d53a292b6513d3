"""Inventory allocator: subscription lifecycle to slot bookings.

Responsible for:
- Allocating a Booking for a new subscription's (resource, position) slot
- Syncing status, period and price from subscription events
- Canceling bookings (and their open dunning cases) on deletion
- Answering slot availability for checkout

Double-booking is prevented by the uq_bookings_live_slot partial unique
index. Every booking write runs in a savepoint; an index violation there
means another live subscription owns the slot, which is raised as
SlotConflict and never resolved by picking a different slot.

Events can arrive in any order. A booking remembers the `created` time of
the newest event applied to it (last_event_at) and ignores older ones;
"canceled" is terminal.

Functions flush but do NOT commit; the caller commits.
"""

import logging

from flask import current_app
from sqlalchemy.exc import IntegrityError

from billing_engine.errors import EventValidationError, SlotConflict, TransientError
from billing_engine.extensions import db
from billing_engine.models.booking import LIVE_STATUSES, Booking
from billing_engine.services import correlation_service, dunning_service
from billing_engine.services.audit_service import log_billing_audit
from billing_engine.timeutils import as_utc

logger = logging.getLogger(__name__)

# Stripe statuses with no direct Booking equivalent
STATUS_MAP = {
    "unpaid": "paused",
    "incomplete_expired": "canceled",
}


def booking_status(gateway_status):
    status = STATUS_MAP.get(gateway_status, gateway_status)
    if status not in Booking.STATUSES:
        raise EventValidationError(f"Unknown subscription status '{gateway_status}'")
    return status


def slot_from_metadata(metadata):
    """Extract slot coordinates from subscription/session metadata.

    Returns a dict, or None when the metadata names no slot (e.g. a
    universal-access subscription).
    Raises EventValidationError when the slot is named but invalid.
    """
    resource_id = metadata.get("resource_id")
    raw_position = metadata.get("position")
    if not resource_id or raw_position in (None, ""):
        return None

    try:
        position = int(raw_position)
    except (TypeError, ValueError):
        raise EventValidationError(f"Invalid slot position {raw_position!r}")

    max_position = current_app.config["SLOT_MAX_POSITION"]
    if not 1 <= position <= max_position:
        raise EventValidationError(
            f"Slot position {position} outside 1..{max_position}"
        )

    return {
        "resource_id": resource_id,
        "position": position,
        "resource_level": metadata.get("resource_level"),
        "advertiser_id": metadata.get("advertiser_id"),
    }


def get_booking(subscription_id):
    return Booking.query.filter_by(external_subscription_id=subscription_id).first()


def is_slot_available(resource_id, position):
    """True if no live booking holds the slot."""
    return (
        Booking.query
        .filter_by(resource_id=resource_id, position=position)
        .filter(Booking.status.in_(LIVE_STATUSES))
        .first()
    ) is None


def _apply(booking, sub, occurred_at):
    booking.status = booking_status(sub.status)
    if sub.customer_id:
        booking.external_customer_id = sub.customer_id
    if sub.price_id:
        booking.external_price_id = sub.price_id
    if sub.billing_interval:
        booking.billing_interval = sub.billing_interval
    if sub.current_period_start:
        booking.current_period_start = sub.current_period_start
    if sub.current_period_end:
        booking.current_period_end = sub.current_period_end
    booking.cancel_at_period_end = sub.cancel_at_period_end
    if booking.status == "canceled" and not booking.canceled_at:
        booking.canceled_at = sub.canceled_at or occurred_at
    booking.last_event_at = occurred_at


def _is_stale(booking, occurred_at):
    last = as_utc(booking.last_event_at)
    return last is not None and occurred_at < last


def _insert(sub, slot, occurred_at, status=None):
    booking = Booking(
        resource_id=slot["resource_id"],
        position=slot["position"],
        resource_level=slot["resource_level"],
        advertiser_id=slot["advertiser_id"],
        external_subscription_id=sub.subscription_id,
    )
    _apply(booking, sub, occurred_at)
    if status == "canceled":
        booking.status = status
        booking.canceled_at = booking.canceled_at or occurred_at

    try:
        with db.session.begin_nested():
            db.session.add(booking)
    except IntegrityError:
        if get_booking(sub.subscription_id):
            # Another delivery for the same subscription inserted first.
            raise TransientError(
                f"Booking for {sub.subscription_id} created concurrently"
            )
        raise SlotConflict(
            f"Slot {slot['resource_id']}#{slot['position']} already booked",
            subscription_id=sub.subscription_id,
            resource_id=slot["resource_id"],
            position=slot["position"],
        )

    logger.info(
        f"Booking {booking.resource_id}#{booking.position} allocated to "
        f"{sub.subscription_id} ({booking.status})"
    )
    return booking


def _update(booking, sub, occurred_at):
    try:
        with db.session.begin_nested():
            _apply(booking, sub, occurred_at)
    except IntegrityError:
        # Moving back into a live status while another subscription holds the slot
        raise SlotConflict(
            f"Slot {booking.resource_id}#{booking.position} already booked",
            subscription_id=sub.subscription_id,
            resource_id=booking.resource_id,
            position=booking.position,
        )
    return booking


def sync_subscription(sub, occurred_at, fallback_metadata=None, event_id=None):
    """Create or update the booking for a subscription.

    Slot coordinates come from the subscription metadata, then from
    fallback_metadata (checkout context), then from the checkout
    correlation named by a checkout_session_id metadata key.

    Returns the Booking, or None when there is nothing to book.
    """
    booking = get_booking(sub.subscription_id)

    if booking:
        if booking.status == "canceled":
            logger.info(f"Booking for {sub.subscription_id} is canceled, ignoring update")
            return booking
        if _is_stale(booking, occurred_at):
            logger.info(
                f"Ignoring stale event for {sub.subscription_id} "
                f"({occurred_at.isoformat()} < {as_utc(booking.last_event_at).isoformat()})"
            )
            return booking
        old_status = booking.status
        _update(booking, sub, occurred_at)
        if old_status != booking.status:
            log_billing_audit("booking.status_changed", {
                "subscription_id": sub.subscription_id,
                "old_status": old_status,
                "new_status": booking.status,
            }, event_id=event_id)
        return booking

    metadata = dict(fallback_metadata or {})
    metadata.update(sub.metadata)
    slot = slot_from_metadata(metadata)
    if slot is None and metadata.get("checkout_session_id"):
        stored, ok = correlation_service.resolve_correlation(metadata["checkout_session_id"])
        if ok:
            slot = slot_from_metadata(stored)

    if slot is None:
        logger.info(f"Subscription {sub.subscription_id} names no slot, nothing to book")
        return None

    booking = _insert(sub, slot, occurred_at)
    log_billing_audit("booking.allocated", {
        "subscription_id": sub.subscription_id,
        "resource_id": booking.resource_id,
        "position": booking.position,
        "status": booking.status,
    }, event_id=event_id)
    return booking


def cancel_subscription(sub, occurred_at, event_id=None):
    """Handle subscription deletion: cancel the booking and its dunning cases."""
    booking = get_booking(sub.subscription_id)
    canceled_at = sub.canceled_at or occurred_at

    if booking:
        if booking.status != "canceled":
            booking.status = "canceled"
            booking.canceled_at = canceled_at
            booking.cancel_at_period_end = False
        booking.last_event_at = max(occurred_at, as_utc(booking.last_event_at) or occurred_at)
        db.session.flush()
    else:
        slot = slot_from_metadata(sub.metadata)
        if slot:
            # Deletion overtook creation. Record the canceled booking so the
            # late created/updated events find a terminal row.
            booking = _insert(sub, slot, occurred_at, status="canceled")
            booking.cancel_at_period_end = False
            db.session.flush()
        else:
            logger.warning(f"subscription.deleted: no booking for {sub.subscription_id}")

    closed = dunning_service.cancel_cases_for_subscription(sub.subscription_id)

    log_billing_audit("subscription.deleted", {
        "subscription_id": sub.subscription_id,
        "dunning_cases_closed": closed,
    }, event_id=event_id)
    return booking


def allocate_or_update(event):
    """Subscription lifecycle handler for customer.subscription.* events."""
    sub = event.data
    if event.type == "customer.subscription.deleted":
        return cancel_subscription(sub, event.created, event_id=event.id)
    return sync_subscription(sub, event.created, event_id=event.id)
