"""Settlement service: orders from checkout and charge events.

Responsible for:
- Creating the Order when a checkout session completes, or reconciling
  the one an earlier async outcome created
- Allocating the slot booking for ad-slot subscriptions at settlement,
  flagging a lost slot race for manual refund against the kept Order
- Advancing orders on async payment outcomes, refunds and disputes
- Claiming and fulfilling orders

Functions flush but do NOT commit; the caller commits.
"""

import logging

import stripe
from sqlalchemy.exc import IntegrityError

from billing_engine.errors import ConflictError, DuplicateOrder, SlotConflict, TransientError
from billing_engine.events import decode_subscription
from billing_engine.extensions import db
from billing_engine.models.order import Order
from billing_engine.services import allocator, correlation_service, stripe_service
from billing_engine.services.audit_service import flag_for_review, log_billing_audit

logger = logging.getLogger(__name__)

PAID_STATUSES = ("paid", "no_payment_required")


def get_order(session_id):
    return Order.query.filter_by(external_session_id=session_id).first()


# ──────────────────────────────────────────────
# Checkout events
# ──────────────────────────────────────────────

def _allocate_from_session(data, metadata, event):
    """Book the slot for a subscription checkout, if it names one."""
    if not data.subscription_id or allocator.slot_from_metadata(metadata) is None:
        return None

    try:
        sub_obj = stripe_service.retrieve_subscription(data.subscription_id)
    except stripe.StripeError as e:
        raise TransientError(
            f"Could not retrieve subscription {data.subscription_id}: {e}"
        ) from e

    sub = decode_subscription(sub_obj)
    return allocator.sync_subscription(
        sub, event.created, fallback_metadata=metadata, event_id=event.id
    )


def _reconcile_order(order, data, metadata, event):
    """Fold a late or repeated completion into the existing order.

    The async outcome may have created the order already. The payload can
    only move a pending order forward to paid; anything else is a no-op.
    Raises InvalidTransition when a paid payload meets a canceled order.
    """
    for attr, value in (
        ("external_customer_id", data.customer_id),
        ("external_subscription_id", data.subscription_id),
        ("external_payment_intent_id", data.payment_intent_id),
        ("contact_email", data.customer_email or metadata.get("email")),
        ("organization_name", metadata.get("organization_name")),
    ):
        if value and not getattr(order, attr):
            setattr(order, attr, value)

    if data.payment_status in PAID_STATUSES and order.status in ("pending", "canceled"):
        if order.transition_to("paid"):
            log_billing_audit("order.paid", {
                "session_id": order.external_session_id,
            }, event_id=event.id)

    if data.subscription_id and not allocator.get_booking(data.subscription_id):
        _settle_slot(order, data, metadata, event)
    correlation_service.mark_resolved(data.session_id)
    db.session.flush()

    logger.info(f"Order {order.external_session_id} reconciled ({order.status})")
    return order


def _settle_slot(order, data, metadata, event):
    """Book the slot for a settled order.

    A slot lost to a concurrent subscription is flagged for manual refund
    against the order, which is kept.
    """
    try:
        return _allocate_from_session(data, metadata, event)
    except SlotConflict as e:
        flag_for_review(f"{event.type}.conflict", event.id, e.detail, {
            "code": e.code,
            "manual_refund": True,
            "session_id": order.external_session_id,
            "payment_intent_id": order.external_payment_intent_id,
            "customer_id": order.external_customer_id,
            "amount": order.amount,
            "currency": order.currency,
            **{k: str(v) for k, v in e.context.items()},
        })
        logger.critical(
            f"Slot conflict settling {order.external_session_id} ({event.id}): "
            f"{e.detail}. Manual refund of {order.amount} {order.currency} "
            f"(payment_intent={order.external_payment_intent_id}) required."
        )
        return None


def handle_checkout_completed(event):
    """Handle checkout.session.completed.

    Merges the stored checkout context with the payload metadata (payload
    wins), creates the Order and books the slot. The Order is flushed in
    its own savepoint first so a slot conflict never loses it.

    An order that already exists for the session (an async outcome got
    there first, or the gateway re-sent completion under a new event id)
    is reconciled rather than duplicated.
    Raises DuplicateOrder only when a concurrent delivery inserted the
    same session's order first.
    """
    data = event.data
    stored, found = correlation_service.resolve_correlation(data.session_id)
    if not found:
        logger.info(f"Settling {data.session_id} from payload metadata only")
    metadata = {**stored, **data.metadata}

    existing = get_order(data.session_id)
    if existing:
        return _reconcile_order(existing, data, metadata, event)

    slot = allocator.slot_from_metadata(metadata)
    order = Order(
        external_session_id=data.session_id,
        external_customer_id=data.customer_id,
        external_subscription_id=data.subscription_id,
        external_payment_intent_id=data.payment_intent_id,
        organization_name=metadata.get("organization_name"),
        contact_email=data.customer_email or metadata.get("email"),
        category=metadata.get("category") or ("ad-slot" if slot else "universal-access"),
        status="paid" if data.payment_status in PAID_STATUSES else "pending",
        amount=data.amount_total,
        currency=data.currency,
        user_id=metadata.get("user_id") or None,
    )
    try:
        with db.session.begin_nested():
            db.session.add(order)
    except IntegrityError:
        raise DuplicateOrder(
            f"Order for session {data.session_id} created concurrently",
            session_id=data.session_id,
        )

    booking = _settle_slot(order, data, metadata, event)
    correlation_service.mark_resolved(data.session_id)

    log_billing_audit("order.created", {
        "session_id": data.session_id,
        "status": order.status,
        "category": order.category,
        "amount": order.amount,
        "booking_id": booking.id if booking else None,
    }, event_id=event.id)
    logger.info(f"Order {order.external_session_id} created ({order.status})")
    return order


def _advance_session_order(event, new_status):
    order = get_order(event.data.session_id)
    if not order:
        # The async outcome overtook checkout.session.completed
        order = handle_checkout_completed(event)
    if order.transition_to(new_status):
        log_billing_audit(f"order.{new_status}", {
            "session_id": order.external_session_id,
        }, event_id=event.id)
    return order


def handle_async_payment_succeeded(event):
    return _advance_session_order(event, "paid")


def handle_async_payment_failed(event):
    return _advance_session_order(event, "canceled")


# ──────────────────────────────────────────────
# Charge events
# ──────────────────────────────────────────────

def _advance_charge_order(event, new_status):
    data = event.data
    order = None
    if data.payment_intent_id:
        order = Order.query.filter_by(
            external_payment_intent_id=data.payment_intent_id
        ).first()
    if not order:
        logger.info(
            f"{event.type}: no order for charge {data.charge_id} "
            f"(payment_intent={data.payment_intent_id}), ignoring"
        )
        return None

    if order.transition_to(new_status):
        log_billing_audit(f"order.{new_status}", {
            "session_id": order.external_session_id,
            "charge_id": data.charge_id,
            "amount": data.amount,
        }, event_id=event.id)
        logger.info(f"Order {order.external_session_id} {new_status}")
    return order


def handle_charge_refunded(event):
    return _advance_charge_order(event, "refunded")


def handle_dispute_created(event):
    return _advance_charge_order(event, "disputed")


# ──────────────────────────────────────────────
# Order operations
# ──────────────────────────────────────────────

def claim_order(session_id, user_id):
    """Attach the owning user to an order.

    Raises ValueError if no order exists for the session.
    Raises ConflictError if another user already claimed it.
    """
    order = get_order(session_id)
    if not order:
        raise ValueError(f"No order for session {session_id}")
    if order.user_id and order.user_id != user_id:
        raise ConflictError(f"Order {session_id} already claimed")

    if order.user_id != user_id:
        order.user_id = user_id
        log_billing_audit("order.claimed", {"session_id": session_id, "user_id": user_id})
        db.session.flush()
    return order


def fulfil_order(session_id):
    """Mark a paid order fulfilled. Raises ValueError / InvalidTransition."""
    order = get_order(session_id)
    if not order:
        raise ValueError(f"No order for session {session_id}")
    if order.transition_to("fulfilled"):
        log_billing_audit("order.fulfilled", {"session_id": session_id})
        db.session.flush()
    return order
