"""Typed webhook events.

Gateway payloads are loosely typed JSON. parse_event() decodes them once,
at the edge, into an Event whose ``data`` is one of a closed set of
variants. Handlers only ever see these variants; event types we do not
know about decode to UnknownData and are recorded but not acted on.
"""

from dataclasses import dataclass, field
from typing import Optional

from billing_engine.errors import EventValidationError
from billing_engine.timeutils import from_timestamp, utcnow

CHECKOUT_EVENT_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "checkout.session.async_payment_failed",
)
SUBSCRIPTION_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENT_TYPES = (
    "invoice.payment_failed",
    "invoice.payment_succeeded",
)
CHARGE_EVENT_TYPES = (
    "charge.refunded",
    "charge.dispute.created",
)

_INTERVALS = {"month": "monthly", "year": "annual"}


@dataclass(frozen=True)
class CheckoutSessionData:
    session_id: str
    customer_id: Optional[str]
    subscription_id: Optional[str]
    payment_intent_id: Optional[str]
    payment_status: Optional[str]
    amount_total: int
    currency: str
    customer_email: Optional[str]
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SubscriptionData:
    subscription_id: str
    customer_id: Optional[str]
    status: str
    current_period_start: Optional[object]
    current_period_end: Optional[object]
    cancel_at_period_end: bool
    canceled_at: Optional[object]
    price_id: Optional[str]
    billing_interval: Optional[str]
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class InvoiceData:
    invoice_id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    customer_email: Optional[str]
    amount_due: int
    amount_paid: int
    currency: str
    attempt_count: int
    next_payment_attempt: Optional[object]
    due_date: Optional[object]
    last_error: Optional[str]


@dataclass(frozen=True)
class ChargeData:
    charge_id: str
    payment_intent_id: Optional[str]
    amount: int


@dataclass(frozen=True)
class UnknownData:
    object_type: Optional[str]


@dataclass(frozen=True)
class Event:
    id: str
    type: str
    created: object  # aware datetime
    payload: dict
    data: object


# ──────────────────────────────────────────────
# Field extraction helpers
# ──────────────────────────────────────────────

def _first_item(sub_obj):
    items = sub_obj.get("items") or {}
    data = items.get("data") or []
    return data[0] if data else {}


def extract_period(sub_obj, key):
    """Extract current_period_start / current_period_end from a subscription.

    In newer API versions the period fields moved from the subscription
    top level to items.data[0]. Check both locations.
    """
    ts = sub_obj.get(key)
    if not ts:
        ts = _first_item(sub_obj).get(key)
    return from_timestamp(ts) if ts else None


def extract_price(sub_obj):
    """Return (price_id, billing_interval, unit_amount, currency) of the first item."""
    price = _first_item(sub_obj).get("price") or {}
    recurring = price.get("recurring") or {}
    return (
        price.get("id"),
        _INTERVALS.get(recurring.get("interval")),
        price.get("unit_amount"),
        price.get("currency"),
    )


def _metadata(obj):
    raw = obj.get("metadata") or {}
    if not isinstance(raw, dict):
        raise EventValidationError("metadata must be an object")
    return {str(k): str(v) for k, v in raw.items() if v is not None}


def _require(obj, key, event_type):
    value = obj.get(key)
    if not value:
        raise EventValidationError(f"{event_type} payload missing '{key}'")
    return value


def _invoice_subscription(invoice):
    sub_id = invoice.get("subscription")
    if not sub_id:
        # Newer API versions nest it under parent.subscription_details
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        sub_id = details.get("subscription")
    if isinstance(sub_id, dict):
        sub_id = sub_id.get("id")
    return sub_id


# ──────────────────────────────────────────────
# Decoding
# ──────────────────────────────────────────────

def decode_subscription(obj, event_type="subscription"):
    """Decode a subscription object (from a webhook or an API retrieve)."""
    price_id, interval, _amount, _currency = extract_price(obj)
    return SubscriptionData(
        subscription_id=_require(obj, "id", event_type),
        customer_id=obj.get("customer"),
        status=obj.get("status") or "incomplete",
        current_period_start=extract_period(obj, "current_period_start"),
        current_period_end=extract_period(obj, "current_period_end"),
        cancel_at_period_end=bool(
            obj.get("cancel_at_period_end", False) or obj.get("cancel_at") is not None
        ),
        canceled_at=from_timestamp(obj.get("canceled_at")),
        price_id=price_id,
        billing_interval=interval,
        metadata=_metadata(obj),
    )


def _decode_data(event_type, obj):
    if event_type in CHECKOUT_EVENT_TYPES:
        return CheckoutSessionData(
            session_id=_require(obj, "id", event_type),
            customer_id=obj.get("customer"),
            subscription_id=obj.get("subscription"),
            payment_intent_id=obj.get("payment_intent"),
            payment_status=obj.get("payment_status"),
            amount_total=int(obj.get("amount_total") or 0),
            currency=(obj.get("currency") or "usd").lower(),
            customer_email=(
                obj.get("customer_email")
                or (obj.get("customer_details") or {}).get("email")
            ),
            metadata=_metadata(obj),
        )

    if event_type in SUBSCRIPTION_EVENT_TYPES:
        return decode_subscription(obj, event_type)

    if event_type in INVOICE_EVENT_TYPES:
        error = obj.get("last_finalization_error") or {}
        return InvoiceData(
            invoice_id=_require(obj, "id", event_type),
            subscription_id=_invoice_subscription(obj),
            customer_id=obj.get("customer"),
            customer_email=obj.get("customer_email"),
            amount_due=int(obj.get("amount_due") or 0),
            amount_paid=int(obj.get("amount_paid") or 0),
            currency=(obj.get("currency") or "usd").lower(),
            attempt_count=int(obj.get("attempt_count") or 0),
            next_payment_attempt=from_timestamp(obj.get("next_payment_attempt")),
            due_date=from_timestamp(obj.get("due_date")),
            last_error=error.get("message"),
        )

    if event_type in CHARGE_EVENT_TYPES:
        # charge.dispute.* carries a Dispute object that points at the charge
        is_dispute = obj.get("object") == "dispute"
        return ChargeData(
            charge_id=_require(obj, "charge" if is_dispute else "id", event_type),
            payment_intent_id=obj.get("payment_intent"),
            amount=int(obj.get("amount") or 0),
        )

    return UnknownData(object_type=obj.get("object"))


def parse_event(raw):
    """Decode a verified webhook body (already JSON-parsed) into an Event.

    Raises EventValidationError if the envelope or a known variant is malformed.
    The envelope id/type are checked first so malformed variants can still be
    recorded against their event id.
    """
    if not isinstance(raw, dict):
        raise EventValidationError("event body must be a JSON object")

    event_id = raw.get("id")
    event_type = raw.get("type")
    if not event_id or not event_type:
        raise EventValidationError("event missing 'id' or 'type'")

    obj = (raw.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise EventValidationError(
            f"{event_type} payload missing data.object", event_id=event_id, event_type=event_type
        )

    try:
        data = _decode_data(event_type, obj)
    except EventValidationError as e:
        e.context.update(event_id=event_id, event_type=event_type)
        raise
    except (TypeError, ValueError) as e:
        raise EventValidationError(
            f"{event_type} payload malformed: {e}", event_id=event_id, event_type=event_type
        ) from e

    return Event(
        id=event_id,
        type=event_type,
        created=from_timestamp(raw.get("created")) or utcnow(),
        payload=raw,
        data=data,
    )
