"""Checkout blueprint: /checkout/*

Starts Stripe Checkout for the two purchasable categories and lets the
buyer's account claim the resulting order.

Routes:
- POST /checkout/<category>                    : create Checkout Session, return its URL
- POST /checkout/sessions/<session_id>/claim   : attach an owning user to the order

Categories:
- ad-slot           one (resource, position) slot, tiered by resource level
- universal-access  site-wide subscription on the configured prices
"""

import logging

import bleach
import stripe
from flask import Blueprint, current_app, jsonify, request

from billing_engine.errors import BillingError, ConflictError, GatewayError, SlotConflict
from billing_engine.extensions import db, limiter
from billing_engine.models.booking import Booking
from billing_engine.models.product import Product
from billing_engine.services import catalog_service, stripe_service
from billing_engine.services.allocator import is_slot_available
from billing_engine.services.correlation_service import create_correlation
from billing_engine.services.settlement_service import claim_order

logger = logging.getLogger(__name__)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/checkout")

CATEGORIES = ("ad-slot", "universal-access")
AD_SLOT_REQUIRED = (
    "resource_id",
    "position",
    "resource_level",
    "billing_interval",
    "organization_name",
    "email",
)


def _bad_request(message):
    return jsonify({"error": "invalid_request", "message": message}), 400


def _sanitize(text):
    """Strip all HTML tags from free-text input (it ends up in emails and metadata)."""
    return bleach.clean(str(text), tags=[], strip=True).strip()


def _validate_ad_slot(data):
    """Return (fields, error_message)."""
    missing = [f for f in AD_SLOT_REQUIRED if data.get(f) in (None, "")]
    if missing:
        return None, f"Missing required fields: {', '.join(missing)}"

    try:
        position = int(data["position"])
    except (TypeError, ValueError):
        return None, "position must be an integer"
    max_position = current_app.config["SLOT_MAX_POSITION"]
    if not 1 <= position <= max_position:
        return None, f"position must be between 1 and {max_position}"

    if data["resource_level"] not in Product.LEVELS:
        return None, f"resource_level must be one of: {', '.join(Product.LEVELS)}"
    if data["billing_interval"] not in Booking.INTERVALS:
        return None, f"billing_interval must be one of: {', '.join(Booking.INTERVALS)}"
    if "@" not in str(data["email"]):
        return None, "email is invalid"

    fields = {k: str(data[k]).strip() for k in AD_SLOT_REQUIRED}
    fields["position"] = position
    fields["organization_name"] = _sanitize(data["organization_name"])
    for optional in ("resource_name", "user_id", "advertiser_id"):
        if data.get(optional):
            fields[optional] = _sanitize(data[optional])
    return fields, None


def _start_session(price_id, metadata, email):
    """Create the Stripe session and its correlation row."""
    try:
        session = stripe_service.create_checkout_session(
            price_id, metadata, customer_email=email
        )
    except stripe.StripeError as e:
        logger.error(f"Checkout session creation failed: {e}")
        raise GatewayError(str(e)) from e

    create_correlation(session.id, metadata=metadata)
    db.session.commit()
    return jsonify({"session_id": session.id, "session_url": session.url}), 200


# ──────────────────────────────────────────────
# POST /checkout/<category>
# ──────────────────────────────────────────────

@checkout_bp.route("/<category>", methods=["POST"])
@limiter.limit("10 per hour")
def create_checkout(category):
    """Validate the purchase, then create a Stripe Checkout Session.

    Returns {session_id, session_url}. 409 if the slot is taken;
    502 with a generic message if Stripe fails.
    """
    if category not in CATEGORIES:
        return jsonify({"error": "not_found", "message": "Unknown checkout category"}), 404

    data = request.get_json(silent=True) or {}

    try:
        if category == "ad-slot":
            return _checkout_ad_slot(data)
        return _checkout_universal_access(data)
    except BillingError as e:
        db.session.rollback()
        return jsonify(e.payload), e.status_code


def _checkout_ad_slot(data):
    fields, error = _validate_ad_slot(data)
    if error:
        return _bad_request(error)

    resource_id, position = fields["resource_id"], fields["position"]
    if not is_slot_available(resource_id, position):
        logger.info(f"Checkout refused: {resource_id}#{position} is booked")
        raise SlotConflict(f"{resource_id}#{position} is booked")

    try:
        product = catalog_service.get_or_create_product(
            resource_id,
            position,
            fields["resource_level"],
            fields.get("resource_name"),
        )
    except stripe.StripeError as e:
        logger.error(f"Product creation for {resource_id}#{position} failed: {e}")
        raise GatewayError(str(e)) from e
    db.session.commit()

    price_id, _amount = catalog_service.price_for(product, fields["billing_interval"])
    metadata = {"category": "ad-slot", **{k: str(v) for k, v in fields.items()}}
    return _start_session(price_id, metadata, fields["email"])


def _checkout_universal_access(data):
    interval = data.get("billing_interval", "monthly")
    if interval not in Booking.INTERVALS:
        return _bad_request(f"billing_interval must be one of: {', '.join(Booking.INTERVALS)}")
    email = data.get("email")
    if not email or "@" not in str(email):
        return _bad_request("email is required")

    config_key = "STRIPE_PRICE_YEARLY" if interval == "annual" else "STRIPE_PRICE_MONTHLY"
    price_id = current_app.config.get(config_key)
    if not price_id:
        logger.error(f"{config_key} is not configured")
        raise GatewayError(f"{config_key} missing")

    metadata = {
        "category": "universal-access",
        "billing_interval": interval,
        "email": str(email),
    }
    for optional in ("organization_name", "user_id"):
        if data.get(optional):
            metadata[optional] = _sanitize(data[optional])
    return _start_session(price_id, metadata, str(email))


# ──────────────────────────────────────────────
# POST /checkout/sessions/<session_id>/claim
# ──────────────────────────────────────────────

@checkout_bp.route("/sessions/<session_id>/claim", methods=["POST"])
def claim(session_id):
    """Attach the owning user to a settled order."""
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if not user_id:
        return _bad_request("user_id is required")

    try:
        order = claim_order(session_id, str(user_id))
    except ValueError:
        return jsonify({"error": "not_found", "message": "Order not found"}), 404
    except ConflictError as e:
        db.session.rollback()
        return jsonify(e.payload), e.status_code

    db.session.commit()
    return jsonify(order.to_dict()), 200
