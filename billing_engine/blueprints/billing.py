"""Billing blueprint: /billing/*

Dunning status, retries and operator actions, plus plan changes with a
proration preview and cancellation.

Routes:
- GET  /billing/dunning/status                : dunning cases for a customer or subscription
- GET  /billing/dunning/retry-schedule        : Stripe's automatic retry state for an invoice
- POST /billing/dunning/retry                 : retry collecting a failed invoice now
- POST /billing/dunning/update-payment-method : new default card, then retry failed invoices
- POST /billing/dunning/mark-paid             : record a payment received outside Stripe
- POST /billing/dunning/void                  : void a failed invoice
- GET  /billing/plans                         : plans a subscriber can switch to
- POST /billing/subscription/preview-change   : what a plan change would cost today
- POST /billing/subscription/update           : apply a plan change in Stripe
- POST /billing/subscription/cancel           : cancel now or at period end
- POST /billing/subscription/reactivate       : withdraw a scheduled cancellation

Local Booking rows are not touched by plan changes or cancellations; the
resulting customer.subscription.* webhooks sync them.
"""

import logging

import stripe
from flask import Blueprint, jsonify, request

from billing_engine.errors import BillingError, ConflictError, GatewayError, ProrationError
from billing_engine.events import extract_period, extract_price
from billing_engine.extensions import db
from billing_engine.services import catalog_service, dunning_service, stripe_service
from billing_engine.services.proration import Plan, compute_proration
from billing_engine.timeutils import utcnow

logger = logging.getLogger(__name__)

billing_bp = Blueprint("billing", __name__, url_prefix="/billing")

PRORATION_BEHAVIORS = ("create_prorations", "always_invoice", "none")


def _bad_request(message):
    return jsonify({"error": "invalid_request", "message": message}), 400


# ──────────────────────────────────────────────
# Dunning
# ──────────────────────────────────────────────

@billing_bp.route("/dunning/status")
def dunning_status():
    customer_id = request.args.get("customer_id")
    subscription_id = request.args.get("subscription_id")
    if not customer_id and not subscription_id:
        return _bad_request("customer_id or subscription_id is required")

    return jsonify(dunning_service.get_dunning_status(
        customer_id=customer_id, subscription_id=subscription_id
    )), 200


@billing_bp.route("/dunning/retry", methods=["POST"])
def dunning_retry():
    """Manual courtesy retry. Never escalates the dunning stage."""
    data = request.get_json(silent=True) or {}
    invoice_id = data.get("invoice_id")
    if not invoice_id:
        return _bad_request("invoice_id is required")

    try:
        success, message = dunning_service.retry_invoice(invoice_id)
    except ValueError:
        return jsonify({"error": "not_found", "message": "No failed payment for this invoice"}), 404

    db.session.commit()
    if success:
        return jsonify({"status": "resolved", "message": message}), 200
    return jsonify({"error": "payment_failed", "message": message}), 402


@billing_bp.route("/dunning/retry-schedule")
def dunning_retry_schedule():
    invoice_id = request.args.get("invoice_id")
    if not invoice_id:
        return _bad_request("invoice_id is required")

    try:
        schedule = dunning_service.get_retry_schedule(invoice_id)
    except GatewayError as e:
        return jsonify(e.payload), e.status_code
    return jsonify(schedule), 200


@billing_bp.route("/dunning/update-payment-method", methods=["POST"])
def dunning_update_payment_method():
    """Set a new default payment method, then retry every failed invoice."""
    data = request.get_json(silent=True) or {}
    customer_id = data.get("customer_id")
    payment_method_id = data.get("payment_method_id")
    if not customer_id or not payment_method_id:
        return _bad_request("customer_id and payment_method_id are required")

    try:
        results = dunning_service.update_payment_method_and_retry(
            customer_id, payment_method_id
        )
    except GatewayError as e:
        return jsonify({"error": "payment_failed", "message": e.detail}), 402

    db.session.commit()
    return jsonify({
        "customer_id": customer_id,
        "retried": results,
        "recovered": sum(1 for r in results if r["success"]),
    }), 200


def _close_case(action, invoice_id):
    try:
        case = action(invoice_id)
    except ValueError:
        return jsonify({"error": "not_found", "message": "No failed payment for this invoice"}), 404
    except ConflictError as e:
        return jsonify({"error": "case_closed", "message": e.detail}), 409
    except GatewayError as e:
        return jsonify(e.payload), e.status_code

    db.session.commit()
    return jsonify(case.to_dict()), 200


@billing_bp.route("/dunning/mark-paid", methods=["POST"])
def dunning_mark_paid():
    """Operator action: the customer paid by cheque or wire."""
    invoice_id = (request.get_json(silent=True) or {}).get("invoice_id")
    if not invoice_id:
        return _bad_request("invoice_id is required")
    return _close_case(dunning_service.mark_paid_out_of_band, invoice_id)


@billing_bp.route("/dunning/void", methods=["POST"])
def dunning_void():
    invoice_id = (request.get_json(silent=True) or {}).get("invoice_id")
    if not invoice_id:
        return _bad_request("invoice_id is required")
    return _close_case(dunning_service.void_invoice, invoice_id)


# ──────────────────────────────────────────────
# Plan changes
# ──────────────────────────────────────────────

def _preview(subscription_id, new_price_id):
    """Compute the proration for moving a subscription to new_price_id.

    Returns (subscription dict, ProrationResult).
    Raises ProrationError for anything that prevents a preview.
    """
    try:
        sub = stripe_service.retrieve_subscription(subscription_id)
        new_price = stripe_service.retrieve_price(new_price_id)
    except stripe.StripeError as e:
        logger.error(f"Proration preview lookup failed for {subscription_id}: {e}")
        raise ProrationError(str(e)) from e

    current_price_id, current_interval, current_amount, current_currency = extract_price(sub)
    period_start = extract_period(sub, "current_period_start")
    period_end = extract_period(sub, "current_period_end")
    if current_amount is None or new_price.get("unit_amount") is None:
        raise ProrationError("price has no unit amount")
    if not period_start or not period_end:
        raise ProrationError("subscription has no current period")

    current_plan = Plan(
        amount=current_amount,
        currency=current_currency or "usd",
        price_id=current_price_id,
        interval=current_interval,
    )
    new_plan = Plan(
        amount=new_price["unit_amount"],
        currency=new_price.get("currency") or "usd",
        price_id=new_price_id,
        interval=(new_price.get("recurring") or {}).get("interval"),
    )
    return sub, compute_proration(current_plan, new_plan, period_start, period_end, utcnow())


def _plan_change_args():
    data = request.get_json(silent=True) or {}
    return data.get("subscription_id"), data.get("new_price_id"), data


@billing_bp.route("/subscription/preview-change", methods=["POST"])
def preview_change():
    subscription_id, new_price_id, _data = _plan_change_args()
    if not subscription_id or not new_price_id:
        return _bad_request("subscription_id and new_price_id are required")

    try:
        _sub, result = _preview(subscription_id, new_price_id)
    except ProrationError as e:
        logger.warning(f"Proration preview failed for {subscription_id}: {e.detail}")
        return jsonify(e.payload), e.status_code

    return jsonify({
        "subscription_id": subscription_id,
        "new_price_id": new_price_id,
        **result.to_dict(),
    }), 200


@billing_bp.route("/subscription/update", methods=["POST"])
def update_subscription():
    """Preview the change, then apply it in Stripe with the chosen proration behavior."""
    subscription_id, new_price_id, data = _plan_change_args()
    if not subscription_id or not new_price_id:
        return _bad_request("subscription_id and new_price_id are required")

    proration_behavior = data.get("proration_behavior", "create_prorations")
    if proration_behavior not in PRORATION_BEHAVIORS:
        return _bad_request(
            f"proration_behavior must be one of: {', '.join(PRORATION_BEHAVIORS)}"
        )

    try:
        sub, result = _preview(subscription_id, new_price_id)
        item_id = stripe_service.subscription_item_id(sub)
        if not item_id:
            raise ProrationError("subscription has no items")
        try:
            updated = stripe_service.update_subscription_price(
                subscription_id, item_id, new_price_id, proration_behavior
            )
        except stripe.StripeError as e:
            logger.error(f"Plan change for {subscription_id} failed: {e}")
            raise GatewayError(str(e)) from e
    except BillingError as e:
        return jsonify(e.payload), e.status_code

    return jsonify({
        "subscription_id": subscription_id,
        "new_price_id": new_price_id,
        "status": updated.get("status"),
        "proration": result.to_dict(),
    }), 200


# ──────────────────────────────────────────────
# Plans & cancellation
# ──────────────────────────────────────────────

@billing_bp.route("/plans")
def available_plans():
    current_price_id = request.args.get("current_price_id")
    if not current_price_id:
        return _bad_request("current_price_id is required")

    try:
        plans = catalog_service.available_plans(current_price_id)
    except stripe.StripeError as e:
        logger.error(f"Plan lookup for {current_price_id} failed: {e}")
        return jsonify(GatewayError().payload), GatewayError.status_code

    return jsonify({"current_price_id": current_price_id, "plans": plans}), 200


def _subscription_response(subscription_id, change):
    try:
        sub = change()
    except stripe.StripeError as e:
        logger.error(f"Cancellation change for {subscription_id} failed: {e}")
        return jsonify(GatewayError().payload), GatewayError.status_code

    return jsonify({
        "subscription_id": subscription_id,
        "status": sub.get("status"),
        "cancel_at_period_end": bool(sub.get("cancel_at_period_end")),
    }), 200


@billing_bp.route("/subscription/cancel", methods=["POST"])
def cancel_subscription():
    """Cancel at period end (default) or immediately with at_period_end=false."""
    data = request.get_json(silent=True) or {}
    subscription_id = data.get("subscription_id")
    if not subscription_id:
        return _bad_request("subscription_id is required")

    at_period_end = data.get("at_period_end", True)
    if not isinstance(at_period_end, bool):
        return _bad_request("at_period_end must be true or false")

    if at_period_end:
        return _subscription_response(
            subscription_id,
            lambda: stripe_service.set_cancel_at_period_end(subscription_id, True),
        )
    return _subscription_response(
        subscription_id,
        lambda: stripe_service.cancel_subscription_now(subscription_id),
    )


@billing_bp.route("/subscription/reactivate", methods=["POST"])
def reactivate_subscription():
    subscription_id = (request.get_json(silent=True) or {}).get("subscription_id")
    if not subscription_id:
        return _bad_request("subscription_id is required")

    return _subscription_response(
        subscription_id,
        lambda: stripe_service.set_cancel_at_period_end(subscription_id, False),
    )
