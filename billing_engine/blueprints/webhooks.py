"""Webhooks blueprint: /webhook

Single ingress for Stripe webhook events. CSRF-exempt.
Raw body is required for signature verification.
"""

import logging

from flask import Blueprint, jsonify, request

from billing_engine.errors import EventValidationError, SecurityError, TransientError
from billing_engine.extensions import db
from billing_engine.services.audit_service import flag_for_review
from billing_engine.services.event_router import FLAGGED, flag_invalid_event, route_event
from billing_engine.services.verifier import verify_event

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.route("/webhook", methods=["POST"])
def stripe_webhook():
    """Receive and process Stripe webhook events.

    1. Get raw body (required for signature verification)
    2. Verify signature and timestamp with STRIPE_WEBHOOK_SECRET
    3. Route the event (idempotent via the processed_events ledger)
    4. Return 200 once the event is durably recorded, including
       duplicates, conflicts and events flagged for review

    Security failures return 400 and are never retried. Transient
    failures return 500 so Stripe redelivers.

    CSRF is exempted for this blueprint in create_app().
    """
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")

    # --- Verify ---
    try:
        event = verify_event(payload, sig_header)
    except SecurityError as e:
        return jsonify(e.payload), 400
    except EventValidationError as e:
        event_id = e.context.get("event_id")
        if event_id:
            status = flag_invalid_event(event_id, e.context.get("event_type", "unknown"), e)
        else:
            flag_for_review("event.invalid", None, e.detail)
            db.session.commit()
            logger.error(f"Unidentifiable webhook body flagged for review: {e.detail}")
            status = FLAGGED
        return jsonify({"status": status}), 200

    # --- Process event (idempotent) ---
    try:
        status = route_event(event)
    except TransientError as e:
        logger.error(f"Webhook {event.id} will be retried: {e.detail}")
        return jsonify(e.payload), 500
    except Exception as e:
        logger.error(f"Webhook {event.id} processing failed: {e}", exc_info=True)
        return jsonify({"error": "processing_failed"}), 500

    return jsonify({"status": status, "event_id": event.id}), 200
