"""Webhook verifier: authenticates inbound gateway events.

Responsible for:
- Checking the Stripe-Signature HMAC over the raw request body
- Rejecting replays whose signed timestamp is outside the tolerance window
- Decoding the authenticated body into a typed Event

Rejections are logged to the "billing_engine.security" logger so they can
be alerted on separately from application errors.
"""

import json
import logging

import stripe
from flask import current_app

from billing_engine.errors import EventStale, EventValidationError, SignatureInvalid
from billing_engine.events import parse_event
from billing_engine.timeutils import utcnow

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("billing_engine.security")


def _header_timestamp(signature_header):
    """Return the t= value of a Stripe-Signature header as an int, or None."""
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify_event(raw_body, signature_header, tolerance=None, now=None, secret=None):
    """Authenticate a webhook delivery and decode it.

    Args:
        raw_body:          Exact request body (bytes or str). Must not be re-serialized.
        signature_header:  Value of the Stripe-Signature header.
        tolerance:         Max age in seconds; defaults to WEBHOOK_TOLERANCE_SECONDS.
        now:               Current time (aware datetime); injectable for tests.
        secret:            Signing secret; defaults to STRIPE_WEBHOOK_SECRET.

    Returns the decoded Event.
    Raises SignatureInvalid, EventStale or EventValidationError.
    """
    if tolerance is None:
        tolerance = current_app.config["WEBHOOK_TOLERANCE_SECONDS"]
    if secret is None:
        secret = current_app.config["STRIPE_WEBHOOK_SECRET"]
    now = now or utcnow()

    if isinstance(raw_body, bytes):
        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            security_logger.warning("Webhook rejected: body is not valid UTF-8")
            raise SignatureInvalid("body is not valid UTF-8")
    else:
        payload = raw_body

    if not signature_header:
        security_logger.warning("Webhook rejected: missing Stripe-Signature header")
        raise SignatureInvalid("missing signature header")

    # Timestamp is checked separately below so a stale event is reported as
    # EventStale rather than as a generic signature failure.
    try:
        stripe.WebhookSignature.verify_header(
            payload, signature_header, secret, tolerance=None
        )
    except stripe.SignatureVerificationError as e:
        security_logger.warning(f"Webhook rejected: signature verification failed ({e})")
        raise SignatureInvalid(str(e)) from e

    signed_at = _header_timestamp(signature_header)
    age = now.timestamp() - signed_at
    if age > tolerance:
        security_logger.warning(
            f"Webhook rejected: signed {int(age)}s ago, tolerance is {tolerance}s"
        )
        raise EventStale(f"event signed {int(age)}s ago")

    try:
        body = json.loads(payload)
    except ValueError as e:
        logger.error(f"Authenticated webhook body is not JSON: {e}")
        raise EventValidationError("body is not valid JSON") from e

    return parse_event(body)
