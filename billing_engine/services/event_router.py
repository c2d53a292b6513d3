"""Event router: exactly-once application of verified webhook events.

One transaction per event:

    1. INSERT the ProcessedEvent ledger row and flush. A primary-key
       violation means the event was already applied: roll back, report
       "duplicate", touch nothing else.
    2. Run the handler inside a savepoint.
    3. COMMIT ledger row and effects together.

Failure handling:
    ConflictError         savepoint rolled back, ledger row kept, audit
                          row flagged for manual refund, committed.
    EventValidationError  same, flagged for manual review.
    anything else         whole transaction rolled back (ledger row too)
                          and re-raised, so the gateway's redelivery
                          retries the full operation.
    over time limit      rolled back and HandlerTimeout raised.

The ledger insert and the slot index are the only synchronization; there
are no in-process locks.
"""

import logging
import time

from flask import current_app
from sqlalchemy.exc import IntegrityError

from billing_engine.errors import ConflictError, EventValidationError, HandlerTimeout
from billing_engine.extensions import db
from billing_engine.models.processed_event import ProcessedEvent
from billing_engine.services import allocator, dunning_service, settlement_service
from billing_engine.services.audit_service import flag_for_review

logger = logging.getLogger(__name__)

PROCESSED = "processed"
DUPLICATE = "duplicate"
CONFLICT = "conflict"
FLAGGED = "flagged"
IGNORED = "ignored"

HANDLERS = {
    "checkout.session.completed": settlement_service.handle_checkout_completed,
    "checkout.session.async_payment_succeeded": settlement_service.handle_async_payment_succeeded,
    "checkout.session.async_payment_failed": settlement_service.handle_async_payment_failed,
    "charge.refunded": settlement_service.handle_charge_refunded,
    "charge.dispute.created": settlement_service.handle_dispute_created,
    "customer.subscription.created": allocator.allocate_or_update,
    "customer.subscription.updated": allocator.allocate_or_update,
    "customer.subscription.deleted": allocator.allocate_or_update,
    "invoice.payment_failed": dunning_service.handle_invoice_event,
    "invoice.payment_succeeded": dunning_service.handle_invoice_event,
}


def record_event(event_id, event_type):
    """Insert the ledger row. Returns False if the event was already recorded."""
    try:
        db.session.add(ProcessedEvent(external_event_id=event_id, event_type=event_type))
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return False
    return True


def flag_invalid_event(event_id, event_type, error):
    """Record a malformed event that could not be decoded into a typed Event.

    The event is acknowledged so the gateway stops redelivering it.
    """
    if not record_event(event_id, event_type):
        logger.info(f"Duplicate malformed event {event_id}, skipping")
        return DUPLICATE
    flag_for_review("event.invalid", event_id, error.detail, {"event_type": event_type})
    db.session.commit()
    logger.error(f"Event {event_id} ({event_type}) flagged for review: {error.detail}")
    return FLAGGED


def route_event(event, timeout=None):
    """Apply a verified Event exactly once. Returns one of the result constants.

    Raises HandlerTimeout or the handler's unexpected exception after
    rolling everything back.
    """
    if timeout is None:
        timeout = current_app.config["WEBHOOK_HANDLER_TIMEOUT_SECONDS"]

    if not record_event(event.id, event.type):
        logger.info(f"Duplicate webhook event {event.id}, skipping")
        return DUPLICATE

    handler = HANDLERS.get(event.type)
    if handler is None:
        db.session.commit()
        logger.info(f"Unhandled event type {event.type} ({event.id}) recorded")
        return IGNORED

    started = time.monotonic()
    try:
        with db.session.begin_nested():
            handler(event)
    except ConflictError as e:
        flag_for_review(f"{event.type}.conflict", event.id, e.detail, {
            "code": e.code,
            "manual_refund": True,
            **{k: str(v) for k, v in e.context.items()},
        })
        db.session.commit()
        logger.critical(
            f"Business conflict on {event.type} ({event.id}): {e.detail}. "
            f"Manual refund required."
        )
        return CONFLICT
    except EventValidationError as e:
        flag_for_review(f"{event.type}.invalid", event.id, e.detail, {"code": e.code})
        db.session.commit()
        logger.error(f"Event {event.id} ({event.type}) flagged for review: {e.detail}")
        return FLAGGED
    except Exception as e:
        db.session.rollback()
        logger.error(f"Error handling {event.type} ({event.id}): {e}", exc_info=True)
        raise

    elapsed = time.monotonic() - started
    if elapsed > timeout:
        db.session.rollback()
        logger.error(
            f"Handler for {event.type} ({event.id}) took {elapsed:.2f}s "
            f"(limit {timeout}s), rolled back"
        )
        raise HandlerTimeout(f"{event.type} handler exceeded {timeout}s")

    db.session.commit()
    logger.info(f"Processed {event.type} ({event.id}) in {elapsed:.3f}s")
    return PROCESSED
