"""Audit service: durable record of billing actions and review flags.

Functions flush but do NOT commit; the caller owns the transaction.
"""

import logging

from billing_engine.extensions import db
from billing_engine.models.audit import AuditEvent

logger = logging.getLogger(__name__)


def log_billing_audit(action, metadata=None, event_id=None):
    """Log a billing-related audit event.

    There is no actor: webhook events are system-initiated.
    """
    event = AuditEvent(
        action=action,
        event_id=event_id,
        metadata_=metadata or {},
    )
    db.session.add(event)
    db.session.flush()
    return event


def flag_for_review(action, event_id, reason, metadata=None):
    """Record something an operator must follow up on by hand."""
    details = dict(metadata or {})
    details["reason"] = reason
    event = AuditEvent(
        action=action,
        event_id=event_id,
        metadata_=details,
        needs_review=True,
    )
    db.session.add(event)
    db.session.flush()
    return event
