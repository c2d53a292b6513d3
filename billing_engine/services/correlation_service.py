"""Checkout correlation service: bridges checkout intent to settlement.

Responsible for:
- Persisting the business context of a checkout session with a TTL
- Resolving it when the settlement webhook arrives
- Purging expired rows (lazily on resolve, and from the CLI sweep)

A missing or expired correlation is never fatal: settlement falls back
to the metadata carried by the gateway payload.

Functions flush but do NOT commit; the caller commits.
"""

import logging
from datetime import timedelta

from flask import current_app

from billing_engine.extensions import db
from billing_engine.models.checkout_correlation import CheckoutSessionCorrelation
from billing_engine.timeutils import utcnow

logger = logging.getLogger(__name__)


def _get(session_id):
    return CheckoutSessionCorrelation.query.filter_by(
        external_session_id=session_id
    ).first()


def create_correlation(session_id, customer_id=None, metadata=None, ttl=None, now=None):
    """Store the context for a checkout session.

    Re-creating a correlation for the same session replaces the old one.
    ttl defaults to CHECKOUT_CORRELATION_TTL_HOURS.
    """
    now = now or utcnow()
    if ttl is None:
        ttl = timedelta(hours=current_app.config["CHECKOUT_CORRELATION_TTL_HOURS"])

    values = {str(k): str(v) for k, v in (metadata or {}).items() if v is not None}

    correlation = _get(session_id)
    if correlation:
        correlation.external_customer_id = customer_id
        correlation.metadata_ = values
        correlation.expires_at = now + ttl
        correlation.resolved_at = None
    else:
        correlation = CheckoutSessionCorrelation(
            external_session_id=session_id,
            external_customer_id=customer_id,
            metadata_=values,
            expires_at=now + ttl,
        )
        db.session.add(correlation)

    db.session.flush()
    return correlation


def resolve_correlation(session_id, now=None):
    """Look up the stored context for a session.

    Returns (metadata, ok). ok is False when no row exists or the row has
    expired; an expired row is deleted on the way out.
    """
    now = now or utcnow()
    correlation = _get(session_id)
    if not correlation:
        logger.info(f"No checkout correlation for session {session_id}")
        return {}, False

    if correlation.is_expired(now):
        logger.info(f"Checkout correlation for session {session_id} expired, purging")
        db.session.delete(correlation)
        db.session.flush()
        return {}, False

    return dict(correlation.metadata_ or {}), True


def mark_resolved(session_id, now=None):
    """Record that the settlement webhook consumed this correlation."""
    correlation = _get(session_id)
    if not correlation:
        return False
    if correlation.resolved_at is None:
        correlation.resolved_at = now or utcnow()
        db.session.flush()
    return True


def purge_expired_correlations(now=None):
    """Delete every correlation past its expiry. Returns the number removed."""
    now = now or utcnow()
    count = (
        CheckoutSessionCorrelation.query
        .filter(CheckoutSessionCorrelation.expires_at < now)
        .delete(synchronize_session=False)
    )
    db.session.flush()
    logger.info(f"Purged {count} expired checkout correlation(s)")
    return count
