"""Checkout session correlation model.

Short-lived bridge between a client-initiated checkout and the webhook
that eventually settles it. Stores the business context (resource,
position, organization) the webhook payload may not fully carry.
Exactly one row per session; expired rows are purged lazily on
resolve and by the `sweep-correlations` CLI job.
"""

import uuid

from billing_engine.extensions import db
from billing_engine.timeutils import as_utc, utcnow


class CheckoutSessionCorrelation(db.Model):
    __tablename__ = "checkout_correlations"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_session_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    external_customer_id = db.Column(db.String(255), nullable=True)
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # string -> string; named metadata_ to avoid the declarative attribute
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    expires_at = db.Column(
        db.DateTime(timezone=True), nullable=False, index=True
    )
    resolved_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # set when the settlement webhook consumed it

    def is_expired(self, now=None):
        now = now or utcnow()
        return now > as_utc(self.expires_at)

    def __repr__(self):
        return f"<CheckoutSessionCorrelation {self.external_session_id}>"
