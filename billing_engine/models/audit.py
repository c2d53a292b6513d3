"""Audit event model.

Logs significant billing actions (orders settled, bookings allocated,
dunning escalations) and anything an operator has to follow up on by
hand: slot conflicts that need a refund and malformed events.
Rows flagged for follow-up have needs_review=True.
"""

import uuid

from billing_engine.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    action = db.Column(db.String(255), nullable=False, index=True)  # e.g. "booking.conflict"
    event_id = db.Column(
        db.String(255), nullable=True, index=True
    )  # gateway event that caused it, if any
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid the declarative attribute
    needs_review = db.Column(db.Boolean, nullable=False, default=False, index=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
