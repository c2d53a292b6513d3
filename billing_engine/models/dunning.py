"""Dunning case model.

Tracks recovery of one failed invoice. The escalation stage moves
forward through OPEN_STAGES and ends in a terminal stage: "resolved"
when a payment succeeds or is recorded as paid out of band (from any
stage), "voided" when an operator voids the invoice, or
"subscription-canceled" when the owning subscription is deleted.
"""

import uuid

from billing_engine.extensions import db

OPEN_STAGES = ["reminder", "urgent", "final"]
TERMINAL_STAGES = ["resolved", "voided", "subscription-canceled"]


class DunningCase(db.Model):
    __tablename__ = "dunning_cases"

    STAGES = OPEN_STAGES + TERMINAL_STAGES

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    invoice_id = db.Column(db.String(255), unique=True, nullable=False)
    subscription_id = db.Column(db.String(255), nullable=True, index=True)
    customer_id = db.Column(db.String(255), nullable=True, index=True)
    customer_email = db.Column(db.String(255), nullable=True)
    amount_due = db.Column(db.Integer, nullable=False, default=0)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")
    attempt_count = db.Column(db.Integer, nullable=False, default=0)
    manual_retry_count = db.Column(db.Integer, nullable=False, default=0)
    overdue_since = db.Column(
        db.DateTime(timezone=True), nullable=False
    )  # invoice due date, or first failure when the invoice has none
    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error_message = db.Column(db.Text, nullable=True)
    escalation_stage = db.Column(
        db.String(50), nullable=False, default="reminder", index=True
    )  # reminder | urgent | final | resolved | voided | subscription-canceled
    last_notified_stage = db.Column(db.String(50), nullable=True)
    last_notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_open(self):
        return self.escalation_stage in OPEN_STAGES

    def to_dict(self):
        return {
            "invoice_id": self.invoice_id,
            "subscription_id": self.subscription_id,
            "amount_due": self.amount_due,
            "currency": self.currency,
            "attempt_count": self.attempt_count,
            "manual_retry_count": self.manual_retry_count,
            "escalation_stage": self.escalation_stage,
            "next_retry_at": self.next_retry_at.isoformat() if self.next_retry_at else None,
            "last_error_message": self.last_error_message,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def __repr__(self):
        return f"<DunningCase {self.invoice_id} ({self.escalation_stage})>"
