"""Processed event model (idempotency ledger).

Every webhook event is recorded by its gateway event ID in the same
transaction as the effect it produced. The primary key is the event ID
itself, so a redelivered event fails the insert and is skipped without
touching any domain rows. Rows are write-once and pruned after the
retention window (see the `prune-events` CLI command).
"""

from billing_engine.extensions import db


class ProcessedEvent(db.Model):
    __tablename__ = "processed_events"

    external_event_id = db.Column(
        db.String(255), primary_key=True
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now(), index=True
    )

    def __repr__(self):
        return f"<ProcessedEvent {self.external_event_id} ({self.event_type})>"
