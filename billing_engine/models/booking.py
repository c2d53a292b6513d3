"""Booking model.

A claim on one (resource_id, position) slot, tied to a gateway
subscription and synced from subscription webhooks. Rows are never
deleted: ending a subscription moves the booking to "canceled".

Double-booking is prevented in the database, not in Python: the
partial unique index uq_bookings_live_slot allows at most one row per
slot whose status is in LIVE_STATUSES. A slot is available exactly when
no such row exists.
"""

import uuid

from billing_engine.extensions import db

LIVE_STATUSES = ("active", "trialing", "past_due")

_LIVE_PREDICATE = "status IN ('active', 'trialing', 'past_due')"


class Booking(db.Model):
    __tablename__ = "bookings"
    __table_args__ = (
        db.Index(
            "uq_bookings_live_slot",
            "resource_id",
            "position",
            unique=True,
            postgresql_where=db.text(_LIVE_PREDICATE),
            sqlite_where=db.text(_LIVE_PREDICATE),
        ),
    )

    # -- Valid statuses (synced from the gateway) --
    STATUSES = ["incomplete", "trialing", "active", "past_due", "paused", "canceled"]

    # -- Valid billing intervals --
    INTERVALS = ["monthly", "annual"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    resource_id = db.Column(db.String(255), nullable=False, index=True)
    advertiser_id = db.Column(db.String(255), nullable=True, index=True)
    position = db.Column(db.Integer, nullable=False)
    resource_level = db.Column(db.String(20), nullable=True)  # federal | state
    external_subscription_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    external_customer_id = db.Column(db.String(255), nullable=True)
    external_price_id = db.Column(db.String(255), nullable=True)
    billing_interval = db.Column(
        db.String(20), nullable=False, default="monthly"
    )  # monthly | annual
    status = db.Column(
        db.String(50), nullable=False, index=True
    )  # incomplete | trialing | active | past_due | paused | canceled
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True)
    cancel_at_period_end = db.Column(db.Boolean, default=False)
    canceled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_event_at = db.Column(
        db.DateTime(timezone=True), nullable=True
    )  # created time of the newest event applied; older events are ignored
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    @property
    def is_live(self):
        return self.status in LIVE_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "resource_id": self.resource_id,
            "position": self.position,
            "subscription_id": self.external_subscription_id,
            "status": self.status,
            "billing_interval": self.billing_interval,
            "current_period_start": (
                self.current_period_start.isoformat() if self.current_period_start else None
            ),
            "current_period_end": (
                self.current_period_end.isoformat() if self.current_period_end else None
            ),
            "canceled_at": self.canceled_at.isoformat() if self.canceled_at else None,
        }

    def __repr__(self):
        return f"<Booking {self.resource_id}#{self.position} ({self.status})>"
