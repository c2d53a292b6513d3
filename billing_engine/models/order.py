"""Order model.

One row per completed checkout session. Created by the settlement
handler when the gateway reports the session complete; never deleted
so the table doubles as the purchase audit trail.

Status transitions are monotonic (pending -> paid -> fulfilled,
pending -> canceled). Refunds and disputes may arrive from paid or
fulfilled. Transitions are enforced via Order.VALID_TRANSITIONS.
"""

import uuid

from billing_engine.extensions import db
from billing_engine.errors import InvalidTransition


class Order(db.Model):
    __tablename__ = "orders"

    # -- Valid statuses --
    STATUSES = ["pending", "paid", "fulfilled", "refunded", "canceled", "disputed"]

    # -- Valid status transitions --
    VALID_TRANSITIONS = {
        "pending": ["paid", "canceled"],
        "paid": ["fulfilled", "refunded", "disputed"],
        "fulfilled": ["refunded", "disputed"],
        "disputed": ["refunded"],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    external_session_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "cs_test_..."
    external_customer_id = db.Column(db.String(255), nullable=True, index=True)
    external_subscription_id = db.Column(db.String(255), nullable=True, index=True)
    external_payment_intent_id = db.Column(db.String(255), nullable=True, index=True)
    organization_name = db.Column(db.String(255), nullable=True)
    contact_email = db.Column(db.String(255), nullable=True)
    category = db.Column(
        db.String(50), nullable=False
    )  # ad-slot | universal-access
    status = db.Column(
        db.String(50), default="pending", nullable=False
    )  # pending | paid | fulfilled | refunded | canceled | disputed
    amount = db.Column(db.Integer, nullable=False, default=0)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")
    user_id = db.Column(
        db.String(255), nullable=True
    )  # owning user, set when the order is claimed
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def can_transition_to(self, new_status):
        return new_status in self.VALID_TRANSITIONS.get(self.status, [])

    def transition_to(self, new_status):
        """Move to new_status, enforcing VALID_TRANSITIONS.

        Re-applying the current status is a no-op.
        Raises InvalidTransition for anything else not allowed.
        """
        if new_status not in self.STATUSES:
            raise InvalidTransition(f"Unknown order status '{new_status}'")
        if new_status == self.status:
            return False
        if not self.can_transition_to(new_status):
            allowed = self.VALID_TRANSITIONS.get(self.status, [])
            raise InvalidTransition(
                f"Cannot transition order {self.external_session_id} from "
                f"'{self.status}' to '{new_status}'. "
                f"Allowed: {', '.join(allowed) if allowed else 'none (terminal state)'}"
            )
        self.status = new_status
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "session_id": self.external_session_id,
            "category": self.category,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "organization_name": self.organization_name,
            "user_id": self.user_id,
        }

    def __repr__(self):
        return f"<Order {self.external_session_id} ({self.status})>"
