"""Product model.

Caches the gateway product and recurring price IDs for one bookable
slot (resource + position), so checkout never recreates them. Pricing
is tiered by the resource level. Rows are never deleted; retiring a
resource deactivates them.
"""

import uuid

from billing_engine.extensions import db


class Product(db.Model):
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("resource_id", "position", name="uq_products_slot"),
    )

    # -- Valid tiers --
    LEVELS = ["federal", "state"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    resource_id = db.Column(db.String(255), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    resource_level = db.Column(
        db.String(20), nullable=False
    )  # federal | state
    external_product_id = db.Column(
        db.String(255), unique=True, nullable=False
    )
    monthly_price_id = db.Column(db.String(255), nullable=False)
    annual_price_id = db.Column(db.String(255), nullable=False)
    monthly_amount = db.Column(db.Integer, nullable=False)  # minor units
    annual_amount = db.Column(db.Integer, nullable=False)  # minor units
    currency = db.Column(db.String(3), nullable=False, default="usd")
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    deactivated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def price_id_for(self, interval):
        return self.annual_price_id if interval == "annual" else self.monthly_price_id

    def amount_for(self, interval):
        return self.annual_amount if interval == "annual" else self.monthly_amount

    def __repr__(self):
        return f"<Product {self.resource_id}#{self.position} ({self.resource_level})>"
