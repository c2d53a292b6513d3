"""Catalog service: gateway products and prices for bookable slots.

Responsible for:
- Mapping a resource level to its monthly/annual price tier
- Lazily creating the Stripe product + prices for a slot on first checkout
- Deactivating a retired resource's products
- Listing the plans a subscriber can switch to

Functions flush but do NOT commit; the caller commits.
"""

import logging

import stripe
from sqlalchemy.exc import IntegrityError

from billing_engine.errors import ConflictError, EventValidationError
from billing_engine.extensions import db
from billing_engine.models.product import Product
from billing_engine.services import stripe_service
from billing_engine.timeutils import utcnow

logger = logging.getLogger(__name__)

# Minor units (USD cents) per billing period
PRICING = {
    "federal": {"monthly": 50000, "annual": 500000},
    "state": {"monthly": 20000, "annual": 200000},
}

CURRENCY = "usd"


def tier_amount(resource_level, interval):
    try:
        return PRICING[resource_level][interval]
    except KeyError:
        raise EventValidationError(
            f"No price tier for level={resource_level!r} interval={interval!r}"
        )


def price_for(product, interval):
    """Return (price_id, amount) for a product's billing interval."""
    return product.price_id_for(interval), product.amount_for(interval)


def get_product(resource_id, position):
    return Product.query.filter_by(resource_id=resource_id, position=position).first()


def get_or_create_product(resource_id, position, resource_level, resource_name=None):
    """Return the cached Product for a slot, creating it in Stripe if needed.

    Raises ConflictError if the resource has been retired.
    Raises stripe.StripeError if Stripe product creation fails.
    """
    product = get_product(resource_id, position)
    if product:
        if not product.active:
            raise ConflictError(f"Resource {resource_id} is no longer bookable")
        return product

    monthly_amount = tier_amount(resource_level, "monthly")
    annual_amount = tier_amount(resource_level, "annual")
    metadata = {
        "resource_id": resource_id,
        "position": str(position),
        "resource_level": resource_level,
    }

    label = resource_name or resource_id
    gateway_product = stripe_service.create_product(
        name=f"Ad slot {position}: {label}", metadata=metadata
    )
    monthly = stripe_service.create_recurring_price(
        gateway_product.id, monthly_amount, "monthly", CURRENCY, metadata
    )
    annual = stripe_service.create_recurring_price(
        gateway_product.id, annual_amount, "annual", CURRENCY, metadata
    )

    product = Product(
        resource_id=resource_id,
        position=position,
        resource_level=resource_level,
        external_product_id=gateway_product.id,
        monthly_price_id=monthly.id,
        annual_price_id=annual.id,
        monthly_amount=monthly_amount,
        annual_amount=annual_amount,
        currency=CURRENCY,
    )
    try:
        with db.session.begin_nested():
            db.session.add(product)
    except IntegrityError:
        # Another checkout created the slot's product first; use theirs.
        logger.warning(
            f"Product for {resource_id}#{position} created concurrently; "
            f"orphaned Stripe product {gateway_product.id}"
        )
        return get_product(resource_id, position)

    logger.info(f"Created product {gateway_product.id} for {resource_id}#{position}")
    return product


def deactivate_products(resource_id):
    """Archive a retired resource's products in Stripe and mark them inactive.

    Returns the number of products deactivated.
    """
    products = Product.query.filter_by(resource_id=resource_id, active=True).all()
    for product in products:
        try:
            stripe_service.archive_product(product.external_product_id)
        except stripe.StripeError as e:
            logger.error(
                f"Failed to archive Stripe product {product.external_product_id}: {e}"
            )
        product.active = False
        product.deactivated_at = utcnow()

    db.session.flush()
    return len(products)


def available_plans(current_price_id):
    """Recurring prices a subscriber on current_price_id could switch to.

    Cheapest first, monthly ahead of annual at the same amount. Amounts
    stay in minor units.
    Raises stripe.StripeError if a lookup fails.
    """
    current = stripe_service.retrieve_price(current_price_id)
    current_amount = current.get("unit_amount") or 0

    plans = []
    for price in stripe_service.list_recurring_prices():
        amount = price.get("unit_amount")
        if price.get("id") == current_price_id or amount is None:
            continue
        product = price.get("product")
        plans.append({
            "price_id": price["id"],
            "name": product.get("name") if isinstance(product, dict) else product,
            "amount": amount,
            "currency": price.get("currency") or CURRENCY,
            "interval": (price.get("recurring") or {}).get("interval") or "month",
            "is_upgrade": amount > current_amount,
        })

    plans.sort(key=lambda p: (p["amount"], p["interval"] != "month"))
    return plans
