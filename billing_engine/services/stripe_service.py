"""Stripe service: every outbound Stripe API call.

Responsible for:
- Creating Stripe Checkout Sessions (subscriptions)
- Retrieving and modifying subscriptions (plan changes with proration,
  cancellation and reactivation)
- Listing the recurring prices a subscriber can switch to
- Retrying, voiding and settling invoices for dunning
- Attaching a replacement payment method to a customer
- Creating and archiving the products/prices behind bookable slots

Inbound webhooks are handled by services.verifier and services.event_router.
Functions here raise stripe.StripeError on API failures; callers decide
how that surfaces to users.
"""

import logging

import stripe
from flask import current_app

logger = logging.getLogger(__name__)

STRIPE_INTERVALS = {"monthly": "month", "annual": "year"}


def _configure():
    stripe.api_key = current_app.config["STRIPE_SECRET_KEY"]


def _as_dict(obj):
    """Plain dict copy of a Stripe object, for decoding with .get()."""
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


# ──────────────────────────────────────────────
# Checkout Sessions
# ──────────────────────────────────────────────

def create_checkout_session(price_id, metadata, customer_email=None,
                            success_path="/checkout/success",
                            cancel_path="/checkout/cancel"):
    """Create a Stripe Checkout Session for a recurring price.

    metadata is attached to both the session and the subscription it
    creates, so subscription webhooks carry the slot coordinates even
    when they arrive before checkout.session.completed.

    Returns the Stripe session (``id`` and ``url``).
    """
    _configure()
    app_base_url = current_app.config["APP_BASE_URL"]

    params = {
        "mode": "subscription",
        "line_items": [{"price": price_id, "quantity": 1}],
        "success_url": (
            f"{app_base_url}{success_path}"
            f"?session_id={{CHECKOUT_SESSION_ID}}"
        ),
        "cancel_url": f"{app_base_url}{cancel_path}",
        "metadata": metadata,
        "subscription_data": {"metadata": metadata},
    }
    if customer_email:
        params["customer_email"] = customer_email

    session = stripe.checkout.Session.create(**params)
    logger.info(f"Created checkout session {session.id} for price {price_id}")
    return session


# ──────────────────────────────────────────────
# Subscriptions
# ──────────────────────────────────────────────

def retrieve_subscription(subscription_id):
    _configure()
    return _as_dict(stripe.Subscription.retrieve(subscription_id))


def subscription_item_id(sub):
    """ID of the first subscription item (the one a plan change replaces)."""
    items = sub.get("items") or {}
    data = items.get("data") or []
    return data[0].get("id") if data else None


def update_subscription_price(subscription_id, item_id, new_price_id,
                              proration_behavior="create_prorations"):
    """Swap the subscription's price, letting Stripe prorate."""
    _configure()
    sub = stripe.Subscription.modify(
        subscription_id,
        items=[{"id": item_id, "price": new_price_id}],
        proration_behavior=proration_behavior,
    )
    logger.info(
        f"Subscription {subscription_id} moved to price {new_price_id} "
        f"(proration_behavior={proration_behavior})"
    )
    return _as_dict(sub)


def set_cancel_at_period_end(subscription_id, cancel=True):
    """Schedule (or, with cancel=False, withdraw) cancellation at period end."""
    _configure()
    sub = stripe.Subscription.modify(subscription_id, cancel_at_period_end=cancel)
    logger.info(f"Subscription {subscription_id} cancel_at_period_end={cancel}")
    return _as_dict(sub)


def cancel_subscription_now(subscription_id):
    _configure()
    sub = stripe.Subscription.cancel(subscription_id)
    logger.info(f"Subscription {subscription_id} canceled immediately")
    return _as_dict(sub)


def retrieve_price(price_id):
    _configure()
    return _as_dict(stripe.Price.retrieve(price_id))


def list_recurring_prices():
    """Every active recurring price, with its product expanded."""
    _configure()
    prices = stripe.Price.list(active=True, type="recurring", expand=["data.product"])
    return [_as_dict(p) for p in prices.auto_paging_iter()]


# ──────────────────────────────────────────────
# Invoices
# ──────────────────────────────────────────────

def retrieve_invoice(invoice_id):
    _configure()
    return _as_dict(stripe.Invoice.retrieve(invoice_id))


def list_open_invoices(customer_id):
    _configure()
    invoices = stripe.Invoice.list(customer=customer_id, status="open", limit=100)
    return [_as_dict(i) for i in invoices.auto_paging_iter()]


def pay_invoice(invoice_id):
    """Attempt to collect an open invoice now (manual dunning retry)."""
    _configure()
    return _as_dict(stripe.Invoice.pay(invoice_id))


def mark_invoice_paid_out_of_band(invoice_id):
    """Record a payment received outside Stripe (cheque, wire)."""
    _configure()
    invoice = stripe.Invoice.pay(invoice_id, paid_out_of_band=True)
    logger.info(f"Invoice {invoice_id} marked paid out of band")
    return _as_dict(invoice)


def void_invoice(invoice_id):
    _configure()
    invoice = stripe.Invoice.void_invoice(invoice_id)
    logger.info(f"Invoice {invoice_id} voided")
    return _as_dict(invoice)


# ──────────────────────────────────────────────
# Payment methods
# ──────────────────────────────────────────────

def set_default_payment_method(customer_id, payment_method_id):
    """Attach a payment method and make it the customer's invoice default."""
    _configure()
    stripe.PaymentMethod.attach(payment_method_id, customer=customer_id)
    stripe.Customer.modify(
        customer_id,
        invoice_settings={"default_payment_method": payment_method_id},
    )
    logger.info(f"Customer {customer_id} default payment method set to {payment_method_id}")


# ──────────────────────────────────────────────
# Products & Prices
# ──────────────────────────────────────────────

def create_product(name, metadata):
    _configure()
    return stripe.Product.create(name=name, metadata=metadata)


def create_recurring_price(product_id, unit_amount, interval, currency, metadata=None):
    """Create a recurring price. interval is "monthly" or "annual"."""
    _configure()
    return stripe.Price.create(
        product=product_id,
        unit_amount=unit_amount,
        currency=currency,
        recurring={"interval": STRIPE_INTERVALS[interval]},
        metadata=metadata or {},
    )


def archive_product(product_id):
    _configure()
    return stripe.Product.modify(product_id, active=False)
