"""Tests for the checkout blueprint.

Covers:
- Ad-slot checkout creates product, prices, session and correlation
- Cached product reused on the next checkout
- Taken slot -> 409, invalid input -> 400, unknown category -> 404
- Stripe failure -> 502 with a generic message
- Universal-access checkout on the configured prices
- Claiming a settled order
"""

from unittest.mock import MagicMock, patch

import stripe

from billing_engine.extensions import db
from billing_engine.models.checkout_correlation import CheckoutSessionCorrelation
from billing_engine.models.order import Order
from billing_engine.models.product import Product

AD_SLOT = {
    "resource_id": "judge-1",
    "position": 2,
    "resource_level": "federal",
    "billing_interval": "monthly",
    "organization_name": "Smith & Co",
    "email": "ads@example.com",
}


def _session(session_id="cs_test_1"):
    session = MagicMock()
    session.id = session_id
    session.url = f"https://checkout.stripe.com/c/pay/{session_id}"
    return session


def _gateway_object(object_id):
    obj = MagicMock()
    obj.id = object_id
    return obj


@patch("billing_engine.services.stripe_service.stripe.checkout.Session.create")
@patch("billing_engine.services.stripe_service.stripe.Price.create")
@patch("billing_engine.services.stripe_service.stripe.Product.create")
class TestAdSlotCheckout:

    def _mock_catalog(self, mock_product, mock_price, mock_session):
        mock_product.return_value = _gateway_object("prod_1")
        mock_price.side_effect = [_gateway_object("price_m"), _gateway_object("price_a")]
        mock_session.return_value = _session()

    def test_creates_session(self, mock_product, mock_price, mock_session, client, app):
        self._mock_catalog(mock_product, mock_price, mock_session)

        resp = client.post("/checkout/ad-slot", json=AD_SLOT)

        assert resp.status_code == 200
        assert resp.get_json() == {
            "session_id": "cs_test_1",
            "session_url": "https://checkout.stripe.com/c/pay/cs_test_1",
        }

        product = Product.query.first()
        assert product.monthly_price_id == "price_m"
        assert product.annual_price_id == "price_a"
        assert product.monthly_amount == 50000

        params = mock_session.call_args.kwargs
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_m", "quantity": 1}]
        assert params["subscription_data"]["metadata"]["position"] == "2"
        assert params["customer_email"] == "ads@example.com"

        correlation = CheckoutSessionCorrelation.query.first()
        assert correlation.external_session_id == "cs_test_1"

    def test_organization_name_sanitized(self, mock_product, mock_price, mock_session,
                                         client, app):
        self._mock_catalog(mock_product, mock_price, mock_session)

        client.post("/checkout/ad-slot",
                    json=dict(AD_SLOT, organization_name="<b>Acme</b> Law"))

        assert mock_session.call_args.kwargs["metadata"]["organization_name"] == "Acme Law"

    def test_annual_uses_annual_price(self, mock_product, mock_price, mock_session, client, app):
        self._mock_catalog(mock_product, mock_price, mock_session)

        client.post("/checkout/ad-slot", json=dict(AD_SLOT, billing_interval="annual"))

        assert mock_session.call_args.kwargs["line_items"][0]["price"] == "price_a"

    def test_product_reused(self, mock_product, mock_price, mock_session, client, app):
        self._mock_catalog(mock_product, mock_price, mock_session)
        client.post("/checkout/ad-slot", json=AD_SLOT)

        mock_session.return_value = _session("cs_test_2")
        resp = client.post("/checkout/ad-slot", json=AD_SLOT)

        assert resp.status_code == 200
        assert mock_product.call_count == 1
        assert Product.query.count() == 1

    def test_taken_slot_returns_409(self, mock_product, mock_price, mock_session, client, app,
                                    seed_booking):
        seed_booking(resource_id="judge-1", position=2)

        resp = client.post("/checkout/ad-slot", json=AD_SLOT)

        assert resp.status_code == 409
        assert resp.get_json()["error"] == "slot_conflict"
        mock_session.assert_not_called()

    def test_past_due_slot_still_taken(self, mock_product, mock_price, mock_session, client, app,
                                       seed_booking):
        seed_booking(resource_id="judge-1", position=2, status="past_due")
        resp = client.post("/checkout/ad-slot", json=AD_SLOT)
        assert resp.status_code == 409

    def test_missing_fields_return_400(self, mock_product, mock_price, mock_session, client, app):
        resp = client.post("/checkout/ad-slot", json={"resource_id": "judge-1"})

        assert resp.status_code == 400
        assert "Missing required fields" in resp.get_json()["message"]

    def test_position_out_of_range_returns_400(self, mock_product, mock_price, mock_session,
                                               client, app):
        resp = client.post("/checkout/ad-slot", json=dict(AD_SLOT, position=6))
        assert resp.status_code == 400

    def test_unknown_level_returns_400(self, mock_product, mock_price, mock_session, client, app):
        resp = client.post("/checkout/ad-slot", json=dict(AD_SLOT, resource_level="county"))
        assert resp.status_code == 400

    def test_session_failure_returns_502(self, mock_product, mock_price, mock_session,
                                         client, app):
        self._mock_catalog(mock_product, mock_price, mock_session)
        mock_session.side_effect = stripe.APIConnectionError("network down")

        resp = client.post("/checkout/ad-slot", json=AD_SLOT)

        assert resp.status_code == 502
        assert resp.get_json()["message"] == "Payment could not be completed."
        assert CheckoutSessionCorrelation.query.count() == 0
        # The slot's product is kept for the next attempt
        assert Product.query.count() == 1

    def test_product_failure_returns_502(self, mock_product, mock_price, mock_session,
                                         client, app):
        mock_product.side_effect = stripe.APIConnectionError("network down")

        resp = client.post("/checkout/ad-slot", json=AD_SLOT)

        assert resp.status_code == 502
        assert Product.query.count() == 0

    def test_retired_resource_returns_409(self, mock_product, mock_price, mock_session,
                                          client, app):
        db.session.add(Product(
            resource_id="judge-1",
            position=2,
            resource_level="federal",
            external_product_id="prod_old",
            monthly_price_id="price_m",
            annual_price_id="price_a",
            monthly_amount=50000,
            annual_amount=500000,
            active=False,
        ))
        db.session.commit()

        resp = client.post("/checkout/ad-slot", json=AD_SLOT)

        assert resp.status_code == 409


@patch("billing_engine.services.stripe_service.stripe.checkout.Session.create")
class TestUniversalAccessCheckout:

    def test_monthly(self, mock_session, client, app):
        mock_session.return_value = _session()

        resp = client.post("/checkout/universal-access", json={"email": "reader@example.com"})

        assert resp.status_code == 200
        params = mock_session.call_args.kwargs
        assert params["line_items"][0]["price"] == "price_universal_monthly_test"
        assert params["metadata"]["category"] == "universal-access"

    def test_annual(self, mock_session, client, app):
        mock_session.return_value = _session()

        client.post("/checkout/universal-access",
                    json={"email": "reader@example.com", "billing_interval": "annual"})

        assert mock_session.call_args.kwargs["line_items"][0]["price"] == "price_universal_yearly_test"

    def test_email_required(self, mock_session, client, app):
        resp = client.post("/checkout/universal-access", json={})
        assert resp.status_code == 400
        mock_session.assert_not_called()


class TestCheckoutRouting:

    def test_unknown_category_returns_404(self, client, app):
        resp = client.post("/checkout/gift-card", json={})
        assert resp.status_code == 404


class TestClaim:

    def _seed_order(self, user_id=None):
        db.session.add(Order(
            external_session_id="cs_1",
            category="ad-slot",
            status="paid",
            amount=50000,
            user_id=user_id,
        ))
        db.session.commit()

    def test_claim_order(self, client, app):
        self._seed_order()

        resp = client.post("/checkout/sessions/cs_1/claim", json={"user_id": "user_1"})

        assert resp.status_code == 200
        assert resp.get_json()["user_id"] == "user_1"
        assert Order.query.first().user_id == "user_1"

    def test_claim_missing_order_returns_404(self, client, app):
        resp = client.post("/checkout/sessions/cs_nope/claim", json={"user_id": "user_1"})
        assert resp.status_code == 404

    def test_claim_conflict_returns_409(self, client, app):
        self._seed_order(user_id="user_1")
        resp = client.post("/checkout/sessions/cs_1/claim", json={"user_id": "user_2"})
        assert resp.status_code == 409

    def test_user_id_required(self, client, app):
        resp = client.post("/checkout/sessions/cs_1/claim", json={})
        assert resp.status_code == 400
