"""Tests for Stripe, PayPal, order placement and Satispay."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import httpx
import pytest
import stripe

from config_service import ConfigService
from payment_service import (
    OrderService,
    PaymentError,
    PayPalService,
    StripeService,
    cart_total,
    create_satispay_payment,
    format_satispay_phone,
    order_status_for,
)


@pytest.fixture
def stripe_service():
    return StripeService(secret_key="sk_test_123", webhook_secret="whsec_test")


class TestStripePaymentIntent:
    def test_amount_in_euros_is_converted_to_cents(self, stripe_service):
        intent = SimpleNamespace(id="pi_1", client_secret="pi_1_secret")
        with patch("payment_service.stripe.PaymentIntent.create", return_value=intent) as create:
            result = stripe_service.create_payment_intent(12.345, "EUR", {"order": "77"})

        assert result == {"client_secret": "pi_1_secret", "payment_intent_id": "pi_1"}
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 1234
        assert kwargs["currency"] == "eur"
        assert kwargs["automatic_payment_methods"] == {"enabled": True}
        assert kwargs["metadata"] == {"order": "77", "source": "imperatore-bevande-shop"}

    def test_non_positive_amount(self, stripe_service):
        with pytest.raises(PaymentError) as exc_info:
            stripe_service.create_payment_intent(0)
        assert exc_info.value.status_code == 400

    def test_stripe_failure(self, stripe_service):
        with patch("payment_service.stripe.PaymentIntent.create", side_effect=stripe.StripeError("declined")):
            with pytest.raises(PaymentError) as exc_info:
                stripe_service.create_payment_intent(10)
        assert exc_info.value.status_code == 500


class TestStripeSavedMethod:
    def test_required_fields(self, stripe_service):
        with pytest.raises(PaymentError) as exc_info:
            stripe_service.create_payment_intent_with_saved_method(1000, None, "cus_1")
        assert exc_info.value.status_code == 400

    def test_method_of_another_customer(self, stripe_service):
        method = SimpleNamespace(customer="cus_other")
        with patch("payment_service.stripe.PaymentMethod.retrieve", return_value=method):
            with pytest.raises(PaymentError, match="Payment method does not belong to customer") as exc_info:
                stripe_service.create_payment_intent_with_saved_method(1000, "pm_1", "cus_1")
        assert exc_info.value.status_code == 403

    def test_requires_action(self, stripe_service):
        method = SimpleNamespace(customer="cus_1")
        intent = SimpleNamespace(id="pi_2", client_secret="pi_2_secret", status="requires_action", amount=1000, currency="eur")
        billing = {"name": "Mario Rossi", "address": {"line1": "Via Sparano 1", "city": "Bari"}}
        with patch("payment_service.stripe.PaymentMethod.retrieve", return_value=method), \
                patch("payment_service.stripe.PaymentIntent.create", return_value=intent) as create:
            result = stripe_service.create_payment_intent_with_saved_method(1000, "pm_1", "cus_1", billing_details=billing)

        assert result["requires_action"] is True
        assert result["payment_intent"]["client_secret"] == "pi_2_secret"
        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 1000
        assert kwargs["confirmation_method"] == "manual"
        assert kwargs["return_url"] == "http://localhost:3000/account"
        assert kwargs["shipping"]["address"]["country"] == "IT"

    def test_succeeded(self, stripe_service):
        method = SimpleNamespace(customer="cus_1")
        intent = SimpleNamespace(id="pi_3", client_secret="s", status="succeeded", amount=2500, currency="eur")
        with patch("payment_service.stripe.PaymentMethod.retrieve", return_value=method), \
                patch("payment_service.stripe.PaymentIntent.create", return_value=intent) as create:
            result = stripe_service.create_payment_intent_with_saved_method(
                2500, "pm_1", "cus_1", origin="https://imperatorebevande.it"
            )

        assert result == {"success": True, "payment_intent": {"id": "pi_3", "status": "succeeded", "amount": 2500, "currency": "eur"}}
        assert create.call_args.kwargs["return_url"] == "https://imperatorebevande.it/account"
        assert "shipping" not in create.call_args.kwargs


class TestStripeWebhook:
    def test_bad_signature(self, stripe_service):
        error = stripe.SignatureVerificationError("bad signature", "t=1,v1=x")
        with patch("payment_service.stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(PaymentError) as exc_info:
                stripe_service.handle_webhook(b"{}", "t=1,v1=x")
        assert exc_info.value.status_code == 400

    def test_succeeded_event(self, stripe_service):
        event = {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_9"}}}
        with patch("payment_service.stripe.Webhook.construct_event", return_value=event):
            assert stripe_service.handle_webhook(b"{}", "sig") == {"received": True, "type": "payment_intent.succeeded"}


class PayPalStub:
    """MockTransport handler for the PayPal REST API."""

    def __init__(self, capture_status=200, capture_body=None):
        self.requests = []
        self.capture_status = capture_status
        self.capture_body = capture_body or {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21AA", "token_type": "Bearer"})
        if path == "/v2/checkout/orders":
            return httpx.Response(201, json={
                "id": "5O190127TN364715T",
                "status": "CREATED",
                "links": [{"rel": "approve", "href": "https://www.sandbox.paypal.com/checkoutnow?token=5O190127TN364715T"}],
            })
        if path.endswith("/capture"):
            return httpx.Response(self.capture_status, json=self.capture_body)
        return httpx.Response(404, json={})


def paypal_with(stub):
    return PayPalService("client", "secret", "sandbox", transport=httpx.MockTransport(stub))


CART = [
    {"id": 1, "name": "Acqua Lete", "price": "3.50", "quantity": 2},
    {"id": 2, "price": 10, "quantity": "1"},
]


class TestPayPal:
    def test_cart_total(self):
        assert cart_total(CART) == 17.0
        assert cart_total([{"price": "abc", "quantity": 3}]) == 0

    async def test_credentials_missing(self):
        with pytest.raises(PaymentError, match="PayPal credentials not configured") as exc_info:
            await PayPalService("", "").create_order(CART)
        assert exc_info.value.status_code == 500

    async def test_invalid_cart(self):
        with pytest.raises(PaymentError, match="Invalid cart data"):
            await paypal_with(PayPalStub()).create_order([])

    async def test_items_must_be_objects(self):
        with pytest.raises(PaymentError, match="Invalid cart data") as exc_info:
            await paypal_with(PayPalStub()).create_order([1, 2])
        assert exc_info.value.status_code == 400

    def test_cart_total_ignores_non_objects(self):
        assert cart_total([None, "x", {"price": "2.50", "quantity": 2}]) == 5.0

    async def test_zero_total(self):
        with pytest.raises(PaymentError, match="Invalid cart total"):
            await paypal_with(PayPalStub()).create_order([{"price": 0, "quantity": 1}])

    async def test_create_order(self):
        stub = PayPalStub()
        result = await paypal_with(stub).create_order(CART, origin="https://imperatorebevande.it")

        assert result["id"] == "5O190127TN364715T"
        assert result["status"] == "CREATED"
        body = json.loads(stub.requests[1].content)
        unit = body["purchase_units"][0]
        assert unit["amount"] == {"currency_code": "EUR", "value": "17.00"}
        assert unit["description"] == "Ordine Imperatore Bevande - 2 prodotti"
        assert unit["items"][1]["name"] == "Prodotto"
        assert unit["items"][0]["unit_amount"]["value"] == "3.50"
        assert body["application_context"]["return_url"] == "https://imperatorebevande.it/order-success"
        assert body["application_context"]["cancel_url"] == "https://imperatorebevande.it/checkout"
        assert stub.requests[1].headers["Authorization"] == "Bearer A21AA"

    async def test_capture_rejects_malformed_id(self):
        with pytest.raises(PaymentError, match="Invalid orderID format"):
            await paypal_with(PayPalStub()).capture_order("abc-123")

    async def test_capture_completed(self):
        body = {
            "id": "5O190127TN364715T",
            "status": "COMPLETED",
            "purchase_units": [{"payments": {"captures": [{"id": "3C679366HH908993F", "amount": {"currency_code": "EUR", "value": "17.00"}}]}}],
            "payer": {"email_address": "mario@example.com", "payer_id": "QYR5Z8XDVJNXQ", "name": {"given_name": "Mario"}},
            "create_time": "2025-06-09T10:00:00Z",
            "update_time": "2025-06-09T10:01:00Z",
        }
        result = await paypal_with(PayPalStub(capture_status=201, capture_body=body)).capture_order("5O190127TN364715T")

        assert result["capture_id"] == "3C679366HH908993F"
        assert result["amount"]["value"] == "17.00"
        assert result["payer"]["email"] == "mario@example.com"

    async def test_capture_not_completed(self):
        stub = PayPalStub(capture_status=201, capture_body={"status": "PENDING"})
        with pytest.raises(PaymentError, match="Capture not completed") as exc_info:
            await paypal_with(stub).capture_order("5O190127TN364715T")
        assert exc_info.value.status_code == 400

    async def test_capture_unknown_order(self):
        stub = PayPalStub(capture_status=404, capture_body={"name": "RESOURCE_NOT_FOUND", "message": "missing"})
        with pytest.raises(PaymentError) as exc_info:
            await paypal_with(stub).capture_order("5O190127TN364715T")
        assert exc_info.value.status_code == 404

    async def test_capture_not_approved(self):
        stub = PayPalStub(capture_status=422, capture_body={
            "name": "UNPROCESSABLE_ENTITY",
            "details": [{"issue": "ORDER_NOT_APPROVED"}],
        })
        with pytest.raises(PaymentError, match="Order not approved"):
            await paypal_with(stub).capture_order("5O190127TN364715T")


class TestPlaceOrder:
    @pytest.fixture
    def woocommerce(self):
        woo = AsyncMock()
        woo.create_order.return_value = {"id": 321}
        return woo

    @pytest.fixture
    def config(self, tmp_path):
        return ConfigService(str(tmp_path / "payment_config.json"))

    @pytest.mark.parametrize("method,status,title", [
        ("cod", "processing", "Pagamento in contanti o POS alla consegna"),
        ("bacs", "on-hold", "Bonifico bancario"),
        ("stripe", "processing", "Carta di Credito/Debito"),
        ("paypal", "processing", "PayPal"),
        ("satispay", "processing", "Satispay"),
    ])
    async def test_status_and_title(self, woocommerce, config, method, status, title):
        order = await OrderService(woocommerce, config).place_order({"line_items": []}, method)

        assert order == {"id": 321}
        sent = woocommerce.create_order.call_args.args[0]
        assert sent["status"] == status
        assert sent["payment_method_title"] == title
        assert sent["payment_method"] == method

    def test_unknown_gateway_is_pending(self):
        assert order_status_for("klarna", "Klarna") == ("pending", "Klarna")

    async def test_disabled_method(self, woocommerce, config):
        config.update_config({"bacs": {"enabled": False}})
        with pytest.raises(PaymentError) as exc_info:
            await OrderService(woocommerce, config).place_order({}, "bacs")
        assert exc_info.value.status_code == 400
        woocommerce.create_order.assert_not_called()


class TestSatispay:
    def test_short_phone(self):
        with pytest.raises(PaymentError):
            create_satispay_payment(10, "340 12")

    def test_simulated_payment(self):
        payment = create_satispay_payment(25.5, "340 123 4567")
        assert payment["id"].startswith("satispay_")
        assert payment["status"] == "completed"
        assert payment["payment_method"] == "satispay"
        assert payment["currency"] == "EUR"

    @pytest.mark.parametrize("raw,formatted", [
        ("3401234567", "+39 3401234567"),
        ("+39 340 123 4567", "+39 3401234567"),
    ])
    def test_phone_format(self, raw, formatted):
        assert format_satispay_phone(raw) == formatted
