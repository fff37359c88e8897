# payment_service.py - Payments for Imperatore Bevande
# Stripe payment intents, PayPal Orders v2, offline gateways and Satispay

import logging
import os
import re
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import stripe

from config_service import ConfigService

logger = logging.getLogger("Imperatore.Payments")

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PAYPAL_CLIENT_ID = os.getenv("PAYPAL_CLIENT_ID", "")
PAYPAL_CLIENT_SECRET = os.getenv("PAYPAL_CLIENT_SECRET", "")
PAYPAL_ENVIRONMENT = os.getenv("PAYPAL_ENVIRONMENT", "sandbox")

PAYPAL_SANDBOX_URL = "https://api-m.sandbox.paypal.com"
PAYPAL_PRODUCTION_URL = "https://api-m.paypal.com"

PAYMENT_SOURCE = "imperatore-bevande-shop"
STORE_NAME = "Imperatore Bevande"
STRIPE_DEFAULT_ORIGIN = "http://localhost:3000"
PAYPAL_DEFAULT_ORIGIN = "http://localhost:8080"

ORDER_ID_PATTERN = re.compile(r"^[A-Z0-9]+$")


class PaymentError(Exception):
    """Payment failure carrying the HTTP status to answer with"""

    def __init__(self, status_code: int, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.details = details or {}

# ============================================================================
# STRIPE
# ============================================================================

class StripeService:
    def __init__(self, secret_key: str = STRIPE_SECRET_KEY, webhook_secret: str = STRIPE_WEBHOOK_SECRET):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        if secret_key:
            stripe.api_key = secret_key

    def _require_key(self) -> None:
        if not self.secret_key:
            raise PaymentError(500, "Stripe non configurato")

    def create_payment_intent(self, amount: float, currency: str = "eur",
                              metadata: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        """Create an intent for an amount expressed in euros"""
        if amount is None or amount <= 0:
            raise PaymentError(400, "Importo non valido")
        self._require_key()

        try:
            intent = stripe.PaymentIntent.create(
                amount=round(amount * 100),
                currency=currency.lower(),
                automatic_payment_methods={"enabled": True},
                metadata={**(metadata or {}), "source": PAYMENT_SOURCE},
            )
        except stripe.StripeError as e:
            logger.error(f"Errore nella creazione del Payment Intent: {e}")
            raise PaymentError(500, "Errore interno del server", {"details": str(e)}) from e

        logger.info(f"Payment Intent creato: {intent.id}")
        return {"client_secret": intent.client_secret, "payment_intent_id": intent.id}

    def create_payment_intent_with_saved_method(
        self,
        amount: Optional[int],
        payment_method_id: Optional[str],
        customer_id: Optional[str],
        currency: str = "eur",
        billing_details: Optional[Dict[str, Any]] = None,
        confirm: bool = True,
        origin: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Charge a card saved on the customer; amount is in cents"""
        if not amount or not payment_method_id or not customer_id:
            raise PaymentError(400, "Amount, paymentMethodId, and customerId are required")
        self._require_key()

        try:
            payment_method = stripe.PaymentMethod.retrieve(payment_method_id)
            if payment_method.customer != customer_id:
                raise PaymentError(403, "Payment method does not belong to customer")

            params: Dict[str, Any] = {
                "amount": round(amount),
                "currency": currency.lower(),
                "customer": customer_id,
                "payment_method": payment_method_id,
                "confirmation_method": "manual",
                "confirm": confirm,
                "return_url": f"{origin or STRIPE_DEFAULT_ORIGIN}/account",
            }
            if billing_details:
                address = billing_details.get("address") or {}
                params["shipping"] = {
                    "name": billing_details.get("name"),
                    "address": {
                        "line1": address.get("line1"),
                        "city": address.get("city"),
                        "state": address.get("state"),
                        "postal_code": address.get("postal_code"),
                        "country": address.get("country") or "IT",
                    },
                }
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Errore nella creazione del Payment Intent con metodo salvato: {e}")
            raise PaymentError(500, "Errore interno del server", {"details": str(e)}) from e

        if intent.status == "requires_action":
            return {
                "requires_action": True,
                "payment_intent": {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status},
            }
        if intent.status == "succeeded":
            return {
                "success": True,
                "payment_intent": {
                    "id": intent.id,
                    "status": intent.status,
                    "amount": intent.amount,
                    "currency": intent.currency,
                },
            }
        return {"payment_intent": {"id": intent.id, "client_secret": intent.client_secret, "status": intent.status}}

    def confirm_payment(self, payment_intent_id: str) -> Dict[str, str]:
        self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as e:
            logger.error(f"Errore nella conferma del pagamento: {e}")
            raise PaymentError(500, "Errore nella conferma del pagamento", {"details": str(e)}) from e
        return {"status": intent.status, "payment_intent_id": intent.id}

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.webhook_secret:
            raise PaymentError(500, "Webhook Stripe non configurato")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise PaymentError(400, f"Webhook Error: {e}") from e

        event_type = event["type"]
        intent = event["data"]["object"]
        if event_type == "payment_intent.succeeded":
            logger.info(f"Pagamento completato: {intent['id']}")
        elif event_type == "payment_intent.payment_failed":
            logger.warning(f"Pagamento fallito: {intent['id']}")
        else:
            logger.info(f"Evento non gestito: {event_type}")
        return {"received": True, "type": event_type}

# ============================================================================
# PAYPAL
# ============================================================================

def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def cart_total(cart: List[Dict[str, Any]]) -> float:
    # Items that are not objects count as zero
    return sum(
        _to_float(item.get("price")) * _to_int(item.get("quantity"))
        for item in cart
        if isinstance(item, dict)
    )


class PayPalService:
    def __init__(self, client_id: str = PAYPAL_CLIENT_ID, client_secret: str = PAYPAL_CLIENT_SECRET,
                 environment: str = PAYPAL_ENVIRONMENT, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client_id = client_id
        self.client_secret = client_secret
        self.base_url = PAYPAL_PRODUCTION_URL if environment == "production" else PAYPAL_SANDBOX_URL
        self.transport = transport

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise PaymentError(500, "PayPal credentials not configured")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=30.0, transport=self.transport)

    async def _access_token(self, client: httpx.AsyncClient) -> str:
        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.client_secret),
        )
        if response.is_error:
            logger.error(f"PayPal OAuth error: {response.status_code}")
            raise PaymentError(500, f"PayPal OAuth Error: {response.status_code}")
        return response.json()["access_token"]

    async def create_order(self, cart: Any, origin: Optional[str] = None) -> Dict[str, Any]:
        self._require_credentials()
        if not cart or not isinstance(cart, list):
            raise PaymentError(400, "Invalid cart data", {"message": "Cart must be a non-empty array"})
        if not all(isinstance(item, dict) for item in cart):
            raise PaymentError(400, "Invalid cart data", {"message": "Cart items must be objects"})

        total = cart_total(cart)
        if total <= 0:
            raise PaymentError(400, "Invalid cart total", {"message": "Cart total must be greater than 0"})

        base = origin or PAYPAL_DEFAULT_ORIGIN
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "amount": {
                    "currency_code": "EUR",
                    "value": f"{total:.2f}",
                },
                "description": f"Ordine {STORE_NAME} - {len(cart)} prodotti",
                "items": [
                    {
                        "name": item.get("name") or "Prodotto",
                        "quantity": str(_to_int(item.get("quantity")) or 1),
                        "unit_amount": {"currency_code": "EUR", "value": f"{_to_float(item.get('price')):.2f}"},
                    }
                    for item in cart
                ],
            }],
            "application_context": {
                "return_url": f"{base}/order-success",
                "cancel_url": f"{base}/checkout",
                "brand_name": STORE_NAME,
                "landing_page": "NO_PREFERENCE",
                "user_action": "PAY_NOW",
            },
        }

        async with self._client() as client:
            token = await self._access_token(client)
            response = await client.post(
                "/v2/checkout/orders",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
            )
        if response.status_code != 201:
            logger.error(f"PayPal Order Creation Error: {response.status_code}")
            raise PaymentError(500, f"PayPal API Error: {response.status_code}")

        result = response.json()
        logger.info(f"Ordine PayPal creato: {result.get('id')} ({total:.2f} EUR)")
        return {"id": result.get("id"), "status": result.get("status"), "links": result.get("links", [])}

    async def capture_order(self, order_id: Optional[str]) -> Dict[str, Any]:
        self._require_credentials()
        if not order_id:
            raise PaymentError(400, "Missing orderID")
        if not ORDER_ID_PATTERN.match(order_id):
            raise PaymentError(400, "Invalid orderID format",
                               {"message": "OrderID must contain only uppercase letters and numbers"})

        async with self._client() as client:
            token = await self._access_token(client)
            response = await client.post(
                f"/v2/checkout/orders/{order_id}/capture",
                json={},
                headers={"Authorization": f"Bearer {token}"},
            )

        if response.is_error:
            self._raise_capture_error(order_id, response)

        result = response.json()
        status = result.get("status")
        if status != "COMPLETED":
            raise PaymentError(400, "Capture not completed",
                               {"message": f"Order capture status: {status}", "order_id": order_id, "status": status})

        units = result.get("purchase_units") or [{}]
        captures = (units[0].get("payments") or {}).get("captures") or [{}]
        payer = result.get("payer") or {}
        logger.info(f"Ordine PayPal catturato: {order_id}")
        return {
            "order_id": order_id,
            "status": status,
            "capture_id": captures[0].get("id"),
            "amount": captures[0].get("amount"),
            "create_time": result.get("create_time"),
            "update_time": result.get("update_time"),
            "payer": {
                "email": payer.get("email_address"),
                "payer_id": payer.get("payer_id"),
                "name": payer.get("name"),
            },
        }

    @staticmethod
    def _raise_capture_error(order_id: str, response: httpx.Response) -> None:
        try:
            error = response.json()
        except ValueError:
            error = {}
        issues = {error.get("name")} | {d.get("issue") for d in error.get("details") or []}
        logger.error(f"PayPal Capture Error: {response.status_code} {issues}")
        if "RESOURCE_NOT_FOUND" in issues:
            raise PaymentError(404, "Order not found", {"order_id": order_id})
        if "ORDER_NOT_APPROVED" in issues:
            raise PaymentError(400, "Order not approved", {"order_id": order_id})
        raise PaymentError(500, "Capture failed", {"order_id": order_id, "message": error.get("message")})

# ============================================================================
# ORDERS & OFFLINE GATEWAYS
# ============================================================================

# method -> (WooCommerce status, payment_method_title)
ORDER_METHODS = {
    "cod": ("processing", "Pagamento in contanti o POS alla consegna"),
    "bacs": ("on-hold", "Bonifico bancario"),
    "stripe": ("processing", "Carta di Credito/Debito"),
    "paypal": ("processing", "PayPal"),
    "satispay": ("processing", "Satispay"),
}


def order_status_for(method: str, gateway_title: Optional[str] = None):
    return ORDER_METHODS.get(method, ("pending", gateway_title or method))


class OrderService:
    """Creates WooCommerce orders with the status each payment method implies"""

    def __init__(self, woocommerce, config: ConfigService):
        self.woocommerce = woocommerce
        self.config = config

    async def place_order(self, order_data: Dict[str, Any], method: str,
                          gateway_title: Optional[str] = None) -> Dict[str, Any]:
        if not self.config.is_method_enabled(method):
            raise PaymentError(400, f"Metodo di pagamento non disponibile: {method}")

        status, title = order_status_for(method, gateway_title)
        order = {
            **order_data,
            "payment_method": method,
            "payment_method_title": title,
            "status": status,
        }
        if method in ("stripe", "paypal", "satispay"):
            order["set_paid"] = True
        created = await self.woocommerce.create_order(order)
        logger.info(f"Ordine {created.get('id')} creato con {method} ({status})")
        return created


def format_satispay_phone(value: str) -> str:
    digits = re.sub(r"\D", "", value or "")
    if digits.startswith("39"):
        return f"+39 {digits[2:]}"
    return f"+39 {digits}"


def create_satispay_payment(amount: float, phone_number: str, currency: str = "EUR") -> Dict[str, Any]:
    """Simulated Satispay payment; no provider call is made"""
    if len(re.sub(r"\D", "", phone_number or "")) < 10:
        raise PaymentError(400, "Inserisci un numero di telefono valido")
    if amount is None or amount <= 0:
        raise PaymentError(400, "Importo non valido")

    payment = {
        "id": f"satispay_{int(time.time() * 1000)}",
        "status": "completed",
        "amount": amount,
        "currency": currency,
        "phone_number": phone_number,
        "payment_method": "satispay",
        "created_at": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"Pagamento Satispay simulato: {payment['id']}")
    return payment


# Singleton instances
stripe_service_instance: Optional[StripeService] = None
paypal_service_instance: Optional[PayPalService] = None

def get_stripe_service() -> StripeService:
    global stripe_service_instance
    if stripe_service_instance is None:
        stripe_service_instance = StripeService()
    return stripe_service_instance

def get_paypal_service() -> PayPalService:
    global paypal_service_instance
    if paypal_service_instance is None:
        paypal_service_instance = PayPalService()
    return paypal_service_instance
