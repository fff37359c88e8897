# app.py - Imperatore Bevande Storefront Backend
# Version: 1.0.0 - Beverage delivery shop for Bari and province
# FastAPI layer over WooCommerce, Stripe, PayPal, WhatsApp and delivery zones

from fastapi import FastAPI, HTTPException, Request, Depends, Header, Query
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import date, datetime, timezone
from contextlib import asynccontextmanager
import secrets
import uuid
import re
import os
import httpx
import logging
import time

from calendar_service import CalendarError, DeliveryCalendarService
from config_service import ConfigService, get_config_service
from geocoding_service import (
    NOT_COVERED_MESSAGE,
    AddressQuery,
    GeocodingService,
    get_geocoding_service,
)
from payment_service import (
    OrderService,
    PaymentError,
    PayPalService,
    StripeService,
    create_satispay_payment,
    format_satispay_phone,
    get_paypal_service,
    get_stripe_service,
)
from technical_sheet_service import TechnicalSheetError, TechnicalSheetService, get_technical_sheet_service
from whatsapp_service import ContactForm, WhatsAppError, WhatsAppService, get_whatsapp_service
from woocommerce_service import (
    WooCommerceError,
    WooCommerceNotConfigured,
    WooCommerceService,
    get_border_color,
    get_bottle_quantity,
    get_cart_category,
    get_woocommerce_service,
)
from zone_service import (
    ALL_TIME_SLOTS,
    InvalidPolygon,
    LatLng,
    TimeSlotRestrictions,
    ZoneAddress,
    ZoneNotFound,
    ZoneStore,
    export_zones,
    get_zone_store,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("Imperatore")

# Security configurations
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:8080,http://localhost:3000").split(",")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "imperatore2024")
MAX_REQUESTS_PER_MINUTE = int(os.getenv("MAX_REQUESTS_PER_MINUTE", "60"))
MAX_PAYMENT_REQUESTS_PER_MINUTE = int(os.getenv("MAX_PAYMENT_REQUESTS_PER_MINUTE", "20"))
MAX_CONTACT_REQUESTS_PER_MINUTE = int(os.getenv("MAX_CONTACT_REQUESTS_PER_MINUTE", "5"))
MAX_AI_REQUESTS_PER_MINUTE = int(os.getenv("MAX_AI_REQUESTS_PER_MINUTE", "10"))
CART_TTL_SECONDS = int(os.getenv("CART_TTL_SECONDS", str(24 * 3600)))
MAX_CARTS = int(os.getenv("MAX_CARTS", "10000"))

VERSION = "1.0.0"

# ============================================================================
# SECURITY LAYER
# ============================================================================

class RateLimiter:
    """Sliding-window rate limiting per client"""
    def __init__(self):
        self.requests: Dict[str, List[float]] = {}

    def check_rate_limit(self, key: str, max_requests: int, window: int = 60) -> bool:
        now = time.time()
        recent = [t for t in self.requests.get(key, []) if now - t < window]
        if len(recent) >= max_requests:
            self.requests[key] = recent
            return False
        recent.append(now)
        self.requests[key] = recent
        return True

    def reset(self) -> None:
        self.requests.clear()

rate_limiter = RateLimiter()

def rate_limited(scope: str, max_requests: int):
    """Dependency rejecting clients over the per-minute budget of a scope"""
    async def dependency(request: Request) -> None:
        client = request.client.host if request.client else "anonymous"
        if not rate_limiter.check_rate_limit(f"{scope}:{client}", max_requests):
            logger.warning(f"Rate limit superato: {scope} da {client}")
            raise HTTPException(status_code=429, detail="Troppe richieste. Riprova tra un minuto")
    return dependency

def sanitize_input(text: str, max_length: int = 2000) -> str:
    """Strip control characters and markup from free text"""
    text = re.sub(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f-\x9f]', '', text)
    text = text[:max_length]
    text = re.sub(r'<script.*?>.*?</script>', '', text, flags=re.IGNORECASE | re.DOTALL)
    text = re.sub(r'<[^>]+>', '', text)
    return text.strip()

admin_scheme = HTTPBearer(auto_error=False)

async def require_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(admin_scheme)) -> None:
    if credentials is None or not secrets.compare_digest(credentials.credentials, ADMIN_PASSWORD):
        raise HTTPException(status_code=401, detail="Password non corretta")

# ============================================================================
# DATA MODELS
# ============================================================================

class CartItem(BaseModel):
    id: int
    name: str
    price: float = Field(ge=0)
    image: str = "/placeholder.svg"
    quantity: int = 1
    category: Optional[str] = None

class Cart(BaseModel):
    session_id: str
    items: List[CartItem] = []
    total: float = 0.0
    item_count: int = 0

class AddCartItem(BaseModel):
    id: int
    name: str
    price: float = Field(ge=0)
    image: str = "/placeholder.svg"
    category: Optional[str] = None

class QuantityUpdate(BaseModel):
    quantity: int

class AdminLogin(BaseModel):
    password: str

class DrawnPolygon(BaseModel):
    # Map clicks as [lat, lng]
    points: List[List[float]] = Field(min_length=3)

class ZoneUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    description: Optional[str] = None
    cities: Optional[List[str]] = None
    provinces: Optional[List[str]] = None
    postal_codes: Optional[List[str]] = Field(None, alias="postalCodes")
    color: Optional[str] = None
    time_slot_restrictions: Optional[TimeSlotRestrictions] = Field(None, alias="timeSlotRestrictions")

class TimeSlotToggle(BaseModel):
    slot: str
    enabled: bool

class ZoneCheckRequest(BaseModel):
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None

class PaymentIntentRequest(BaseModel):
    amount: float
    currency: str = "eur"
    metadata: Dict[str, str] = {}

class SavedMethodPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    amount: Optional[int] = None
    currency: str = "eur"
    payment_method_id: Optional[str] = Field(None, alias="paymentMethodId")
    customer_id: Optional[str] = Field(None, alias="customerId")
    billing_details: Optional[Dict[str, Any]] = None
    confirm: bool = True

class ConfirmPaymentRequest(BaseModel):
    payment_intent_id: str

class PayPalOrderRequest(BaseModel):
    cart: Any = None

class PayPalCaptureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(None, alias="orderID")

class PlaceOrderRequest(BaseModel):
    payment_method: str
    gateway_title: Optional[str] = None
    order: Dict[str, Any]

class SatispayRequest(BaseModel):
    amount: float
    phone_number: str
    currency: str = "EUR"

class ContactRequest(BaseModel):
    name: str = Field("", max_length=200)
    subject: str = Field("", max_length=200)
    message: str = Field("", max_length=2000)
    to: Optional[str] = None

    @field_validator("name", "subject", "message")
    @classmethod
    def clean_text(cls, v: str) -> str:
        return sanitize_input(v)

class TechnicalSheetRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_name: str = Field("", alias="productName")
    product_description: str = Field("", alias="productDescription")
    product_category: Optional[str] = Field(None, alias="productCategory")

class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=200)
    password: str = ""

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 6

class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field("", alias="firstName", max_length=200)
    last_name: str = Field("", alias="lastName", max_length=200)
    email: str = Field("", max_length=200)
    password: str = ""
    confirm_password: str = Field("", alias="confirmPassword")
    phone: str = Field("", max_length=50)
    address: str = Field("", max_length=200)
    city: str = Field("", max_length=100)
    postal_code: str = Field("", alias="postalCode", max_length=20)
    province: str = Field("", max_length=50)

    def validation_error(self) -> Optional[str]:
        """First problem with the form, in the order the shop checks them"""
        if not self.first_name.strip():
            return "Il nome è obbligatorio"
        if not self.last_name.strip():
            return "Il cognome è obbligatorio"
        if not self.email.strip():
            return "L'email è obbligatoria"
        if not EMAIL_PATTERN.match(self.email.strip()):
            return "Inserisci un indirizzo email valido"
        if not self.password:
            return "La password è obbligatoria"
        if len(self.password) < MIN_PASSWORD_LENGTH:
            return f"La password deve essere di almeno {MIN_PASSWORD_LENGTH} caratteri"
        if self.password != self.confirm_password:
            return "Le password non coincidono"
        return None

    def to_customer(self) -> Dict[str, Any]:
        """WooCommerce customer body, billing and shipping filled from the form"""
        address = {
            "first_name": sanitize_input(self.first_name, 200),
            "last_name": sanitize_input(self.last_name, 200),
            "address_1": sanitize_input(self.address, 200),
            "city": sanitize_input(self.city, 100),
            "postcode": sanitize_input(self.postal_code, 20),
            "state": sanitize_input(self.province, 50),
            "country": "IT",
        }
        email = self.email.strip()
        return {
            "email": email,
            "first_name": address["first_name"],
            "last_name": address["last_name"],
            "password": self.password,
            "billing": {**address, "email": email, "phone": sanitize_input(self.phone, 50)},
            "shipping": address,
        }

class CustomerUpdate(BaseModel):
    first_name: Optional[str] = Field(None, max_length=200)
    last_name: Optional[str] = Field(None, max_length=200)
    email: Optional[str] = Field(None, max_length=200)
    billing: Optional[Dict[str, str]] = None
    shipping: Optional[Dict[str, str]] = None

class ReorderRequest(BaseModel):
    order_id: Optional[int] = None
    # product id -> quantity; products left out keep the ordered quantity
    quantities: Dict[int, int] = {}

# ============================================================================
# CART STORE
# ============================================================================

class CartStore:
    """In-memory carts keyed by session id, dropped after inactivity"""
    def __init__(self, ttl: float = CART_TTL_SECONDS, max_carts: int = MAX_CARTS):
        self.carts: Dict[str, Cart] = {}
        self.last_seen: Dict[str, float] = {}
        self.ttl = ttl
        self.max_carts = max_carts

    def _alive(self, session_id: Optional[str]) -> bool:
        seen = self.last_seen.get(session_id) if session_id else None
        if seen is None:
            return False
        if time.time() - seen >= self.ttl:
            self._drop(session_id)
            return False
        return True

    def _drop(self, session_id: str) -> None:
        self.carts.pop(session_id, None)
        self.last_seen.pop(session_id, None)

    def _purge(self) -> None:
        now = time.time()
        for session_id in [s for s, seen in self.last_seen.items() if now - seen >= self.ttl]:
            self._drop(session_id)
        while self.carts and len(self.carts) >= self.max_carts:
            self._drop(min(self.last_seen, key=self.last_seen.get))

    def peek(self, session_id: Optional[str]) -> Cart:
        """Stored cart, or a transient empty one that is not kept"""
        if self._alive(session_id):
            self.last_seen[session_id] = time.time()
            return self.carts[session_id]
        return Cart(session_id=session_id or uuid.uuid4().hex)

    def get(self, session_id: str) -> Cart:
        if not self._alive(session_id):
            self._purge()
            self.carts[session_id] = Cart(session_id=session_id)
        self.last_seen[session_id] = time.time()
        return self.carts[session_id]

    def add_item(self, session_id: str, payload: AddCartItem) -> Cart:
        cart = self.get(session_id)
        for item in cart.items:
            if item.id == payload.id:
                item.quantity += 1
                item.category = payload.category or item.category
                break
        else:
            cart.items.append(CartItem(**payload.model_dump(), quantity=1))
        return self._update_totals(cart)

    def add_items(self, session_id: str, items: List[CartItem]) -> Cart:
        """Merge whole lines, summing quantities of products already in the cart"""
        cart = self.get(session_id)
        for new in items:
            for item in cart.items:
                if item.id == new.id:
                    item.quantity += new.quantity
                    break
            else:
                cart.items.append(new)
        return self._update_totals(cart)

    def remove_item(self, session_id: Optional[str], item_id: int) -> Cart:
        if not self._alive(session_id):
            return self.peek(session_id)
        cart = self.get(session_id)
        cart.items = [item for item in cart.items if item.id != item_id]
        return self._update_totals(cart)

    def update_quantity(self, session_id: Optional[str], item_id: int, quantity: int) -> Cart:
        if not self._alive(session_id):
            return self.peek(session_id)
        cart = self.get(session_id)
        for item in cart.items:
            if item.id == item_id:
                item.quantity = quantity
        cart.items = [item for item in cart.items if item.quantity > 0]
        return self._update_totals(cart)

    def clear(self, session_id: Optional[str]) -> Cart:
        if not self._alive(session_id):
            return self.peek(session_id)
        cart = self.get(session_id)
        cart.items = []
        return self._update_totals(cart)

    @staticmethod
    def _update_totals(cart: Cart) -> Cart:
        cart.total = round(sum(item.price * item.quantity for item in cart.items), 2)
        cart.item_count = sum(item.quantity for item in cart.items)
        return cart

cart_store = CartStore()

def get_cart_store() -> CartStore:
    return cart_store

def session_id_header(x_session_id: Optional[str] = Header(None, alias="X-Session-Id")) -> Optional[str]:
    return x_session_id or None

def new_session_id(session_id: Optional[str]) -> str:
    return session_id or uuid.uuid4().hex

# ============================================================================
# SERVICE DEPENDENCIES
# ============================================================================

def get_calendar_service(
    woocommerce: WooCommerceService = Depends(get_woocommerce_service),
    zones: ZoneStore = Depends(get_zone_store),
) -> DeliveryCalendarService:
    return DeliveryCalendarService(woocommerce, zones)

def get_order_service(
    woocommerce: WooCommerceService = Depends(get_woocommerce_service),
    config: ConfigService = Depends(get_config_service),
) -> OrderService:
    return OrderService(woocommerce, config)

def app_product(woo: Dict[str, Any]) -> Dict[str, Any]:
    """WooCommerce product as the storefront renders it"""
    product = WooCommerceService.convert_to_app_product(woo)
    product["border_color"] = get_border_color(product["category"])
    product["bottle_quantity"] = get_bottle_quantity(woo.get("description") or woo.get("short_description"))
    return product

def public_customer(customer: Dict[str, Any]) -> Dict[str, Any]:
    """Account fields shown to the storefront; addresses stay in WooCommerce"""
    return {key: customer.get(key) for key in ("id", "email", "first_name", "last_name", "username")}

async def reorder_items(woocommerce: WooCommerceService, order: Dict[str, Any], quantities: Dict[int, int]) -> List[CartItem]:
    items = []
    for line in order.get("line_items") or []:
        if not isinstance(line, dict) or not line.get("product_id"):
            continue
        product_id = line["product_id"]
        quantity = quantities.get(product_id, line.get("quantity") or 0)
        if quantity <= 0:
            continue
        try:
            product = await woocommerce.get_product(product_id)
        except (WooCommerceError, httpx.HTTPError) as e:
            logger.warning(f"Prodotto {product_id} non disponibile per il riordino: {e}")
            product = {}
        images = [image for image in product.get("images") or [] if isinstance(image, dict) and image.get("src")]
        try:
            price = max(float(line.get("price") or 0), 0.0)
        except (TypeError, ValueError):
            price = 0.0
        items.append(CartItem(
            id=product_id,
            name=line.get("name") or product.get("name") or f"Prodotto {product_id}",
            price=price,
            image=images[0]["src"] if images else "/placeholder.svg",
            quantity=quantity,
            category=get_cart_category(product),
        ))
    return items

def zone_payload(zone) -> Dict[str, Any]:
    return zone.model_dump(by_alias=True)

# ============================================================================
# APPLICATION
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    zones = get_zone_store()
    woocommerce = get_woocommerce_service()
    logger.info("Imperatore Bevande backend starting up...")
    logger.info(f"Delivery zones loaded: {len(zones.get_all_zones())}")
    logger.info(f"WooCommerce: {'CONFIGURED' if woocommerce.configured else 'NOT CONFIGURED'}")
    logger.info("Security features: Rate limiting, Input sanitization, Admin bearer auth")
    yield
    logger.info("Imperatore Bevande backend shutting down...")

app = FastAPI(
    title="Imperatore Bevande API",
    version=VERSION,
    description="Beverage delivery storefront backend for Bari and province",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    lifespan=lifespan,
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# ============================================================================
# ERROR HANDLERS
# ============================================================================

def error_response(status_code: int, message: Any, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    error = {
        "code": f"HTTP_{status_code}",
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    if details:
        error["details"] = details
    return JSONResponse(status_code=status_code, content={"error": error})

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Custom HTTP exception handler"""
    return error_response(exc.status_code, exc.detail)

@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    return error_response(exc.status_code, exc.message, exc.details)

@app.exception_handler(ZoneNotFound)
async def zone_not_found_handler(request: Request, exc: ZoneNotFound):
    return await http_exception_handler(request, HTTPException(status_code=404, detail=str(exc)))

@app.exception_handler(InvalidPolygon)
async def invalid_polygon_handler(request: Request, exc: InvalidPolygon):
    return await http_exception_handler(request, HTTPException(status_code=400, detail=str(exc)))

@app.exception_handler(CalendarError)
async def calendar_error_handler(request: Request, exc: CalendarError):
    return await http_exception_handler(request, HTTPException(status_code=502, detail=str(exc)))

@app.exception_handler(WooCommerceNotConfigured)
async def woocommerce_not_configured_handler(request: Request, exc: WooCommerceNotConfigured):
    return await http_exception_handler(request, HTTPException(status_code=503, detail=str(exc)))

@app.exception_handler(WooCommerceError)
async def woocommerce_error_handler(request: Request, exc: WooCommerceError):
    # Missing records and rejected input (e-mail already registered) pass through
    status_code = exc.status_code if exc.status_code in (400, 404) else 502
    return await http_exception_handler(request, HTTPException(status_code=status_code, detail=str(exc)))

@app.exception_handler(httpx.HTTPError)
async def upstream_error_handler(request: Request, exc: httpx.HTTPError):
    logger.error(f"Errore di rete verso servizio esterno: {exc}")
    return await http_exception_handler(request, HTTPException(status_code=502, detail="Servizio esterno non raggiungibile"))

@app.exception_handler(WhatsAppError)
async def whatsapp_error_handler(request: Request, exc: WhatsAppError):
    return await http_exception_handler(request, HTTPException(status_code=exc.status_code, detail=str(exc)))

@app.exception_handler(TechnicalSheetError)
async def technical_sheet_error_handler(request: Request, exc: TechnicalSheetError):
    return await http_exception_handler(request, HTTPException(status_code=exc.status_code, detail=str(exc)))

# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "name": "Imperatore Bevande API",
        "version": VERSION,
        "language": "Italian",
        "status": "operational",
        "documentation": "/api/docs"
    }

@app.get("/health")
async def health_check(
    zones: ZoneStore = Depends(get_zone_store),
    woocommerce: WooCommerceService = Depends(get_woocommerce_service),
):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "zones_loaded": len(zones.get_all_zones()),
        "woocommerce_configured": woocommerce.configured,
    }

# Delivery zones
@app.get("/api/zones")
async def list_zones(zones: ZoneStore = Depends(get_zone_store)):
    return [zone_payload(z) for z in zones.get_all_zones()]

@app.get("/api/zones/time-slots")
async def list_time_slots():
    return {"time_slots": ALL_TIME_SLOTS}

@app.get("/api/zones/{zone_id}")
async def get_zone(zone_id: str, zones: ZoneStore = Depends(get_zone_store)):
    zone = zones.get_zone_by_id(zone_id)
    if not zone:
        raise ZoneNotFound(zone_id)
    return zone_payload(zone)

@app.get("/api/zones/{zone_id}/time-slots")
async def get_zone_time_slots(zone_id: str, zones: ZoneStore = Depends(get_zone_store)):
    if not zones.get_zone_by_id(zone_id):
        raise ZoneNotFound(zone_id)
    return {
        "zone_id": zone_id,
        "available": zones.get_available_time_slots(zone_id),
        "recommended": zones.get_recommended_time_slots(zone_id),
        "excluded": zones.get_excluded_time_slots(zone_id),
    }

@app.post("/api/zones/lookup")
async def lookup_zone(address: ZoneAddress, zones: ZoneStore = Depends(get_zone_store)):
    """Zone for a checkout address"""
    zone = zones.determine_zone_from_address(address)
    return {"found": zone is not None, "zone": zone_payload(zone) if zone else None}

@app.post("/api/zones/check")
async def check_delivery_coverage(
    request: ZoneCheckRequest,
    zones: ZoneStore = Depends(get_zone_store),
    geocoding: GeocodingService = Depends(get_geocoding_service),
):
    """Is an address or position inside a delivery zone"""
    if request.lat is not None and request.lng is not None:
        position = LatLng(lat=request.lat, lng=request.lng)
        formatted = None
    elif request.address and request.address.strip():
        located = await geocoding.locate(sanitize_input(request.address, max_length=300))
        if located is None:
            return {"covered": False, "message": NOT_COVERED_MESSAGE}
        position = LatLng(lat=located.lat, lng=located.lng)
        formatted = located.formatted_address
    else:
        raise HTTPException(status_code=400, detail="Inserisci un indirizzo o delle coordinate")

    zone = zones.determine_zone_from_coordinates(position.lat, position.lng)
    if zone is None:
        return {"covered": False, "message": NOT_COVERED_MESSAGE, "coordinates": position.model_dump()}
    return {
        "covered": True,
        "zone": zone_payload(zone),
        "coordinates": position.model_dump(),
        "formatted_address": formatted,
    }

@app.post("/api/geocode")
async def geocode(query: AddressQuery, geocoding: GeocodingService = Depends(get_geocoding_service)):
    result = await geocoding.geocode_address(query)
    if result is None:
        raise HTTPException(status_code=404, detail="Indirizzo non trovato")
    return result

# Delivery calendar
@app.get("/api/delivery-calendar")
async def get_delivery_calendar(calendar: DeliveryCalendarService = Depends(get_calendar_service)):
    return await calendar.overview()

@app.get("/api/delivery-calendar/{target}")
async def get_delivery_slots(
    target: date,
    zone_id: Optional[str] = None,
    calendar: DeliveryCalendarService = Depends(get_calendar_service),
):
    return await calendar.slots(target, zone_id=zone_id)

# Catalog
@app.get("/api/products")
async def get_products(
    page: int = 1,
    per_page: int = Query(20, ge=1, le=100),
    category: Optional[int] = None,
    search: Optional[str] = None,
    orderby: Optional[str] = None,
    order: Optional[str] = None,
    on_sale: Optional[bool] = None,
    featured: Optional[bool] = None,
    woocommerce: WooCommerceService = Depends(get_woocommerce_service),
):
    """Published products, filtered like the WooCommerce catalog"""
    products = await woocommerce.get_products(
        page=page, per_page=per_page, category=category, search=search,
        orderby=orderby, order=order, on_sale=on_sale, featured=featured,
    )
    return [app_product(p) for p in products]

@app.get("/api/products/sale")
async def get_sale_products(woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return [app_product(p) for p in await woocommerce.get_sale_products()]

@app.get("/api/products/featured")
async def get_featured_products(woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return [app_product(p) for p in await woocommerce.get_featured_products()]

@app.get("/api/products/search")
async def search_products(q: str = "", woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return [app_product(p) for p in await woocommerce.search_products(q.strip())]

@app.get("/api/products/{product_id}")
async def get_product(product_id: int, woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return app_product(await woocommerce.get_product(product_id))

@app.get("/api/categories")
async def get_categories(woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return await woocommerce.get_categories()

# Cart
@app.get("/api/cart", response_model=Cart)
async def get_cart(session_id: Optional[str] = Depends(session_id_header), carts: CartStore = Depends(get_cart_store)):
    return carts.peek(session_id)

@app.post("/api/cart/items", response_model=Cart)
async def add_to_cart(
    item: AddCartItem,
    session_id: Optional[str] = Depends(session_id_header),
    carts: CartStore = Depends(get_cart_store),
):
    return carts.add_item(new_session_id(session_id), item)

@app.put("/api/cart/items/{item_id}", response_model=Cart)
async def update_cart_item(
    item_id: int,
    update: QuantityUpdate,
    session_id: Optional[str] = Depends(session_id_header),
    carts: CartStore = Depends(get_cart_store),
):
    return carts.update_quantity(session_id, item_id, update.quantity)

@app.delete("/api/cart/items/{item_id}", response_model=Cart)
async def remove_from_cart(
    item_id: int,
    session_id: Optional[str] = Depends(session_id_header),
    carts: CartStore = Depends(get_cart_store),
):
    return carts.remove_item(session_id, item_id)

@app.post("/api/cart/clear", response_model=Cart)
async def clear_cart(session_id: Optional[str] = Depends(session_id_header), carts: CartStore = Depends(get_cart_store)):
    return carts.clear(session_id)

# Stripe
payment_limit = Depends(rate_limited("payments", MAX_PAYMENT_REQUESTS_PER_MINUTE))

@app.post("/api/create-payment-intent", dependencies=[payment_limit])
async def create_payment_intent(request: PaymentIntentRequest, stripe_service: StripeService = Depends(get_stripe_service)):
    return await run_in_threadpool(
        stripe_service.create_payment_intent, request.amount, request.currency, request.metadata
    )

@app.post("/api/create-payment-intent-with-saved-method", dependencies=[payment_limit])
async def create_payment_intent_with_saved_method(
    request: SavedMethodPaymentRequest,
    origin: Optional[str] = Header(None),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    return await run_in_threadpool(
        stripe_service.create_payment_intent_with_saved_method,
        request.amount,
        request.payment_method_id,
        request.customer_id,
        request.currency,
        request.billing_details,
        request.confirm,
        origin,
    )

@app.post("/api/confirm-payment", dependencies=[payment_limit])
async def confirm_payment(request: ConfirmPaymentRequest, stripe_service: StripeService = Depends(get_stripe_service)):
    return await run_in_threadpool(stripe_service.confirm_payment, request.payment_intent_id)

@app.post("/api/stripe/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    stripe_service: StripeService = Depends(get_stripe_service),
):
    payload = await request.body()
    return stripe_service.handle_webhook(payload, stripe_signature)

# PayPal
@app.post("/api/paypal/orders", status_code=201, dependencies=[payment_limit])
async def create_paypal_order(
    request: PayPalOrderRequest,
    origin: Optional[str] = Header(None),
    paypal: PayPalService = Depends(get_paypal_service),
):
    return await paypal.create_order(request.cart, origin)

@app.post("/api/paypal/orders/{order_id}/capture", dependencies=[payment_limit])
async def capture_paypal_order(order_id: str, paypal: PayPalService = Depends(get_paypal_service)):
    return await paypal.capture_order(order_id)

@app.post("/api/paypal/capture", dependencies=[payment_limit])
async def capture_paypal_order_from_body(
    request: Optional[PayPalCaptureRequest] = None,
    orderID: Optional[str] = None,
    paypal: PayPalService = Depends(get_paypal_service),
):
    """Capture with the order id in the query string or the body"""
    return await paypal.capture_order(orderID or (request.order_id if request else None))

# Satispay & orders
@app.post("/api/satispay/payments", dependencies=[payment_limit])
async def satispay_payment(request: SatispayRequest):
    payment = create_satispay_payment(request.amount, request.phone_number, request.currency)
    payment["display_phone"] = format_satispay_phone(request.phone_number)
    return payment

@app.post("/api/orders", status_code=201, dependencies=[payment_limit])
async def place_order(request: PlaceOrderRequest, orders: OrderService = Depends(get_order_service)):
    order = await orders.place_order(request.order, request.payment_method, request.gateway_title)
    return {"success": True, "order": order, "payment": {"method": request.payment_method, "order_id": order.get("id")}}

@app.get("/api/orders/{order_id}")
async def get_order(order_id: int, woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return await woocommerce.get_order(order_id)

# Customers
@app.post("/api/auth/login")
async def login(request: LoginRequest, woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    """Customer lookup by e-mail or username"""
    identifier = request.username.strip()
    if "@" in identifier:
        customers = await woocommerce.get_customer_by_email(identifier)
    else:
        customers = await woocommerce.get_customer_by_username(identifier)
    if not customers:
        raise HTTPException(status_code=401, detail="Credenziali non valide")

    customer = customers[0]
    logger.info(f"Login cliente {customer.get('id')}")
    return public_customer(customer)

@app.post("/api/auth/register", status_code=201)
async def register(request: RegisterRequest, woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    """Create the WooCommerce customer, then log in by e-mail"""
    problem = request.validation_error()
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    created = await woocommerce.create_customer(request.to_customer())
    customers = await woocommerce.get_customer_by_email(created.get("email") or request.email.strip())
    return public_customer(customers[0] if customers else created)

@app.put("/api/customers/{customer_id}")
async def update_customer(
    customer_id: int,
    update: CustomerUpdate,
    woocommerce: WooCommerceService = Depends(get_woocommerce_service),
):
    changes = update.model_dump(exclude_none=True)
    if not changes:
        raise HTTPException(status_code=400, detail="Nessun dato da aggiornare")
    for key in ("first_name", "last_name", "email"):
        if key in changes:
            changes[key] = sanitize_input(changes[key], 200)
    for key in ("billing", "shipping"):
        if key in changes:
            changes[key] = {field: sanitize_input(value, 200) for field, value in changes[key].items()}

    updated = await woocommerce.update_customer(customer_id, changes)
    logger.info(f"Profilo cliente {customer_id} aggiornato: {', '.join(sorted(changes))}")
    return public_customer(updated)

@app.get("/api/customers/{customer_id}/orders")
async def get_customer_orders(customer_id: int, woocommerce: WooCommerceService = Depends(get_woocommerce_service)):
    return await woocommerce.get_orders(customer_id)

@app.post("/api/customers/{customer_id}/reorder", response_model=Cart)
async def reorder(
    customer_id: int,
    request: Optional[ReorderRequest] = None,
    session_id: Optional[str] = Depends(session_id_header),
    woocommerce: WooCommerceService = Depends(get_woocommerce_service),
    carts: CartStore = Depends(get_cart_store),
):
    """Put the lines of a past order (the latest by default) back in the cart"""
    request = request or ReorderRequest()
    if request.order_id is not None:
        order = await woocommerce.get_order(request.order_id)
        if order.get("customer_id") != customer_id:
            raise HTTPException(status_code=404, detail="Ordine non trovato")
    else:
        orders = await woocommerce.get_orders(customer_id)
        if not orders:
            raise HTTPException(status_code=404, detail="Nessun ordine precedente trovato")
        order = orders[0]

    items = await reorder_items(woocommerce, order, request.quantities)
    if not items:
        raise HTTPException(status_code=400, detail="Nessun prodotto selezionato")
    logger.info(f"Riordino dell'ordine {order.get('id')} per il cliente {customer_id}: {len(items)} prodotti")
    return carts.add_items(new_session_id(session_id), items)

# Payment configuration
@app.get("/api/payment-config")
async def get_payment_config(config: ConfigService = Depends(get_config_service)):
    return config.public_config()

# Contact & AI
@app.post("/api/send-whatsapp", dependencies=[Depends(rate_limited("whatsapp", MAX_CONTACT_REQUESTS_PER_MINUTE))])
async def send_whatsapp(request: ContactRequest, whatsapp: WhatsAppService = Depends(get_whatsapp_service)):
    form = ContactForm(name=request.name, subject=request.subject, message=request.message)
    return await whatsapp.send(form, to=request.to)

@app.post("/api/generate-technical-sheet", dependencies=[Depends(rate_limited("ai", MAX_AI_REQUESTS_PER_MINUTE))])
async def generate_technical_sheet(
    request: TechnicalSheetRequest,
    generator: TechnicalSheetService = Depends(get_technical_sheet_service),
):
    sheet = await generator.generate(request.product_name, request.product_description, request.product_category)
    return {"success": True, "data": sheet}

# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/api/admin/login")
async def admin_login(request: AdminLogin):
    if not secrets.compare_digest(request.password, ADMIN_PASSWORD):
        logger.warning("Tentativo di accesso admin fallito")
        raise HTTPException(status_code=401, detail="Password non corretta")
    return {"authenticated": True, "token": ADMIN_PASSWORD}

@app.post("/api/admin/zones", status_code=201, dependencies=[Depends(require_admin)])
async def create_zone(polygon: DrawnPolygon, zones: ZoneStore = Depends(get_zone_store)):
    return zone_payload(zones.create_zone_from_drawn_polygon(polygon.points))

@app.put("/api/admin/zones/{zone_id}", dependencies=[Depends(require_admin)])
async def update_zone(zone_id: str, update: ZoneUpdate, zones: ZoneStore = Depends(get_zone_store)):
    return zone_payload(zones.update_zone(zone_id, update.model_dump(exclude_none=True)))

@app.put("/api/admin/zones/{zone_id}/polygon", dependencies=[Depends(require_admin)])
async def update_zone_polygon(zone_id: str, polygon: DrawnPolygon, zones: ZoneStore = Depends(get_zone_store)):
    return zone_payload(zones.update_zone_polygon(zone_id, polygon.points))

@app.put("/api/admin/zones/{zone_id}/time-slots", dependencies=[Depends(require_admin)])
async def toggle_zone_time_slot(zone_id: str, toggle: TimeSlotToggle, zones: ZoneStore = Depends(get_zone_store)):
    if toggle.slot not in ALL_TIME_SLOTS:
        raise HTTPException(status_code=400, detail=f"Fascia oraria non valida: {toggle.slot}")
    return zone_payload(zones.set_time_slot_enabled(zone_id, toggle.slot, toggle.enabled))

@app.delete("/api/admin/zones/{zone_id}", dependencies=[Depends(require_admin)])
async def delete_zone(zone_id: str, zones: ZoneStore = Depends(get_zone_store)):
    zones.delete_zone(zone_id)
    return {"success": True, "message": f"Zona {zone_id} eliminata"}

@app.get("/api/admin/zones/export", dependencies=[Depends(require_admin)])
async def export_delivery_zones(zones: ZoneStore = Depends(get_zone_store)):
    return Response(
        content=export_zones(zones.get_all_zones()),
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="deliveryZones.json"'},
    )

@app.post("/api/admin/zones/reload", dependencies=[Depends(require_admin)])
async def reload_zones(zones: ZoneStore = Depends(get_zone_store)):
    zones.reload()
    return {"success": True, "zones": len(zones.get_all_zones())}

@app.get("/api/admin/payment-config", dependencies=[Depends(require_admin)])
async def get_full_payment_config(config: ConfigService = Depends(get_config_service)):
    return config.get_config()

@app.put("/api/admin/payment-config", dependencies=[Depends(require_admin)])
async def update_payment_config(changes: Dict[str, Dict[str, Any]], config: ConfigService = Depends(get_config_service)):
    try:
        return config.update_config(changes)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

@app.post("/api/admin/payment-config/reset", dependencies=[Depends(require_admin)])
async def reset_payment_config(config: ConfigService = Depends(get_config_service)):
    return config.reset_to_defaults()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
