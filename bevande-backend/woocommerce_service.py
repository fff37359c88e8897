# woocommerce_service.py - WooCommerce REST client
# Catalog, customers, orders and the delivery calendar of imperatorebevande.it

import logging
import os
import re
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

logger = logging.getLogger("Imperatore.WooCommerce")

WOOCOMMERCE_URL = os.getenv("WOOCOMMERCE_URL", "")
WOOCOMMERCE_CONSUMER_KEY = os.getenv("WOOCOMMERCE_CONSUMER_KEY", "")
WOOCOMMERCE_CONSUMER_SECRET = os.getenv("WOOCOMMERCE_CONSUMER_SECRET", "")
DELIVERY_CALENDAR_PATH = os.getenv("DELIVERY_CALENDAR_PATH", "/wp-json/custom/v1/delivery-calendar")

NOT_CONFIGURED_MESSAGE = "WooCommerce non configurato. Chiama init() prima."

# Cache lifetimes in seconds
PRODUCTS_TTL = 5 * 60
CATEGORIES_TTL = 10 * 60
FEATURED_TTL = 10 * 60
SEARCH_TTL = 2 * 60

MIN_SEARCH_LENGTH = 3


class WooCommerceNotConfigured(Exception):
    def __init__(self):
        super().__init__(NOT_CONFIGURED_MESSAGE)


class WooCommerceError(Exception):
    def __init__(self, status_code: int, reason: str = ""):
        super().__init__(f"Errore API WooCommerce: {status_code} {reason}".strip())
        self.status_code = status_code


class TTLCache:
    """Tiny in-memory cache with per-entry expiry"""

    def __init__(self):
        self._entries: Dict[Tuple, Tuple[float, Any]] = {}

    def get(self, key: Tuple) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if time.monotonic() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: Tuple, value: Any, ttl: float) -> None:
        now = time.monotonic()
        self.purge(now)
        self._entries[key] = (now + ttl, value)

    def purge(self, now: Optional[float] = None) -> None:
        """Drop every expired entry"""
        now = time.monotonic() if now is None else now
        for key in [k for k, (expires_at, _) in self._entries.items() if now >= expires_at]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()


def _query_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class WooCommerceService:
    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 15.0):
        self.base_url: Optional[str] = None
        self.consumer_key = ""
        self.consumer_secret = ""
        self.transport = transport
        self.timeout = timeout
        self.cache = TTLCache()

    def init(self, base_url: str, consumer_key: str, consumer_secret: str) -> None:
        self.base_url = base_url.rstrip("/")
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.cache.clear()
        logger.info("WooCommerce configurato con successo")

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def _client(self) -> httpx.AsyncClient:
        if not self.configured:
            raise WooCommerceNotConfigured()
        return httpx.AsyncClient(
            auth=(self.consumer_key, self.consumer_secret),
            headers={"Content-Type": "application/json"},
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _request(self, method: str, url: str, params: Optional[Dict[str, Any]] = None,
                       json_body: Optional[Dict[str, Any]] = None) -> Any:
        query = {k: _query_value(v) for k, v in (params or {}).items() if v is not None}
        async with self._client() as client:
            try:
                response = await client.request(method, url, params=query, json=json_body)
            except httpx.HTTPError as e:
                logger.error(f"Errore nella richiesta WooCommerce: {e}")
                raise
        if response.is_error:
            logger.error(f"WooCommerce {method} {url} -> {response.status_code}")
            raise WooCommerceError(response.status_code, response.reason_phrase)
        return response.json()

    async def make_request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not self.configured:
            raise WooCommerceNotConfigured()
        return await self._request("GET", f"{self.base_url}/wp-json/wc/v3/{endpoint}", params=params)

    async def _cached(self, key: Tuple, ttl: float, endpoint: str, params: Dict[str, Any]) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        result = await self.make_request(endpoint, params)
        self.cache.set(key, result, ttl)
        return result

    # ------------------------------------------------------------------ catalog

    async def get_products(self, ttl: float = PRODUCTS_TTL, **params) -> List[Dict[str, Any]]:
        query = {"per_page": 20, "status": "publish", **params}
        key = ("products",) + tuple(sorted((k, _query_value(v)) for k, v in query.items() if v is not None))
        return await self._cached(key, ttl, "products", query)

    async def get_product(self, product_id: int) -> Dict[str, Any]:
        return await self._cached(("product", product_id), PRODUCTS_TTL, f"products/{product_id}", {})

    async def get_categories(self, **params) -> List[Dict[str, Any]]:
        query = {"per_page": 100, "hide_empty": True, **params}
        key = ("categories",) + tuple(sorted((k, _query_value(v)) for k, v in query.items() if v is not None))
        return await self._cached(key, CATEGORIES_TTL, "products/categories", query)

    async def search_products(self, query: str, **params) -> List[Dict[str, Any]]:
        if not query or len(query) < MIN_SEARCH_LENGTH:
            return []
        return await self.get_products(ttl=SEARCH_TTL, search=query, **params)

    async def get_sale_products(self, **params) -> List[Dict[str, Any]]:
        return await self.get_products(on_sale=True, **params)

    async def get_featured_products(self, **params) -> List[Dict[str, Any]]:
        return await self.get_products(ttl=FEATURED_TTL, featured=True, **params)

    # --------------------------------------------------------- customers/orders

    async def get_customer_by_email(self, email: str) -> List[Dict[str, Any]]:
        return await self.make_request("customers", {"email": email})

    async def get_customer_by_username(self, username: str) -> List[Dict[str, Any]]:
        customers = await self.make_request("customers", {"search": username, "role": "all"})
        return [c for c in customers if c.get("username", "").lower() == username.lower()]

    async def create_customer(self, customer: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise WooCommerceNotConfigured()
        created = await self._request("POST", f"{self.base_url}/wp-json/wc/v3/customers", json_body=customer)
        logger.info(f"Cliente WooCommerce registrato: {created.get('id')}")
        return created

    async def update_customer(self, customer_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise WooCommerceNotConfigured()
        return await self._request("PUT", f"{self.base_url}/wp-json/wc/v3/customers/{customer_id}", json_body=changes)

    async def get_orders(self, customer_id: int, **params) -> List[Dict[str, Any]]:
        return await self.make_request("orders", {"customer": customer_id, "per_page": 20, **params})

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        return await self.make_request(f"orders/{order_id}")

    async def create_order(self, order: Dict[str, Any]) -> Dict[str, Any]:
        if not self.configured:
            raise WooCommerceNotConfigured()
        created = await self._request("POST", f"{self.base_url}/wp-json/wc/v3/orders", json_body=order)
        logger.info(f"Ordine WooCommerce creato: #{created.get('number', created.get('id'))}")
        return created

    async def get_delivery_calendar(self) -> Any:
        if not self.configured:
            raise WooCommerceNotConfigured()
        return await self._request("GET", f"{self.base_url}{DELIVERY_CALENDAR_PATH}")

    # --------------------------------------------------------------- conversion

    @staticmethod
    def convert_to_app_product(woo: Dict[str, Any]) -> Dict[str, Any]:
        images = woo.get("images") or []
        categories = woo.get("categories") or []
        return {
            "id": woo.get("id"),
            "name": woo.get("name", ""),
            "price": _to_float(woo.get("price")),
            "original_price": _to_float(woo.get("regular_price")) if woo.get("sale_price") else None,
            "image": images[0].get("src") if images else "/placeholder.svg",
            "category": categories[0].get("name") if categories else "Generale",
            "description": woo.get("short_description") or woo.get("description") or "",
            "features": [
                f"{attr.get('name')}: {', '.join(attr.get('options') or [])}"
                for attr in woo.get("attributes") or []
            ],
            "rating": _to_float(woo.get("average_rating")),
            "reviews": woo.get("rating_count") or 0,
            "in_stock": woo.get("stock_status") == "instock",
            "slug": woo.get("slug"),
            "permalink": woo.get("permalink"),
        }


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0

# ============================================================================
# PRODUCT HELPERS
# ============================================================================

DEFAULT_BORDER_COLOR = "#E5E7EB"


def get_border_color(category: Optional[str]) -> str:
    """Card border color by beverage family"""
    if not category:
        return DEFAULT_BORDER_COLOR
    lower = category.lower()
    if "acqua" in lower:
        return "#1B5AAB"
    if "birra" in lower:
        return "#CFA100"
    if any(word in lower for word in ("bevande", "coca", "fanta", "schweppes")):
        return "#558E28"
    if "vino" in lower:
        return "#8500AF"
    return DEFAULT_BORDER_COLOR


BEVANDE_SLUGS = ("cocacola", "fanta", "sanbenedetto", "sanpellegrino", "schweppes")


def get_cart_category(product: Dict[str, Any]) -> str:
    """Cart family from the first WooCommerce category slug"""
    categories = product.get("categories") or []
    if not categories or not isinstance(categories[0], dict):
        return "altri"
    slug = str(categories[0].get("slug") or "").lower()
    for family in ("acqua", "birra", "vino", "bevande"):
        if slug == family or f"{family}-" in slug:
            return family
    if slug in BEVANDE_SLUGS or "altre-bevande" in slug:
        return "bevande"
    return "altri"


BOTTLE_PATTERNS = [
    re.compile(r"(?:x|×)(\d+)\s*(?:bott|bot|bottiglie?)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:x|×)\s*(?:bott|bot|bottiglie?)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:bott|bot|bottiglie?)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:pz|pezzi?)", re.IGNORECASE),
    re.compile(r"(?:confezione|conf)\.?\s*(?:da\s*)?(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:cl|ml|lt|litri?)\s*(?:x|×)\s*(\d+)", re.IGNORECASE),
    re.compile(r"(?:pack|pacco)\s*(?:da\s*)?(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*pz", re.IGNORECASE),
    re.compile(r"(\d+)\s*bottiglie", re.IGNORECASE),
    re.compile(r"(\d+)\s*lattine", re.IGNORECASE),
    re.compile(r"(\d+)\s*x\s*(?:\d+)?(?:cl|ml|lt)?", re.IGNORECASE),  # "6x" o "6x33cl"
    re.compile(r"(\d+)\s*(?:unità|unit)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:l|litri?)\s*(?:x|×)\s*(\d+)", re.IGNORECASE),
    re.compile(r"(\d+)\s*(?:,\d+)?\s*(?:l|lt)\s*(?:x|×)\s*(\d+)", re.IGNORECASE),
    re.compile(r"(?:formato|formato\s+famiglia)\s*(\d+)", re.IGNORECASE),
    re.compile(r"(?:multipack|multi-pack)\s*(\d+)", re.IGNORECASE),
]


def get_bottle_quantity(description: Optional[str]) -> Optional[int]:
    """Pack size parsed from a product description"""
    if not description:
        return None
    clean = re.sub(r"<[^>]*>", "", description).strip()
    for pattern in BOTTLE_PATTERNS:
        match = pattern.search(clean)
        if not match:
            continue
        # "33cl x 6" keeps the count in the second group
        groups = [g for g in match.groups()]
        raw = groups[1] if len(groups) > 1 and groups[1] else groups[0]
        try:
            return int(raw)
        except (TypeError, ValueError):
            continue
    return None


# Singleton instance
woocommerce_instance: Optional[WooCommerceService] = None

def get_woocommerce_service() -> WooCommerceService:
    """Get or create the WooCommerce client, configured from the environment"""
    global woocommerce_instance
    if woocommerce_instance is None:
        woocommerce_instance = WooCommerceService()
        if WOOCOMMERCE_URL:
            woocommerce_instance.init(WOOCOMMERCE_URL, WOOCOMMERCE_CONSUMER_KEY, WOOCOMMERCE_CONSUMER_SECRET)
        else:
            logger.warning("WOOCOMMERCE_URL non impostato - catalogo non disponibile")
    return woocommerce_instance
