"""Tests for the WooCommerce client and product helpers."""

import base64
import json

import httpx
import pytest

from woocommerce_service import (
    TTLCache,
    WooCommerceError,
    WooCommerceNotConfigured,
    WooCommerceService,
    get_border_color,
    get_bottle_quantity,
    get_cart_category,
)

WOO_PRODUCT = {
    "id": 42,
    "name": "Peroni Nastro Azzurro",
    "slug": "peroni-nastro-azzurro",
    "permalink": "https://imperatorebevande.it/prodotto/peroni",
    "price": "18.90",
    "regular_price": "21.00",
    "sale_price": "18.90",
    "description": "<p>Cassa da 24 bottiglie da 33cl</p>",
    "short_description": "Birra lager italiana",
    "images": [{"src": "https://cdn.example/peroni.jpg"}],
    "categories": [{"id": 7, "name": "Birra"}],
    "attributes": [{"name": "Formato", "options": ["33cl", "66cl"]}],
    "average_rating": "4.50",
    "rating_count": 12,
    "stock_status": "instock",
}


class Recorder:
    """MockTransport handler that remembers every request."""

    def __init__(self, routes=None, status_code=200):
        self.requests = []
        self.routes = routes or {}
        self.status_code = status_code

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = self.routes.get(request.url.path, [])
        return httpx.Response(self.status_code, json=body)


def make_service(recorder):
    service = WooCommerceService(transport=httpx.MockTransport(recorder))
    service.init("https://shop.example/", "ck_test", "cs_test")
    return service


class TestRequests:
    async def test_calls_before_init_fail(self):
        service = WooCommerceService()
        with pytest.raises(WooCommerceNotConfigured, match="Chiama init\\(\\) prima"):
            await service.get_products()

    async def test_products_default_params_and_auth(self):
        recorder = Recorder({"/wp-json/wc/v3/products": [WOO_PRODUCT]})
        service = make_service(recorder)

        products = await service.get_products(category=7)

        assert products[0]["id"] == 42
        request = recorder.requests[0]
        assert request.url.params["per_page"] == "20"
        assert request.url.params["status"] == "publish"
        assert request.url.params["category"] == "7"
        expected = base64.b64encode(b"ck_test:cs_test").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    async def test_none_params_dropped_and_booleans_lowercase(self):
        recorder = Recorder({"/wp-json/wc/v3/products": []})
        service = make_service(recorder)

        await service.get_products(on_sale=True, search=None)

        params = recorder.requests[0].url.params
        assert params["on_sale"] == "true"
        assert "search" not in params

    async def test_results_are_cached(self):
        recorder = Recorder({"/wp-json/wc/v3/products/categories": [{"id": 1, "name": "Acqua"}]})
        service = make_service(recorder)

        await service.get_categories()
        await service.get_categories()

        assert len(recorder.requests) == 1
        assert recorder.requests[0].url.params["hide_empty"] == "true"
        assert recorder.requests[0].url.params["per_page"] == "100"

    async def test_short_search_skips_upstream(self):
        recorder = Recorder()
        service = make_service(recorder)

        assert await service.search_products("ac") == []
        assert recorder.requests == []

    async def test_search_passes_query(self):
        recorder = Recorder({"/wp-json/wc/v3/products": [WOO_PRODUCT]})
        service = make_service(recorder)

        await service.search_products("peroni")

        assert recorder.requests[0].url.params["search"] == "peroni"

    async def test_error_status(self):
        service = make_service(Recorder(status_code=401))
        with pytest.raises(WooCommerceError, match="Errore API WooCommerce: 401 Unauthorized") as exc_info:
            await service.get_order(5)
        assert exc_info.value.status_code == 401

    async def test_create_order_posts_json(self):
        recorder = Recorder({"/wp-json/wc/v3/orders": {"id": 900, "number": "900"}})
        service = make_service(recorder)

        created = await service.create_order({"payment_method": "cod", "line_items": [{"product_id": 42, "quantity": 2}]})

        assert created["id"] == 900
        request = recorder.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content)["payment_method"] == "cod"

    async def test_create_customer_posts_json(self):
        recorder = Recorder({"/wp-json/wc/v3/customers": {"id": 31, "email": "lucia@example.com"}})
        service = make_service(recorder)

        created = await service.create_customer({"email": "lucia@example.com", "password": "segreta"})

        assert created["id"] == 31
        request = recorder.requests[0]
        assert request.method == "POST"
        assert json.loads(request.content)["password"] == "segreta"

    async def test_update_customer_puts_changes(self):
        recorder = Recorder({"/wp-json/wc/v3/customers/31": {"id": 31, "first_name": "Lucia"}})
        service = make_service(recorder)

        await service.update_customer(31, {"shipping": {"city": "Capurso"}})

        request = recorder.requests[0]
        assert request.method == "PUT"
        assert request.url.path == "/wp-json/wc/v3/customers/31"
        assert json.loads(request.content) == {"shipping": {"city": "Capurso"}}

    async def test_username_lookup_filters_exact_match(self):
        customers = [{"id": 1, "username": "mario.rossi"}, {"id": 2, "username": "mario"}]
        service = make_service(Recorder({"/wp-json/wc/v3/customers": customers}))

        found = await service.get_customer_by_username("Mario")

        assert [c["id"] for c in found] == [2]

    async def test_orders_for_customer(self):
        recorder = Recorder({"/wp-json/wc/v3/orders": [{"id": 1}]})
        service = make_service(recorder)

        await service.get_orders(15)

        assert recorder.requests[0].url.params["customer"] == "15"

    async def test_delivery_calendar_path(self):
        recorder = Recorder({"/wp-json/custom/v1/delivery-calendar": {"data": []}})
        service = make_service(recorder)

        assert await service.get_delivery_calendar() == {"data": []}
        assert recorder.requests[0].url.path == "/wp-json/custom/v1/delivery-calendar"


class TestConvertToAppProduct:
    def test_full_product(self):
        product = WooCommerceService.convert_to_app_product(WOO_PRODUCT)
        assert product["price"] == 18.9
        assert product["original_price"] == 21.0
        assert product["image"] == "https://cdn.example/peroni.jpg"
        assert product["category"] == "Birra"
        assert product["description"] == "Birra lager italiana"
        assert product["features"] == ["Formato: 33cl, 66cl"]
        assert product["rating"] == 4.5
        assert product["reviews"] == 12
        assert product["in_stock"] is True

    def test_defaults(self):
        product = WooCommerceService.convert_to_app_product(
            {"id": 1, "name": "Acqua", "price": "0.50", "regular_price": "0.50", "sale_price": "", "stock_status": "outofstock"}
        )
        assert product["original_price"] is None
        assert product["image"] == "/placeholder.svg"
        assert product["category"] == "Generale"
        assert product["rating"] == 0.0
        assert product["in_stock"] is False


class TestProductHelpers:
    @pytest.mark.parametrize("category,color", [
        ("Acqua Minerale", "#1B5AAB"),
        ("Birra Artigianale", "#CFA100"),
        ("Coca Cola", "#558E28"),
        ("Bevande Analcoliche", "#558E28"),
        ("Vino Rosso", "#8500AF"),
        ("Liquori", "#E5E7EB"),
        (None, "#E5E7EB"),
    ])
    def test_border_color(self, category, color):
        assert get_border_color(category) == color

    @pytest.mark.parametrize("description,quantity", [
        ("Confezione da 6 bottiglie", 6),
        ("<p>Birra <strong>24 pz</strong></p>", 24),
        ("Acqua naturale 50cl x 24", 24),
        ("Pack da 12", 12),
        ("Vino rosso Primitivo", None),
        ("", None),
    ])
    def test_bottle_quantity(self, description, quantity):
        assert get_bottle_quantity(description) == quantity

    @pytest.mark.parametrize("categories,family", [
        ([{"slug": "acqua"}], "acqua"),
        ([{"slug": "birra-artigianale"}], "birra"),
        ([{"slug": "vino-rosso"}, {"slug": "acqua"}], "vino"),
        ([{"slug": "cocacola"}], "bevande"),
        ([{"slug": "altre-bevande"}], "bevande"),
        ([{"slug": "liquori"}], "altri"),
        ([], "altri"),
    ])
    def test_cart_category(self, categories, family):
        assert get_cart_category({"categories": categories}) == family


class TestTTLCache:
    def test_expired_entries_are_purged_on_write(self):
        cache = TTLCache()
        for query in ("peroni", "lete", "primitivo"):
            cache.set(("search", query), [], ttl=0)
        cache.set(("categories",), [{"id": 1}], ttl=600)

        assert len(cache) == 1
        assert cache.get(("categories",)) == [{"id": 1}]
        assert cache.get(("search", "peroni")) is None
