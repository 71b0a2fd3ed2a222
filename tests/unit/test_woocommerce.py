"""Tests for the WooCommerce REST client against a mocked transport."""

from typing import Callable, List

import httpx
import pytest
from tenacity import wait_none

from attendance_etl.adapters._http import send_with_retry
from attendance_etl.adapters.woocommerce import PER_PAGE, WooCommerceClient
from attendance_etl.core.errors import TransientFetchError
from attendance_etl.core.ratelimit import NoopRateLimiter


def make_client(handler: Callable[[httpx.Request], httpx.Response], limiter=None) -> WooCommerceClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return WooCommerceClient("https://shop.example.org/", "ck_test", "cs_test", client=http,
                             limiter=limiter or NoopRateLimiter(), attempts=3, wait=wait_none())


def order(oid: int, product_id: int, variation_id: int = 0) -> dict:
    return {"id": oid, "line_items": [{"id": oid * 10, "product_id": product_id, "variation_id": variation_id}]}


class TestRetry:
    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        calls: List[int] = []

        def handler(request):
            calls.append(1)
            return httpx.Response(503 if len(calls) < 3 else 200, json={"id": 1, "name": "Talk"})

        limiter = NoopRateLimiter()
        async with make_client(handler, limiter) as woo:
            product = await woo.get_product("1")

        assert product.name == "Talk"
        assert len(calls) == 3
        assert limiter.calls == 3

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried_then_give_up(self):
        def handler(request):
            raise httpx.ConnectError("connection reset", request=request)

        async with make_client(handler) as woo:
            with pytest.raises(TransientFetchError):
                await woo.get_product("1")

    @pytest.mark.asyncio
    async def test_rate_limited_exhaustion(self):
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(429))) as http:
            with pytest.raises(TransientFetchError):
                await send_with_retry(http, "GET", "https://x.example.org/", attempts=2, wait=wait_none())

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        calls: List[int] = []

        def handler(request):
            calls.append(1)
            return httpx.Response(404, json={"code": "woocommerce_rest_product_invalid_id"})

        async with make_client(handler) as woo:
            with pytest.raises(httpx.HTTPStatusError):
                await woo.get_product("999")
            assert await woo.get_product_name("999") is None

        assert len(calls) == 2


class TestProducts:
    @pytest.mark.asyncio
    async def test_list_products_paginates_with_auth(self):
        pages = []

        def handler(request):
            assert request.url.path == "/wp-json/wc/v3/products"
            assert request.headers["authorization"].startswith("Basic ")
            page = int(request.url.params["page"])
            pages.append(page)
            size = PER_PAGE if page == 1 else 5
            start = (page - 1) * PER_PAGE
            return httpx.Response(200, json=[{"id": start + i, "name": f"P{start + i}"} for i in range(size)])

        async with make_client(handler) as woo:
            products = await woo.list_products()

        assert len(products) == PER_PAGE + 5
        assert pages == [1, 2]

    @pytest.mark.asyncio
    async def test_product_names(self):
        def handler(request):
            pid = request.url.path.rsplit("/", 1)[-1]
            if pid == "2":
                return httpx.Response(404)
            return httpx.Response(200, json={"id": int(pid), "name": f"Talk {pid}"})

        async with make_client(handler) as woo:
            names = await woo.get_product_names(["1", "2"])

        assert names == {"1": "Talk 1", "2": None}


class TestOrders:
    @pytest.mark.asyncio
    async def test_simple_product_filters_server_side(self):
        seen = []

        def handler(request):
            if request.url.path.endswith("/products/100"):
                return httpx.Response(200, json={"id": 100, "name": "Talk", "type": "simple"})
            seen.append(dict(request.url.params))
            return httpx.Response(200, json=[order(1, 100), order(2, 100)])

        async with make_client(handler) as woo:
            res = await woo.get_orders_for_product("100")

        assert [o.id for o in res.orders] == [1, 2]
        assert seen[0]["product"] == "100"
        assert seen[0]["status"] == "completed,processing,on-hold"
        assert "after" not in seen[0]

    @pytest.mark.asyncio
    async def test_variable_product_filters_client_side(self):
        def handler(request):
            if request.url.path.endswith("/products/300"):
                return httpx.Response(200, json={"id": 300, "name": "Talk", "type": "variable", "variations": [301]})
            assert "product" not in request.url.params
            return httpx.Response(200, json=[order(1, 300, 301), order(2, 999), order(3, 555, 301)])

        async with make_client(handler) as woo:
            res = await woo.get_orders_for_product("300")

        assert [o.id for o in res.orders] == [1, 3]
        assert res.variation_ids == ["301"]

    @pytest.mark.asyncio
    async def test_orders_for_several_products_are_deduplicated(self):
        def handler(request):
            path = request.url.path
            if "/products/" in path:
                pid = int(path.rsplit("/", 1)[-1])
                return httpx.Response(200, json={"id": pid, "name": "Talk"})
            pid = int(request.url.params["product"])
            return httpx.Response(200, json=[order(7, pid), order(pid, pid)])

        async with make_client(handler) as woo:
            res = await woo.get_orders_for_products(["100", "101"])

        assert sorted(o.id for o in res.orders) == [7, 100, 101]
