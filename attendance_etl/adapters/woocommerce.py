# attendance_etl/adapters/woocommerce.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import BaseModel, Field

from attendance_etl.adapters._http import send_with_retry
from attendance_etl.core.config import Settings
from attendance_etl.core.errors import AttendanceEtlError
from attendance_etl.core.models import WooOrder, WooProduct
from attendance_etl.core.ratelimit import FixedDelayRateLimiter

log = logging.getLogger(__name__)

API_PREFIX = "/wp-json/wc/v3"
ORDER_STATUSES = "completed,processing,on-hold"
PER_PAGE = 100
MAX_PAGES = 50

# ----------------------------- Types -----------------------------------

class ProductOrders(BaseModel):
    product_id: str
    variation_ids: List[str] = Field(default_factory=list)
    orders: List[WooOrder] = Field(default_factory=list)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.replace(microsecond=0).isoformat() if dt else None

# --------------------------- Fetch layer --------------------------------

class WooCommerceClient:
    """
    Thin async client over the WooCommerce REST v3 API.
    Every request goes through the injected rate limiter and is retried on
    transport errors and 429/5xx.
    """

    def __init__(self, base_url: str, consumer_key: str, consumer_secret: str, *,
                 client: Optional[httpx.AsyncClient] = None, limiter=None,
                 attempts: int = 3, wait=None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/") + API_PREFIX
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.auth = httpx.BasicAuth(consumer_key, consumer_secret)
        self.limiter = limiter or FixedDelayRateLimiter()
        self.attempts = attempts
        self.wait = wait

    @classmethod
    def from_settings(cls, s: Settings, **kw: Any) -> "WooCommerceClient":
        s.require("woocommerce_url", "woocommerce_consumer_key", "woocommerce_consumer_secret")
        kw.setdefault("limiter", FixedDelayRateLimiter(s.request_delay_ms))
        kw.setdefault("attempts", s.max_retries)
        return cls(s.woocommerce_url, s.woocommerce_consumer_key, s.woocommerce_consumer_secret, **kw)

    async def __aenter__(self) -> "WooCommerceClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        r = await send_with_retry(
            self.client, "GET", f"{self.base_url}/{path.lstrip('/')}",
            limiter=self.limiter, attempts=self.attempts, wait=self.wait,
            params={k: v for k, v in (params or {}).items() if v is not None}, auth=self.auth,
        )
        r.raise_for_status()
        return r.json()

    async def _paginate(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            batch = await self._get(path, {**params, "per_page": PER_PAGE, "page": page})
            out.extend(batch)
            log.debug("WooCommerce %s: page %s, cumul %s", path, page, len(out))
            if len(batch) < PER_PAGE:
                return out
        log.warning("WooCommerce %s: stopped at the %s page limit", path, MAX_PAGES)
        return out

    async def list_products(self) -> List[WooProduct]:
        raw = await self._paginate("products", {})
        log.info("WooCommerce: %s products", len(raw))
        return [WooProduct.model_validate(p) for p in raw]

    async def get_product(self, product_id: str) -> WooProduct:
        return WooProduct.model_validate(await self._get(f"products/{product_id}"))

    async def get_product_name(self, product_id: str) -> Optional[str]:
        """Current product name, or None when the lookup fails for any reason."""
        try:
            return (await self.get_product(product_id)).name or None
        except (AttendanceEtlError, httpx.HTTPError, ValueError) as e:
            log.warning("could not fetch name of product %s: %s", product_id, e)
            return None

    async def get_product_names(self, product_ids: Iterable[str]) -> Dict[str, Optional[str]]:
        return {pid: await self.get_product_name(pid) for pid in product_ids}

    async def get_orders_for_product(self, product_id: str, after: Optional[datetime] = None,
                                     before: Optional[datetime] = None) -> ProductOrders:
        """
        Orders containing ``product_id``. Variable products cannot be filtered
        server-side, so their orders are matched on variation id here.
        """
        product = await self.get_product(product_id)
        params = {"status": ORDER_STATUSES, "after": _iso(after), "before": _iso(before)}
        if product.is_variable:
            variations = {int(v) for v in product.variations}
            raw = await self._paginate("orders", params)
            orders = [
                WooOrder.model_validate(o) for o in raw
                if any(
                    li.get("product_id") == product.id or li.get("variation_id") in variations
                    for li in o.get("line_items") or []
                )
            ]
        else:
            variations = set()
            raw = await self._paginate("orders", {**params, "product": product_id})
            orders = [WooOrder.model_validate(o) for o in raw]
        log.info("WooCommerce: %s orders for product %s", len(orders), product_id,
                 extra={"product_id": product_id, "variable": product.is_variable})
        return ProductOrders(product_id=str(product_id), variation_ids=sorted(str(v) for v in variations),
                             orders=orders)

    async def get_orders_for_products(self, product_ids: Iterable[str], after: Optional[datetime] = None,
                                      before: Optional[datetime] = None) -> ProductOrders:
        """Orders across every product id of a (merged) event, each order once."""
        ids = list(product_ids)
        seen = set()
        out = ProductOrders(product_id=ids[0] if ids else "")
        for pid in ids:
            po = await self.get_orders_for_product(pid, after, before)
            out.variation_ids.extend(v for v in po.variation_ids if v not in out.variation_ids)
            for o in po.orders:
                if o.id not in seen:
                    seen.add(o.id)
                    out.orders.append(o)
        return out
