"""Read caches for cart and order listings.

Cart views are priced on read from the current catalog and cached per
customer. Writers invalidate the affected keys only after their write has
committed, so a reader never sees a cleared cart before the order that
cleared it exists.

A reader that missed takes a token from ``lookup`` before it loads, and
``put`` stores its view only if no invalidation touched the key since.
A view rendered from state that a concurrent writer replaced is dropped
instead of outliving the invalidation. Entries also expire after
``ttl_seconds``, and every catalog change drops all cart views.
"""

import threading
import time
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel

from marketplace.cart.cart import Cart
from marketplace.catalogue.port import CatalogPort, LineKind
from marketplace.errors import NotFoundError
from marketplace.pricing.calculator import compute_line_price, compute_order_totals

logger = structlog.get_logger(__name__)

CART_PREFIX = "cart:"


def cart_key(customer_ref) -> str:
    return f"{CART_PREFIX}{customer_ref}"


def orders_key(customer_ref) -> str:
    return f"orders:{customer_ref}"


class ViewCache:
    """Thread-safe key/value cache of rendered views."""

    def __init__(self, ttl_seconds: float = 300.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._views: dict[str, tuple[Any, float]] = {}
        self._generations: dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

    def _token(self, key: str) -> tuple[int, int]:
        return (self._epoch, self._generations.get(key, 0))

    def lookup(self, key: str) -> tuple[Any | None, tuple[int, int]]:
        """Return the cached view (or ``None``) and the token to pass to ``put``."""
        with self._lock:
            token = self._token(key)
            entry = self._views.get(key)
            if entry is None:
                return None, token
            view, stored_at = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                del self._views[key]
                return None, token
            return view, token

    def get(self, key: str) -> Any | None:
        return self.lookup(key)[0]

    def put(self, key: str, view: Any, token: tuple[int, int] | None = None) -> bool:
        """Store ``view``; with a token, only if the key was not invalidated since it was taken."""
        with self._lock:
            if token is not None and token != self._token(key):
                logger.debug("Dropped stale view", key=key)
                return False
            self._views[key] = (view, self._clock())
            return True

    def invalidate(self, *keys: str) -> None:
        with self._lock:
            for key in keys:
                self._generations[key] = self._generations.get(key, 0) + 1
                self._views.pop(key, None)

    def invalidate_prefix(self, prefix: str) -> None:
        """Drop every view under ``prefix`` and void all outstanding tokens."""
        with self._lock:
            self._epoch += 1
            for key in [key for key in self._views if key.startswith(prefix)]:
                del self._views[key]


class CartViewLine(BaseModel):
    line_id: str
    kind: LineKind
    ref: str
    variant_sku: str | None = None
    name: str
    quantity: int
    unit_price: int
    discount_percent: int
    line_subtotal: int
    line_discount: int
    line_total: int


class CartView(BaseModel):
    cart_id: str
    customer_ref: str
    lines: list[CartViewLine] = []
    unavailable_line_ids: list[str] = []
    item_count: int = 0
    subtotal_before_discount: int = 0
    item_discount_total: int = 0
    subtotal: int = 0


def build_cart_view(cart: Cart, catalog: CatalogPort) -> CartView:
    """Price every line against the current catalog.

    Lines whose product, course or variant no longer exists are reported in
    ``unavailable_line_ids`` instead of failing the whole view.
    """
    entries = catalog.fetch_entries(sorted({line.ref for line in cart.lines}))

    priced = []
    unavailable = []
    for line in cart.lines:
        entry = entries.get(line.ref)
        if entry is None:
            unavailable.append(str(line.id))
            continue
        try:
            priced.append(compute_line_price(line, entry))
        except NotFoundError:
            unavailable.append(str(line.id))

    if unavailable:
        logger.info("Cart has unavailable lines", cart_id=str(cart.id), lines=len(unavailable))

    totals = compute_order_totals(priced).totals
    return CartView(
        cart_id=str(cart.id),
        customer_ref=str(cart.customer_ref),
        lines=[
            CartViewLine(
                line_id=line.line_id,
                kind=line.kind,
                ref=line.ref,
                variant_sku=line.variant_sku,
                name=line.display_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                discount_percent=line.discount_percent,
                line_subtotal=line.line_subtotal,
                line_discount=line.line_discount,
                line_total=line.line_total,
            )
            for line in priced
        ],
        unavailable_line_ids=unavailable,
        item_count=cart.item_count,
        subtotal_before_discount=totals.subtotal_before_discount,
        item_discount_total=totals.item_discount_total,
        subtotal=totals.subtotal_after_item_discounts,
    )
