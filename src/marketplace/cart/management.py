"""Cart management — commands and handler.

Each command loads the customer's cart (creating it on first use), applies
one aggregate operation and writes it back. The read cache is invalidated
after the write.
"""

import json
from dataclasses import dataclass
from datetime import date

import structlog
from protean.fields import Date, Identifier, Integer, String, Text

from marketplace.cart.cart import Cart, CartLine
from marketplace.catalogue.port import CatalogPort, LineKind, Product
from marketplace.config import Settings
from marketplace.coupons.port import CouponService
from marketplace.domain import marketplace
from marketplace.errors import InsufficientStockError, NotFoundError, ValidationError
from marketplace.pricing.calculator import (
    AppliedCoupon,
    DeliveryMethod,
    OrderTotals,
    compute_line_price,
    compute_order_totals,
    compute_shipping_cost,
)
from marketplace.projections.cart_view import CartView, ViewCache, build_cart_view, cart_key
from marketplace.repository import CartRepository

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@marketplace.command(part_of="Cart")
class AddToCart:
    customer_ref = Identifier(required=True)
    kind = String(required=True, choices=LineKind)
    ref = Identifier(required=True)
    variant_sku = String(max_length=100)
    quantity = Integer(default=1, min_value=1)
    preferred_start_date = Date()


@marketplace.command(part_of="Cart")
class UpdateCartItem:
    customer_ref = Identifier(required=True)
    line_id = Identifier(required=True)
    quantity = Integer(min_value=0)
    variant_sku = String(max_length=100)


@marketplace.command(part_of="Cart")
class RemoveCartItem:
    customer_ref = Identifier(required=True)
    line_id = Identifier(required=True)


@marketplace.command(part_of="Cart")
class ClearCart:
    customer_ref = Identifier(required=True)


@marketplace.command(part_of="Cart")
class SyncCart:
    """Merge an anonymous cart into a signed-in customer's cart."""

    customer_ref = Identifier(required=True)
    lines = Text(required=True)  # JSON: list of {kind, ref, variant_sku, quantity, preferred_start_date}
    sync_token = String(max_length=255)


@marketplace.command(part_of="Cart")
class QuoteCart:
    customer_ref = Identifier(required=True)
    delivery_method = String(choices=DeliveryMethod, default=DeliveryMethod.PICKUP.value)
    delivery_zone_ref = Identifier()
    coupon_code = String(max_length=100)


@dataclass(frozen=True)
class CartQuote:
    totals: OrderTotals
    coupon_removed: bool = False
    coupon_error: str | None = None


def _guest_lines(payload: str) -> list[CartLine]:
    try:
        lines = json.loads(payload)
    except (TypeError, ValueError):
        raise ValidationError("Cart lines must be a JSON list", code="VALIDATION") from None
    if not isinstance(lines, list):
        raise ValidationError("Cart lines must be a JSON list", code="VALIDATION")

    incoming = []
    for line in lines:
        start = line.get("preferred_start_date")
        incoming.append(
            CartLine.new(
                LineKind(line["kind"]),
                str(line["ref"]),
                line.get("variant_sku"),
                int(line.get("quantity", 1)),
                date.fromisoformat(start) if start else None,
            )
        )
    return incoming


# ---------------------------------------------------------------------------
# Handler
# ---------------------------------------------------------------------------
class CartHandler:
    def __init__(
        self,
        carts: CartRepository,
        catalog: CatalogPort,
        coupons: CouponService,
        cache: ViewCache,
        settings: Settings,
    ) -> None:
        self.carts = carts
        self.catalog = catalog
        self.coupons = coupons
        self.cache = cache
        self.settings = settings

    def _load(self, customer_ref) -> Cart:
        return self.carts.find_by_customer(customer_ref) or Cart.create(customer_ref)

    def _save(self, cart: Cart) -> Cart:
        self.carts.add(cart)
        self.cache.invalidate(cart_key(cart.customer_ref))
        return cart

    def _check_line(self, line: CartLine, total_quantity: int) -> None:
        """The referenced entry must exist, the variant must resolve and stock must cover the quantity."""
        entry = self.catalog.fetch_entries([line.ref]).get(line.ref)
        if entry is None or entry.kind != line.kind:
            raise NotFoundError(line.kind.title(), line.ref)

        compute_line_price(line, entry)

        if isinstance(entry, Product):
            available = self.catalog.available_stock(line.ref, line.variant_sku)
            if total_quantity > available:
                raise InsufficientStockError(line.ref, line.variant_sku, total_quantity, available)

    # -------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------
    def add_to_cart(self, command: AddToCart) -> Cart:
        cart = self._load(command.customer_ref)
        kind = LineKind(command.kind)
        candidate = CartLine.new(
            kind,
            command.ref,
            command.variant_sku,
            command.quantity,
            command.preferred_start_date,
        )
        existing = next((line for line in cart.lines if line.key == candidate.key), None)
        self._check_line(candidate, command.quantity + (existing.quantity if existing else 0))

        cart.add_line(
            kind=kind,
            ref=command.ref,
            variant_sku=command.variant_sku,
            quantity=command.quantity,
            preferred_start_date=command.preferred_start_date,
        )
        logger.info("Item added to cart", customer_ref=command.customer_ref, ref=command.ref)
        return self._save(cart)

    def update_cart_item(self, command: UpdateCartItem) -> Cart:
        cart = self._load(command.customer_ref)
        line = cart.find_line(command.line_id)

        if command.variant_sku is not None and command.variant_sku != line.variant_sku:
            reselected = CartLine.new(line.line_kind, line.ref, command.variant_sku, line.quantity)
            self._check_line(reselected, command.quantity or line.quantity)
            line = cart.change_variant(command.line_id, command.variant_sku)

        if command.quantity is not None:
            if command.quantity > 0:
                self._check_line(line, command.quantity)
            cart.update_quantity(line.id, command.quantity)

        return self._save(cart)

    def remove_cart_item(self, command: RemoveCartItem) -> Cart:
        cart = self._load(command.customer_ref)
        cart.remove_line(command.line_id)
        return self._save(cart)

    def clear_cart(self, command: ClearCart) -> Cart:
        cart = self._load(command.customer_ref)
        cart.clear()
        return self._save(cart)

    def sync_cart(self, command: SyncCart) -> Cart:
        """Merge an anonymous cart into the customer's cart after sign-in."""
        cart = self._load(command.customer_ref)
        incoming = _guest_lines(command.lines)
        merged = cart.merge_from(incoming, sync_token=command.sync_token)
        if merged == 0 and incoming:
            logger.info("Cart sync skipped, token already merged", customer_ref=command.customer_ref)
            return cart

        logger.info("Guest cart merged", customer_ref=command.customer_ref, lines_merged=merged)
        return self._save(cart)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def get_cart(self, customer_ref) -> CartView:
        key = cart_key(customer_ref)
        view, token = self.cache.lookup(key)
        if view is None:
            view = build_cart_view(self._load(customer_ref), self.catalog)
            self.cache.put(key, view, token)
        return view

    def quote(self, command: QuoteCart) -> CartQuote:
        """Preview order totals for the current cart without side effects."""
        cart = self._load(command.customer_ref)
        entries = self.catalog.fetch_entries(sorted({line.ref for line in cart.lines}))
        priced = []
        for line in cart.lines:
            entry = entries.get(line.ref)
            if entry is None:
                raise NotFoundError(line.kind.title(), line.ref)
            priced.append(compute_line_price(line, entry))

        delivery_method = DeliveryMethod(command.delivery_method)
        zone = None
        if delivery_method is DeliveryMethod.LOCAL_DELIVERY and command.delivery_zone_ref:
            zone = self.catalog.fetch_zone(command.delivery_zone_ref)
        shipping_cost = compute_shipping_cost(
            delivery_method,
            zone,
            default_fee=self.settings.default_delivery_fee,
        )

        applied = None
        coupon_error = None
        if command.coupon_code:
            subtotal = sum(line.line_total for line in priced)
            refs = [line.ref for line in priced]
            quote = self.coupons.quote(command.coupon_code, command.customer_ref, subtotal, refs)
            if quote.valid:
                applied = AppliedCoupon(
                    code=quote.code,
                    percentage=quote.percentage,
                    minimum_order_amount=quote.minimum_order_amount,
                )
            else:
                coupon_error = quote.error

        result = compute_order_totals(priced, applied, shipping_cost)
        return CartQuote(totals=result.totals, coupon_removed=result.coupon_removed, coupon_error=coupon_error)
