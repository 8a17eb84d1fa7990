"""Pricing calculator — pure functions from cart lines and catalog data to totals.

All amounts are integers in the smallest currency unit. Percentages are
applied with half-up rounding once per line (not per unit), so quantity
never accumulates rounding drift. A negative intermediate is a bug, not
something to clamp away: it raises ``PricingInvariantError``.

    line_subtotal  = unit_price * quantity
    line_discount  = round(line_subtotal * discount% / 100)      (active discounts only)
    after_items    = sum(line_subtotal) - sum(line_discount)
    coupon         = round(after_items * coupon% / 100)          (re-derived every call)
    total          = max(0, after_items + shipping - coupon)
"""

import json
from dataclasses import dataclass
from datetime import date
from enum import Enum

from protean import invariant
from protean.exceptions import ValidationError as FieldValidationError
from protean.fields import Integer, String, Text

from marketplace.cart.cart import CartLine
from marketplace.catalogue.port import Course, DeliveryZone, LineKind, Product
from marketplace.domain import marketplace
from marketplace.errors import NotFoundError, PricingInvariantError, ValidationError


class DeliveryMethod(Enum):
    PICKUP = "PICKUP"
    LOCAL_DELIVERY = "LOCAL_DELIVERY"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------
@marketplace.value_object(part_of="Order")
class ItemSnapshot:
    """Catalog data copied onto an order item at checkout.

    Later catalog edits never reach an order: the item keeps the title,
    variant and course details it was bought with.
    """

    kind = String(required=True, choices=LineKind)
    title = String(required=True, max_length=255)
    sku = String(max_length=100)
    variant_attributes = Text()  # JSON object
    duration = String(max_length=100)
    skill_level = String(max_length=100)
    start_date = String(max_length=50)

    @property
    def attributes(self) -> dict[str, str]:
        return json.loads(self.variant_attributes) if self.variant_attributes else {}


@marketplace.value_object(part_of="Order")
class OrderTotals:
    """Financial summary of an order, locked at checkout."""

    subtotal_before_discount = Integer(required=True, min_value=0)
    item_discount_total = Integer(required=True, min_value=0)
    order_level_discount = Integer(default=0, min_value=0)
    coupon_code = String(max_length=100)
    coupon_percentage = Integer(min_value=0, max_value=100)
    shipping_cost = Integer(default=0, min_value=0)
    total = Integer(required=True, min_value=0)

    @invariant.post
    def discounts_stay_within_their_base(self):
        if self.item_discount_total > self.subtotal_before_discount:
            raise FieldValidationError({"item_discount_total": ["Item discounts exceed the subtotal"]})
        if self.order_level_discount > self.subtotal_before_discount - self.item_discount_total:
            raise FieldValidationError({"order_level_discount": ["Coupon discount exceeds the discounted subtotal"]})

    @property
    def subtotal_after_item_discounts(self) -> int:
        return self.subtotal_before_discount - self.item_discount_total


@dataclass(frozen=True)
class AppliedCoupon:
    """A coupon as quoted by the coupon subsystem: a percentage, not an amount."""

    code: str
    percentage: int
    minimum_order_amount: int = 0


@dataclass(frozen=True)
class PricedLine:
    line_id: str
    kind: LineKind
    ref: str
    variant_sku: str | None
    quantity: int
    unit_price: int
    discount_percent: int
    line_subtotal: int
    line_discount: int
    snapshot: ItemSnapshot
    preferred_start_date: date | None = None

    def __post_init__(self):
        if self.line_discount > self.line_subtotal:
            raise PricingInvariantError(f"line discount {self.line_discount} exceeds subtotal {self.line_subtotal}")

    @property
    def line_total(self) -> int:
        return self.line_subtotal - self.line_discount

    @property
    def display_name(self) -> str:
        attributes = self.snapshot.attributes
        if not attributes:
            return self.snapshot.title
        return f"{self.snapshot.title} ({', '.join(attributes.values())})"


@dataclass(frozen=True)
class PricingResult:
    totals: OrderTotals
    coupon_removed: bool = False


# ---------------------------------------------------------------------------
# Arithmetic
# ---------------------------------------------------------------------------
def percent_of(amount: int, percentage: int) -> int:
    """``round(amount * percentage / 100)`` with half-up rounding, in integers."""
    _require_non_negative("amount", amount)
    _require_non_negative("percentage", percentage)
    return (amount * percentage * 2 + 100) // 200


def _require_non_negative(name: str, value: int) -> int:
    if value < 0:
        raise PricingInvariantError(f"{name} went negative: {value}")
    return value


def _active_percentage(entry: Product | Course) -> int:
    discount = entry.discount
    if discount is None or not discount.is_active or discount.percentage <= 0:
        return 0
    return discount.percentage


# ---------------------------------------------------------------------------
# Line pricing
# ---------------------------------------------------------------------------
def compute_line_price(line: CartLine, entry: Product | Course) -> PricedLine:
    """Price one cart line against the catalog entry it references."""
    if entry.kind != line.kind or entry.ref != line.ref:
        raise ValidationError(
            f"Catalog entry {entry.ref} ({entry.kind}) does not match line {line.ref} ({line.kind})",
        )

    if isinstance(entry, Product):
        unit_price, snapshot = _product_price(line, entry)
    else:
        unit_price = entry.price
        snapshot = ItemSnapshot(
            kind=LineKind.COURSE.value,
            title=entry.title,
            duration=entry.duration,
            skill_level=entry.skill_level,
            start_date=entry.start_date,
        )

    percentage = _active_percentage(entry)
    line_subtotal = _require_non_negative("line_subtotal", unit_price * line.quantity)
    line_discount = percent_of(line_subtotal, percentage)

    return PricedLine(
        line_id=str(line.id),
        kind=line.line_kind,
        ref=line.ref,
        variant_sku=line.variant_sku,
        quantity=line.quantity,
        unit_price=unit_price,
        discount_percent=percentage,
        line_subtotal=line_subtotal,
        line_discount=line_discount,
        preferred_start_date=line.preferred_start_date,
        snapshot=snapshot,
    )


def _product_price(line: CartLine, product: Product) -> tuple[int, ItemSnapshot]:
    if line.variant_sku is None:
        if product.has_variants:
            raise NotFoundError(
                "Variant",
                product.ref,
                message=f"{product.title} requires a variant selection",
                code="VARIANT_NOT_FOUND",
            )
        return product.price, ItemSnapshot(kind=LineKind.PRODUCT.value, title=product.title)

    variant = product.variant(line.variant_sku)
    if variant is None:
        raise NotFoundError(
            "Variant",
            f"{product.ref}/{line.variant_sku}",
            message=f"Variant {line.variant_sku} not found for {product.title}",
            code="VARIANT_NOT_FOUND",
        )
    return variant.price, ItemSnapshot(
        kind=LineKind.PRODUCT.value,
        title=product.title,
        sku=variant.sku,
        variant_attributes=json.dumps(dict(variant.attributes)),
    )


# ---------------------------------------------------------------------------
# Order totals
# ---------------------------------------------------------------------------
def compute_order_totals(
    priced_lines: list[PricedLine],
    applied_coupon: AppliedCoupon | None = None,
    shipping_cost: int = 0,
) -> PricingResult:
    """Aggregate priced lines, re-derive the coupon and add shipping.

    The coupon is dropped (``coupon_removed``) when the discounted subtotal is
    zero or below its minimum-order threshold.
    """
    _require_non_negative("shipping_cost", shipping_cost)

    subtotal = sum(line.line_subtotal for line in priced_lines)
    item_discount_total = sum(line.line_discount for line in priced_lines)
    after_items = _require_non_negative("subtotal_after_item_discounts", subtotal - item_discount_total)

    coupon_removed = False
    order_level_discount = 0
    if applied_coupon is not None:
        if after_items == 0 or after_items < applied_coupon.minimum_order_amount:
            coupon_removed = True
            applied_coupon = None
        else:
            order_level_discount = min(percent_of(after_items, applied_coupon.percentage), after_items)

    total = _require_non_negative("total", after_items + shipping_cost - order_level_discount)

    totals = OrderTotals(
        subtotal_before_discount=subtotal,
        item_discount_total=item_discount_total,
        order_level_discount=order_level_discount,
        coupon_code=applied_coupon.code if applied_coupon else None,
        coupon_percentage=applied_coupon.percentage if applied_coupon else None,
        shipping_cost=shipping_cost,
        total=max(0, total),
    )
    return PricingResult(totals=totals, coupon_removed=coupon_removed)


def compute_shipping_cost(
    delivery_method: DeliveryMethod,
    zone: DeliveryZone | None = None,
    *,
    default_fee: int,
    require_zone: bool = False,
) -> int:
    """Shipping is free for pickup; local delivery costs the zone fee.

    Without a zone, previews fall back to ``default_fee``; order creation
    passes ``require_zone`` so the fallback never reaches an order.
    """
    if delivery_method is DeliveryMethod.PICKUP:
        return 0
    if zone is None:
        if require_zone:
            raise ValidationError(
                "A delivery zone is required for local delivery",
                code="DELIVERY_ZONE_REQUIRED",
            )
        return _require_non_negative("default_fee", default_fee)
    return _require_non_negative("zone_fee", zone.fee)
