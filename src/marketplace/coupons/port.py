"""Coupon port — the narrow interface the checkout uses to talk to coupons.

The coupon subsystem validates codes and keeps usage bookkeeping. Checkout
only needs a quote (percentage and minimum order) before pricing, and to
record or revert usage once an order exists.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field


@dataclass(frozen=True)
class CouponQuote:
    valid: bool
    code: str
    percentage: int = 0
    minimum_order_amount: int = 0
    amount: int = 0
    title: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class CouponResult:
    success: bool
    code: str
    amount: int = 0
    failure_reason: str | None = None


@dataclass(frozen=True)
class CouponUsage:
    order_ref: str
    customer_ref: str | None
    amount: int


@dataclass
class Coupon:
    code: str
    percentage: int
    title: str = ""
    is_active: bool = True
    starts_at: object = None
    ends_at: object = None
    minimum_order_amount: int = 0
    max_uses: int | None = None
    max_uses_per_user: int | None = None
    excluded_refs: set[str] = field(default_factory=set)
    current_uses: int = 0
    usages: list[CouponUsage] = field(default_factory=list)


class CouponService(ABC):
    """Abstract coupon subsystem interface."""

    @abstractmethod
    def quote(self, code: str, customer_ref: str, order_total: int, refs: list[str]) -> CouponQuote:
        """Validate ``code`` for this customer and basket and quote its discount."""
        ...

    @abstractmethod
    def apply_coupon(self, code: str, order_ref: str, amount: int, customer_ref: str | None = None) -> CouponResult:
        """Record usage of ``code`` by an order."""
        ...

    @abstractmethod
    def revert_usage(self, code: str, order_ref: str) -> CouponResult:
        """Undo the usage recorded for ``order_ref``."""
        ...
