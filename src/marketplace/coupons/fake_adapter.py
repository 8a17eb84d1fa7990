"""In-memory coupon subsystem for development and testing."""

import threading
from datetime import UTC, datetime

from marketplace.coupons.port import Coupon, CouponQuote, CouponResult, CouponService, CouponUsage
from marketplace.pricing.calculator import percent_of


class InMemoryCoupons(CouponService):
    def __init__(self) -> None:
        self._coupons: dict[str, Coupon] = {}
        self._lock = threading.Lock()
        self.should_fail_apply = False
        self.calls: list[dict] = []

    def add(self, coupon: Coupon) -> None:
        coupon.code = coupon.code.upper()
        self._coupons[coupon.code] = coupon

    def get(self, code: str) -> Coupon | None:
        return self._coupons.get(code.upper())

    def quote(self, code: str, customer_ref: str, order_total: int, refs: list[str]) -> CouponQuote:
        self.calls.append({"method": "quote", "code": code, "order_total": order_total})
        code = code.upper()
        coupon = self._coupons.get(code)
        if coupon is None:
            return CouponQuote(valid=False, code=code, error="Invalid coupon code")
        if not coupon.is_active:
            return CouponQuote(valid=False, code=code, error="This coupon is no longer active")

        now = datetime.now(UTC)
        if coupon.starts_at and now < coupon.starts_at:
            return CouponQuote(valid=False, code=code, error="This coupon is not yet active")
        if coupon.ends_at and now > coupon.ends_at:
            return CouponQuote(valid=False, code=code, error="This coupon has expired")
        if coupon.minimum_order_amount and order_total < coupon.minimum_order_amount:
            return CouponQuote(
                valid=False,
                code=code,
                error=f"Minimum order amount of {coupon.minimum_order_amount} required",
            )
        if coupon.max_uses is not None and coupon.current_uses >= coupon.max_uses:
            return CouponQuote(valid=False, code=code, error="This coupon has reached its usage limit")
        if coupon.max_uses_per_user is not None:
            used = sum(1 for usage in coupon.usages if usage.customer_ref == customer_ref)
            if used >= coupon.max_uses_per_user:
                return CouponQuote(valid=False, code=code, error="You have already used this coupon")
        if coupon.excluded_refs.intersection(refs):
            return CouponQuote(
                valid=False,
                code=code,
                error="Some items in your cart are not eligible for this discount",
            )

        return CouponQuote(
            valid=True,
            code=code,
            percentage=coupon.percentage,
            minimum_order_amount=coupon.minimum_order_amount,
            amount=percent_of(order_total, coupon.percentage),
            title=coupon.title,
        )

    def apply_coupon(self, code: str, order_ref: str, amount: int, customer_ref: str | None = None) -> CouponResult:
        self.calls.append({"method": "apply_coupon", "code": code, "order_ref": order_ref, "amount": amount})
        code = code.upper()
        if self.should_fail_apply:
            raise ConnectionError("Coupon service unavailable")

        with self._lock:
            coupon = self._coupons.get(code)
            if coupon is None:
                return CouponResult(success=False, code=code, failure_reason="Discount code not found")
            if any(usage.order_ref == order_ref for usage in coupon.usages):
                return CouponResult(success=True, code=code, amount=amount)
            coupon.usages.append(CouponUsage(order_ref=order_ref, customer_ref=customer_ref, amount=amount))
            coupon.current_uses += 1
        return CouponResult(success=True, code=code, amount=amount)

    def revert_usage(self, code: str, order_ref: str) -> CouponResult:
        self.calls.append({"method": "revert_usage", "code": code, "order_ref": order_ref})
        code = code.upper()
        with self._lock:
            coupon = self._coupons.get(code)
            if coupon is None:
                return CouponResult(success=False, code=code, failure_reason="Discount code not found")
            usage = next((u for u in coupon.usages if u.order_ref == order_ref), None)
            if usage is None:
                return CouponResult(success=False, code=code, failure_reason="No usage recorded for order")
            coupon.usages.remove(usage)
            coupon.current_uses = max(0, coupon.current_uses - 1)
        return CouponResult(success=True, code=code, amount=usage.amount)
