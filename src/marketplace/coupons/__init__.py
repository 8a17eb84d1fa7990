"""Coupon subsystem adapters."""

from marketplace.coupons.fake_adapter import InMemoryCoupons
from marketplace.coupons.port import Coupon, CouponQuote, CouponResult, CouponService

__all__ = ["Coupon", "CouponQuote", "CouponResult", "CouponService", "InMemoryCoupons"]
