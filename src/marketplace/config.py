"""Runtime settings for the marketplace, read from environment variables.

Adapters and tunables are selected at composition time (see
``marketplace.application.build_marketplace``); nothing reads the environment
after startup.
"""

import os
from dataclasses import dataclass


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    env: str = "development"
    order_number_prefix: str = "KAPC"
    order_number_digits: int = 6
    order_number_attempts: int = 5
    currency: str = "UGX"
    default_delivery_fee: int = 5000
    stage_timeout_seconds: float = 10.0
    stage_workers: int = 8
    cart_view_ttl_seconds: float = 300.0
    reconcile_grace_minutes: int = 30
    payment_callback_url: str = "http://localhost:8000/payments/notifications"
    payment_gateway_adapter: str = "fake"

    @classmethod
    def from_env(cls) -> "Settings":
        settings = cls(
            env=os.environ.get("MARKETPLACE_ENV", cls.env).lower(),
            order_number_prefix=os.environ.get("ORDER_NUMBER_PREFIX", cls.order_number_prefix),
            order_number_digits=_int("ORDER_NUMBER_DIGITS", cls.order_number_digits),
            order_number_attempts=_int("ORDER_NUMBER_ATTEMPTS", cls.order_number_attempts),
            currency=os.environ.get("CURRENCY", cls.currency),
            default_delivery_fee=_int("DEFAULT_DELIVERY_FEE", cls.default_delivery_fee),
            stage_timeout_seconds=_float("STAGE_TIMEOUT_SECONDS", cls.stage_timeout_seconds),
            stage_workers=_int("STAGE_WORKERS", cls.stage_workers),
            cart_view_ttl_seconds=_float("CART_VIEW_TTL_SECONDS", cls.cart_view_ttl_seconds),
            reconcile_grace_minutes=_int("RECONCILE_GRACE_MINUTES", cls.reconcile_grace_minutes),
            payment_callback_url=os.environ.get("PAYMENT_CALLBACK_URL", cls.payment_callback_url),
            payment_gateway_adapter=os.environ.get("PAYMENT_GATEWAY_ADAPTER", cls.payment_gateway_adapter),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.order_number_digits < 1:
            raise ValueError("ORDER_NUMBER_DIGITS must be at least 1")
        if self.order_number_attempts < 1:
            raise ValueError("ORDER_NUMBER_ATTEMPTS must be at least 1")
        if self.default_delivery_fee < 0:
            raise ValueError("DEFAULT_DELIVERY_FEE must not be negative")
        if self.stage_timeout_seconds <= 0:
            raise ValueError("STAGE_TIMEOUT_SECONDS must be positive")
        if self.stage_workers < 1:
            raise ValueError("STAGE_WORKERS must be at least 1")
        if self.cart_view_ttl_seconds <= 0:
            raise ValueError("CART_VIEW_TTL_SECONDS must be positive")

    @property
    def is_production(self) -> bool:
        return self.env == "production"
