"""Payment gateway adapters.

``build_gateway()`` picks the adapter named by ``PAYMENT_GATEWAY_ADAPTER``;
the result is handed to the services that need it rather than stored in a
module global.
"""

from marketplace.gateway.fake_adapter import FakeGateway
from marketplace.gateway.port import PaymentGateway


def build_gateway(adapter: str = "fake") -> PaymentGateway:
    """Return a new payment gateway adapter."""
    if adapter == "fake":
        return FakeGateway()
    raise ValueError(f"Unknown payment gateway adapter: {adapter}")


__all__ = ["FakeGateway", "PaymentGateway", "build_gateway"]
