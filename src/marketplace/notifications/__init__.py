"""Order notification adapters."""

from marketplace.notifications.fake_adapter import FakeNotifier
from marketplace.notifications.port import OrderNotifier

__all__ = ["FakeNotifier", "OrderNotifier"]
