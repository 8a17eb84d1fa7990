"""Order notification port — abstract interface for customer/admin notices."""

from abc import ABC, abstractmethod


class OrderNotifier(ABC):
    """Abstract interface for order notification adapters."""

    @abstractmethod
    def order_created(self, order_number: str, customer_ref: str, total: int) -> dict:
        ...

    @abstractmethod
    def order_status_changed(self, order_number: str, customer_ref: str, status: str, notes: str | None) -> dict:
        ...

    @abstractmethod
    def order_cancelled(self, order_number: str, customer_ref: str, reason: str, cancelled_by: str) -> dict:
        """Send a cancellation notice.

        Returns:
            dict with keys: message_id, status ("sent" or "failed"), error (optional)
        """
        ...
