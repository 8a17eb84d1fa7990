"""Fake notifier — records notifications for testing."""

from uuid import uuid4

from marketplace.notifications.port import OrderNotifier


class FakeNotifier(OrderNotifier):
    """Notifier that records messages in memory for test assertions."""

    def __init__(self):
        self.sent: list[dict] = []
        self.should_succeed = True
        self.failure_reason = "Notification delivery failed"

    def configure(self, should_succeed: bool = True, failure_reason: str = "Notification delivery failed"):
        """Configure the fake adapter behavior for testing."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def _record(self, kind: str, **fields) -> dict:
        if not self.should_succeed:
            return {"message_id": None, "status": "failed", "error": self.failure_reason}

        message_id = f"note-{uuid4().hex[:12]}"
        self.sent.append({"message_id": message_id, "kind": kind, **fields})
        return {"message_id": message_id, "status": "sent"}

    def order_created(self, order_number, customer_ref, total):
        return self._record("order_created", order_number=order_number, customer_ref=customer_ref, total=total)

    def order_status_changed(self, order_number, customer_ref, status, notes):
        return self._record(
            "order_status_changed",
            order_number=order_number,
            customer_ref=customer_ref,
            status=status,
            notes=notes,
        )

    def order_cancelled(self, order_number, customer_ref, reason, cancelled_by):
        return self._record(
            "order_cancelled",
            order_number=order_number,
            customer_ref=customer_ref,
            reason=reason,
            cancelled_by=cancelled_by,
        )

    def of_kind(self, kind: str) -> list[dict]:
        return [message for message in self.sent if message["kind"] == kind]
