"""Refund aggregate — a refund recorded against an order, settled later.

Refunds are two-phase: ``initiate`` records intent without calling the
gateway; settlement calls the gateway and moves the refund to COMPLETED only
on an explicit success. A gateway that errors or answers "pending" leaves
the refund in PROCESSING.

    INITIATED → PROCESSING → COMPLETED
    INITIATED/PROCESSING → FAILED
    FAILED → PROCESSING (retry)
"""

from datetime import UTC, datetime
from enum import Enum

from protean.fields import DateTime, Identifier, Integer, String, Text

from marketplace.domain import marketplace
from marketplace.errors import ConflictError, ValidationError


class RefundType(Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


class RefundStatus(Enum):
    INITIATED = "INITIATED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_VALID_TRANSITIONS = {
    RefundStatus.INITIATED: {RefundStatus.PROCESSING, RefundStatus.FAILED},
    RefundStatus.PROCESSING: {RefundStatus.PROCESSING, RefundStatus.COMPLETED, RefundStatus.FAILED},
    RefundStatus.FAILED: {RefundStatus.PROCESSING},
    RefundStatus.COMPLETED: set(),  # Terminal
}


@marketplace.aggregate
class Refund:
    order_ref = Identifier(required=True)
    order_number = String(required=True, max_length=50)
    refund_type = String(required=True, choices=RefundType)
    amount = Integer(required=True, min_value=1)
    reason = Text(required=True)
    status = String(choices=RefundStatus, default=RefundStatus.INITIATED.value)
    initiated_at = DateTime(required=True)
    initiated_by = Identifier(required=True)
    gateway_refund_id = String(max_length=255)
    gateway_status = String(max_length=100)
    failure_reason = Text()
    completed_at = DateTime()
    version = Integer(default=0)
    created_at = DateTime()
    updated_at = DateTime()

    @classmethod
    def initiate(
        cls,
        order_ref,
        order_number: str,
        refund_type: RefundType,
        amount: int | None,
        refundable_amount: int,
        reason: str,
        initiated_by,
    ):
        if not reason or not reason.strip():
            raise ValidationError("A refund reason is required", code="VALIDATION")

        if refund_type is RefundType.FULL:
            amount = refundable_amount
        elif amount is None or amount <= 0 or amount > refundable_amount:
            raise ValidationError(
                f"Partial refund amount must be between 1 and {refundable_amount}",
                code="INVALID_REFUND_AMOUNT",
                details={"amount": amount, "refundable_amount": refundable_amount},
            )

        if amount <= 0:
            raise ValidationError("Nothing left to refund on this order", code="NOT_REFUNDABLE")

        now = datetime.now(UTC)
        return cls(
            order_ref=order_ref,
            order_number=order_number,
            refund_type=refund_type.value,
            amount=amount,
            reason=reason.strip(),
            initiated_at=now,
            initiated_by=initiated_by,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_full(self) -> bool:
        return self.refund_type == RefundType.FULL.value

    def _touch(self) -> datetime:
        now = datetime.now(UTC)
        self.updated_at = now
        return now

    def _assert_can_transition(self, target: RefundStatus) -> None:
        current = RefundStatus(self.status)
        if target not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError(
                f"Cannot move refund from {current.value} to {target.value}",
                code="INVALID_TRANSITION",
            )

    def mark_processing(self, gateway_status: str | None = None) -> None:
        self._assert_can_transition(RefundStatus.PROCESSING)
        self.status = RefundStatus.PROCESSING.value
        self.gateway_status = gateway_status
        self._touch()

    def complete(self, gateway_refund_id: str | None, gateway_status: str | None = None) -> None:
        self._assert_can_transition(RefundStatus.COMPLETED)
        self.status = RefundStatus.COMPLETED.value
        self.gateway_refund_id = gateway_refund_id
        self.gateway_status = gateway_status
        self.failure_reason = None
        self.completed_at = self._touch()

    def fail(self, failure_reason: str | None, gateway_status: str | None = None) -> None:
        self._assert_can_transition(RefundStatus.FAILED)
        self.status = RefundStatus.FAILED.value
        self.failure_reason = failure_reason
        self.gateway_status = gateway_status
        self._touch()
