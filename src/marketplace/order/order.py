"""Order aggregate — the financial record produced from a priced cart.

Once created, the totals and items of an order never change. Only the
status, payment status, notes, history and the delivery/cancellation
timestamps move, and every status change appends exactly one entry to
``order_history``, which is never pruned.

State Machine:
    PENDING_PAYMENT → PROCESSING → READY_FOR_DELIVERY → OUT_FOR_DELIVERY → DELIVERED
    READY_FOR_DELIVERY → DELIVERED
    any non-terminal state → CANCELLED_BY_USER | CANCELLED_BY_ADMIN
    CANCELLED_* → (reactivation) the last status recorded before the cancellation

PENDING_PAYMENT → PROCESSING requires COD, or PESAPAL with a PAID payment.
"""

from datetime import UTC, datetime
from enum import Enum

from protean import atomic_change, invariant
from protean.exceptions import ValidationError as FieldValidationError
from protean.fields import Boolean, Date, DateTime, HasMany, Identifier, Integer, String, Text, ValueObject

from marketplace.catalogue.port import LineKind
from marketplace.domain import marketplace
from marketplace.errors import ConflictError, ValidationError
from marketplace.pricing.calculator import DeliveryMethod, ItemSnapshot, OrderTotals, PricedLine


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING_PAYMENT = "PENDING_PAYMENT"
    PROCESSING = "PROCESSING"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED_BY_USER = "CANCELLED_BY_USER"
    CANCELLED_BY_ADMIN = "CANCELLED_BY_ADMIN"


class PaymentMethod(Enum):
    PESAPAL = "PESAPAL"
    COD = "COD"


class PaymentStatus(Enum):
    NOT_INITIATED = "NOT_INITIATED"
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIAL = "PARTIAL"


class CustomerCancellationReason(Enum):
    CHANGED_MIND = "changed_mind"
    FOUND_BETTER_PRICE = "found_better_price"
    NO_LONGER_NEEDED = "no_longer_needed"
    ORDERED_BY_MISTAKE = "ordered_by_mistake"
    DELIVERY_TOO_LONG = "delivery_too_long"
    OTHER = "other"


class AdminCancellationReason(Enum):
    CUSTOMER_REQUEST = "customer_request"
    PAYMENT_FAILED = "payment_failed"
    ITEMS_UNAVAILABLE = "items_unavailable"
    FRAUD_SUSPECTED = "fraud_suspected"
    OTHER = "other"


CANCELLED_STATUSES = {OrderStatus.CANCELLED_BY_USER, OrderStatus.CANCELLED_BY_ADMIN}

# Payment statuses that mean money was captured at some point
CAPTURED_PAYMENT_STATUSES = {PaymentStatus.PAID, PaymentStatus.PARTIAL, PaymentStatus.REFUNDED}

# State machine transition map (cancellation and reactivation are handled separately)
_VALID_TRANSITIONS = {
    OrderStatus.PENDING_PAYMENT: {OrderStatus.PROCESSING},
    OrderStatus.PROCESSING: {OrderStatus.READY_FOR_DELIVERY},
    OrderStatus.READY_FOR_DELIVERY: {OrderStatus.OUT_FOR_DELIVERY, OrderStatus.DELIVERED},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED_BY_USER: set(),
    OrderStatus.CANCELLED_BY_ADMIN: set(),
}

_TIMESTAMP_FIELDS = {
    OrderStatus.READY_FOR_DELIVERY: "ready_at",
    OrderStatus.OUT_FOR_DELIVERY: "dispatched_at",
    OrderStatus.DELIVERED: "delivered_at",
}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@marketplace.entity(part_of="Order")
class OrderHistoryEntry:
    status = String(required=True, choices=OrderStatus)
    timestamp = DateTime(required=True)
    actor_id = Identifier()
    notes = Text()
    sequence = Integer(required=True, min_value=1)


@marketplace.entity(part_of="Order")
class OrderItem:
    """A snapshot line of an order, frozen at creation.

    ``line_total`` is authoritative: the discount is rounded once per line,
    so ``discount_applied`` (per unit) is a display value and
    ``final_price * quantity`` can differ from ``line_total`` by the
    rounding remainder.
    """

    kind = String(required=True, choices=LineKind)
    product_ref = Identifier()
    course_ref = Identifier()
    variant_sku = String(max_length=100)
    name = String(required=True, max_length=255)
    quantity = Integer(required=True, min_value=1)
    original_price = Integer(required=True, min_value=0)
    discount_applied = Integer(required=True, min_value=0)
    final_price = Integer(required=True, min_value=0)
    line_discount = Integer(required=True, min_value=0)
    line_total = Integer(required=True, min_value=0)
    preferred_start_date = Date()
    snapshot = ValueObject(ItemSnapshot)

    @invariant.post
    def prices_are_consistent(self):
        if self.final_price != self.original_price - self.discount_applied:
            raise FieldValidationError({"final_price": ["final_price must equal original_price - discount_applied"]})
        if self.line_total != self.original_price * self.quantity - self.line_discount:
            raise FieldValidationError(
                {"line_total": ["line_total must equal the line subtotal less the line discount"]}
            )

    @property
    def ref(self) -> str:
        return str(self.product_ref if self.kind == LineKind.PRODUCT.value else self.course_ref)

    @classmethod
    def from_priced_line(cls, line: PricedLine) -> "OrderItem":
        per_unit_discount = min((2 * line.line_discount + line.quantity) // (2 * line.quantity), line.unit_price)
        refs = {"product_ref": line.ref} if line.kind is LineKind.PRODUCT else {"course_ref": line.ref}
        return cls(
            kind=line.kind.value,
            variant_sku=line.variant_sku,
            name=line.display_name,
            quantity=line.quantity,
            original_price=line.unit_price,
            discount_applied=per_unit_discount,
            final_price=line.unit_price - per_unit_discount,
            line_discount=line.line_discount,
            line_total=line.line_total,
            preferred_start_date=line.preferred_start_date,
            snapshot=line.snapshot,
            **refs,
        )


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@marketplace.aggregate
class Order:
    order_number = String(required=True, max_length=50, unique=True)
    order_date = DateTime(required=True)
    customer_ref = Identifier(required=True)
    items = HasMany(OrderItem)
    totals = ValueObject(OrderTotals, required=True)
    currency = String(max_length=3, default="UGX")
    payment_method = String(required=True, choices=PaymentMethod)
    payment_status = String(choices=PaymentStatus, default=PaymentStatus.NOT_INITIATED.value)
    status = String(choices=OrderStatus, default=OrderStatus.PENDING_PAYMENT.value)
    shipping_address_ref = Identifier(required=True)
    delivery_method = String(required=True, choices=DeliveryMethod)
    delivery_zone_ref = Identifier()
    order_history = HasMany(OrderHistoryEntry)
    notes = Text()
    transaction_id = String(max_length=255)
    payment_confirmation_code = String(max_length=255)
    payment_failure_reason = Text()
    cancellation_reason = String(max_length=100)
    cancelled_at = DateTime()
    ready_at = DateTime()
    dispatched_at = DateTime()
    delivered_at = DateTime()
    refunded_amount = Integer(default=0, min_value=0)
    stock_reserved = Boolean(default=False)
    version = Integer(default=0)
    created_at = DateTime()
    updated_at = DateTime()

    @invariant.post
    def refunds_never_exceed_the_total(self):
        if self.totals is not None and (self.refunded_amount or 0) > self.totals.total:
            raise FieldValidationError({"refunded_amount": ["Refunded amount exceeds the order total"]})

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        customer_ref,
        order_number: str,
        priced_lines: list[PricedLine],
        totals: OrderTotals,
        payment_method: PaymentMethod,
        delivery_method: DeliveryMethod,
        shipping_address_ref,
        delivery_zone_ref=None,
        currency: str = "UGX",
        actor_id=None,
    ):
        """Create a PENDING_PAYMENT order from priced cart lines."""
        if not priced_lines:
            raise ValidationError("Cannot create an order without items", code="CART_EMPTY")

        now = datetime.now(UTC)
        order = cls(
            customer_ref=customer_ref,
            order_number=order_number,
            order_date=now,
            items=[OrderItem.from_priced_line(line) for line in priced_lines],
            totals=totals,
            currency=currency,
            payment_method=payment_method.value,
            payment_status=(
                PaymentStatus.PENDING.value
                if payment_method is PaymentMethod.COD
                else PaymentStatus.NOT_INITIATED.value
            ),
            shipping_address_ref=shipping_address_ref,
            delivery_method=delivery_method.value,
            delivery_zone_ref=delivery_zone_ref,
            created_at=now,
            updated_at=now,
        )
        order._append_history(OrderStatus.PENDING_PAYMENT, actor_id, "Order placed", now)
        return order

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    @property
    def is_cancelled(self) -> bool:
        return OrderStatus(self.status) in CANCELLED_STATUSES

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    @property
    def requires_payment(self) -> bool:
        return (
            self.payment_method == PaymentMethod.PESAPAL.value
            and self.totals.total > 0
            and PaymentStatus(self.payment_status) not in CAPTURED_PAYMENT_STATUSES
        )

    @property
    def history(self) -> list[OrderHistoryEntry]:
        """History entries, oldest first."""
        return sorted(self.order_history, key=lambda entry: entry.sequence)

    def previous_status(self) -> OrderStatus | None:
        """The last non-cancelled status recorded before the latest cancellation."""
        seen_cancellation = False
        for entry in reversed(self.history):
            status = OrderStatus(entry.status)
            if status in CANCELLED_STATUSES:
                seen_cancellation = True
                continue
            if seen_cancellation:
                return status
        return None

    # -------------------------------------------------------------------
    # State transition helpers
    # -------------------------------------------------------------------
    def _touch(self) -> datetime:
        now = datetime.now(UTC)
        self.updated_at = now
        return now

    def _append_history(self, status: OrderStatus, actor_id, notes, timestamp=None) -> None:
        self.add_order_history(
            OrderHistoryEntry(
                status=status.value,
                timestamp=timestamp or datetime.now(UTC),
                actor_id=actor_id,
                notes=notes,
                sequence=len(self.order_history) + 1,
            )
        )

    def _assert_can_transition(self, target_status: OrderStatus) -> None:
        """Validate that the current state allows transition to target."""
        current = OrderStatus(self.status)
        if target_status in CANCELLED_STATUSES:
            raise ValidationError(
                "Cancellation requires a reason; use cancel()",
                code="INVALID_TRANSITION",
            )
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError(
                f"Cannot transition from {current.value} to {target_status.value}",
                code="INVALID_TRANSITION",
            )
        if current is OrderStatus.PENDING_PAYMENT and target_status is OrderStatus.PROCESSING:
            if self.payment_method == PaymentMethod.PESAPAL.value and not self.is_paid:
                raise ConflictError(
                    "PESAPAL orders can only be processed after payment is confirmed",
                    code="PAYMENT_NOT_CONFIRMED",
                )

    def can_transition_to(self, target_status: OrderStatus) -> bool:
        try:
            self._assert_can_transition(target_status)
        except (ConflictError, ValidationError):
            return False
        return True

    def transition_to(self, target_status: OrderStatus, actor_id=None, notes: str | None = None) -> None:
        """Move along the forward path of the state machine."""
        self._assert_can_transition(target_status)

        now = self._touch()
        self.status = target_status.value
        if target_status in _TIMESTAMP_FIELDS:
            setattr(self, _TIMESTAMP_FIELDS[target_status], now)
        if notes:
            self.notes = notes
        self._append_history(target_status, actor_id, notes, now)

    # -------------------------------------------------------------------
    # Cancellation and reactivation
    # -------------------------------------------------------------------
    def cancel(
        self,
        cancelled_status: OrderStatus,
        reason: str,
        actor_id=None,
        notes: str | None = None,
    ) -> None:
        """Cancel a non-terminal order; ``reason`` is the structured reason code."""
        if cancelled_status not in CANCELLED_STATUSES:
            raise ValidationError(f"{cancelled_status.value} is not a cancellation status", code="INVALID_TRANSITION")
        if not reason:
            raise ValidationError("A cancellation reason is required", code="VALIDATION")
        if self.is_cancelled:
            raise ConflictError("Order is already cancelled", code="ORDER_ALREADY_CANCELLED")
        if self.status == OrderStatus.DELIVERED.value:
            raise ConflictError("Delivered orders cannot be cancelled", code="INVALID_TRANSITION")

        with atomic_change(self):
            now = self._touch()
            self.status = cancelled_status.value
            self.cancellation_reason = reason
            self.cancelled_at = now
            self.notes = notes
        self._append_history(cancelled_status, actor_id, _cancellation_note(cancelled_status, reason, notes), now)

    def reactivate(self, actor_id=None, notes: str | None = None) -> OrderStatus:
        """Restore the status recorded before the latest cancellation."""
        if not self.is_cancelled:
            raise ConflictError("Only cancelled orders can be reactivated", code="INVALID_TRANSITION")

        previous = self.previous_status()
        if previous is None:
            raise ConflictError("Order history has no status to restore", code="NO_PREVIOUS_STATUS")

        with atomic_change(self):
            now = self._touch()
            self.status = previous.value
            self.cancelled_at = None
            self.cancellation_reason = None
        self._append_history(previous, actor_id, notes or f"Reactivated to {previous.value}", now)
        return previous

    # -------------------------------------------------------------------
    # Payment
    # -------------------------------------------------------------------
    def record_payment_submitted(self, transaction_id: str) -> None:
        if self.payment_method != PaymentMethod.PESAPAL.value:
            raise ValidationError("Only PESAPAL orders are paid through the gateway", code="VALIDATION")
        if self.status != OrderStatus.PENDING_PAYMENT.value:
            raise ConflictError(f"Order is {self.status}, not awaiting payment", code="INVALID_TRANSITION")
        if self.is_paid:
            raise ConflictError("Order is already paid", code="CONFLICT")

        self.transaction_id = transaction_id
        self.payment_status = PaymentStatus.PENDING.value
        self.payment_failure_reason = None
        self._touch()

    def record_payment_confirmed(self, transaction_id: str | None, confirmation_code: str | None) -> None:
        if transaction_id:
            self.transaction_id = transaction_id
        self.payment_confirmation_code = confirmation_code
        self.payment_status = PaymentStatus.PAID.value
        self.payment_failure_reason = None
        self._touch()

    def record_payment_failed(self, reason: str | None) -> None:
        if PaymentStatus(self.payment_status) in CAPTURED_PAYMENT_STATUSES:
            raise ConflictError("Cannot fail a captured payment", code="CONFLICT")
        self.payment_status = PaymentStatus.FAILED.value
        self.payment_failure_reason = reason
        self._touch()

    def record_payment_reversed(self) -> None:
        if not self.is_paid:
            raise ConflictError("Only paid orders can be reversed", code="CONFLICT")
        self.payment_status = PaymentStatus.REFUNDED.value
        self._touch()

    # -------------------------------------------------------------------
    # Refund bookkeeping
    # -------------------------------------------------------------------
    @property
    def refundable_amount(self) -> int:
        return self.totals.total - self.refunded_amount

    def record_refund_initiated(self, full: bool) -> None:
        """A FULL refund flips the payment status immediately; PARTIAL keeps it."""
        if full:
            self.payment_status = PaymentStatus.REFUNDED.value
        self._touch()

    def record_refund_settled(self, amount: int) -> None:
        with atomic_change(self):
            self.refunded_amount = min(self.totals.total, self.refunded_amount + amount)
            self.payment_status = (
                PaymentStatus.REFUNDED.value
                if self.refunded_amount >= self.totals.total
                else PaymentStatus.PARTIAL.value
            )
            self._touch()

    def record_refund_failed(self) -> None:
        """Undo the optimistic flip of a FULL refund the gateway rejected."""
        if self.refunded_amount == 0:
            self.payment_status = PaymentStatus.PAID.value
        elif self.refunded_amount < self.totals.total:
            self.payment_status = PaymentStatus.PARTIAL.value
        self._touch()


def _cancellation_note(status: OrderStatus, reason: str, notes: str | None) -> str:
    who = "CUSTOMER" if status is OrderStatus.CANCELLED_BY_USER else "ADMIN"
    label = reason.upper().replace("_", " ")
    return f"[{who} CANCELLATION - {label}] {notes}" if notes else f"[{who} CANCELLATION - {label}]"
