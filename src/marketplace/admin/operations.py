"""Admin order operations — status changes, cancellation, reactivation and refunds.

Refunds are two-phase. ``initiate_refund`` records a Refund in INITIATED
without calling the gateway; a FULL refund also flips the order's payment
status to REFUNDED straight away. The refund is written before the order,
so an order never shows REFUNDED without a refund record behind it.
``settle_refund`` calls the gateway and completes the refund only when the
gateway explicitly reports success: a gateway error or a "pending" answer
leaves it PROCESSING, and an explicit failure marks it FAILED and undoes the
optimistic REFUNDED flip.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import structlog
from protean.fields import Identifier, Integer, String, Text

from marketplace.catalogue.port import CatalogPort
from marketplace.checkout.stages import StageRunner
from marketplace.config import Settings
from marketplace.coupons.port import CouponService
from marketplace.domain import marketplace
from marketplace.errors import STALE_WRITE, ConflictError, MarketplaceError, UpstreamFailure, ValidationError
from marketplace.gateway.port import PaymentGateway, RefundOutcome
from marketplace.notifications.port import OrderNotifier
from marketplace.order.cancellation import CancellationService
from marketplace.order.order import AdminCancellationReason, Order, OrderStatus, PaymentStatus
from marketplace.order.refund import Refund, RefundStatus, RefundType
from marketplace.order.stock import reserve_stock, restore_stock, should_restore_stock
from marketplace.projections.cart_view import ViewCache, orders_key
from marketplace.repository import OrderRepository, RefundRepository

logger = structlog.get_logger(__name__)

SYSTEM_ACTOR = "system"
INCOMPLETE_ORDER_REASON = "incomplete_order"
MAX_WRITE_ATTEMPTS = 3

_REFUNDABLE_PAYMENT_STATUSES = {PaymentStatus.PAID, PaymentStatus.PARTIAL}
_OUTSTANDING_REFUND_STATUSES = {RefundStatus.INITIATED, RefundStatus.PROCESSING}
_RECONCILABLE_STATUSES = {
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PROCESSING,
    OrderStatus.READY_FOR_DELIVERY,
    OrderStatus.OUT_FOR_DELIVERY,
}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@marketplace.command(part_of="Order")
class AdminUpdateStatus:
    order_id = Identifier(required=True)
    status = String(required=True, choices=OrderStatus)
    actor_id = Identifier(required=True)
    notes = Text()
    reason = String(choices=AdminCancellationReason)


@marketplace.command(part_of="Order")
class AdminCancelOrder:
    order_id = Identifier(required=True)
    reason = String(choices=AdminCancellationReason, default=AdminCancellationReason.OTHER.value)
    notes = Text()
    actor_id = Identifier(required=True)


@marketplace.command(part_of="Order")
class ReactivateOrder:
    order_id = Identifier(required=True)
    actor_id = Identifier(required=True)
    notes = Text()


@marketplace.command(part_of="Refund")
class InitiateRefund:
    order_id = Identifier(required=True)
    refund_type = String(required=True, choices=RefundType)
    amount = Integer(min_value=1)
    reason = Text()
    actor_id = Identifier(required=True)


@dataclass
class ReconcileResult:
    checked: int = 0
    cancelled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class AdminOrderService:
    def __init__(
        self,
        orders: OrderRepository,
        refunds: RefundRepository,
        catalog: CatalogPort,
        coupons: CouponService,
        gateway: PaymentGateway,
        notifier: OrderNotifier,
        cache: ViewCache,
        stages: StageRunner,
        settings: Settings,
    ) -> None:
        self.orders = orders
        self.refunds = refunds
        self.catalog = catalog
        self.gateway = gateway
        self.notifier = notifier
        self.cache = cache
        self.stages = stages
        self.settings = settings
        self.cancellations = CancellationService(orders, catalog, coupons, notifier, cache, stages)

    def _save(self, order: Order) -> Order:
        self.stages.run("persist", self.orders.add, order)
        self.cache.invalidate(orders_key(order.customer_ref))
        return order

    def _notify_status(self, order: Order) -> None:
        self.stages.attempt(
            "notify",
            self.notifier.order_status_changed,
            order.order_number,
            order.customer_ref,
            order.status,
            order.notes,
        )

    def _update_order(self, order_id, mutate: Callable[[Order], None]) -> Order:
        """Apply ``mutate`` to a fresh copy of the order, retrying stale writes."""
        attempt = 0
        while True:
            attempt += 1
            order = self.orders.get(order_id)
            mutate(order)
            try:
                return self._save(order)
            except ConflictError as exc:
                if exc.code != STALE_WRITE or attempt == MAX_WRITE_ATTEMPTS:
                    raise
                logger.warning("Order changed concurrently, retrying", order_id=str(order_id), attempt=attempt)

    # -------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------
    def get_order(self, order_id) -> Order:
        return self.orders.get(order_id)

    def update_status(self, command: AdminUpdateStatus) -> Order:
        target = OrderStatus(command.status)
        if target is OrderStatus.CANCELLED_BY_ADMIN:
            return self.cancel_with_notes(
                AdminCancelOrder(
                    order_id=command.order_id,
                    reason=command.reason or AdminCancellationReason.OTHER.value,
                    notes=command.notes,
                    actor_id=command.actor_id,
                )
            )
        if target is OrderStatus.CANCELLED_BY_USER:
            raise ValidationError("Admins cancel orders as CANCELLED_BY_ADMIN", code="INVALID_TRANSITION")

        order = self.orders.get(command.order_id)
        previous = order.status
        order.transition_to(target, actor_id=command.actor_id, notes=command.notes)
        self._save(order)

        logger.info(
            "Order status updated",
            order_id=str(order.id),
            order_number=order.order_number,
            from_status=previous,
            to_status=order.status,
            actor_id=command.actor_id,
        )
        self._notify_status(order)
        return order

    def cancel_with_notes(self, command: AdminCancelOrder) -> Order:
        if not command.notes or not command.notes.strip():
            raise ValidationError("Cancellation notes are required", code="VALIDATION")

        order = self.orders.get(command.order_id)
        return self.cancellations.cancel(
            order,
            OrderStatus.CANCELLED_BY_ADMIN,
            command.reason,
            actor_id=command.actor_id,
            notes=command.notes.strip(),
        )

    def reactivate(self, command: ReactivateOrder) -> Order:
        """Restore a cancelled order and take its stock again if cancelling gave it back."""
        order = self.orders.get(command.order_id)
        restored = order.reactivate(actor_id=command.actor_id, notes=command.notes)

        reserved_here = False
        if should_restore_stock(order) and not order.stock_reserved:
            self.stages.run("reserve_stock", reserve_stock, self.catalog, order)
            reserved_here = True

        try:
            self._save(order)
        except MarketplaceError:
            if reserved_here:
                restore_stock(self.catalog, order)
            raise

        logger.info(
            "Order reactivated",
            order_id=str(order.id),
            order_number=order.order_number,
            status=restored.value,
            stock_reserved=order.stock_reserved,
            actor_id=command.actor_id,
        )
        self._notify_status(order)
        return order

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def initiate_refund(self, command: InitiateRefund) -> Refund:
        order = self.orders.get(command.order_id)
        if (
            PaymentStatus(order.payment_status) not in _REFUNDABLE_PAYMENT_STATUSES
            or not order.payment_confirmation_code
        ):
            raise ConflictError(
                f"Order {order.order_number} has no captured payment to refund",
                code="NOT_REFUNDABLE",
            )

        outstanding = sum(
            refund.amount
            for refund in self.refunds.for_order(order.id)
            if RefundStatus(refund.status) in _OUTSTANDING_REFUND_STATUSES
        )
        refund = Refund.initiate(
            order_ref=order.id,
            order_number=order.order_number,
            refund_type=RefundType(command.refund_type),
            amount=command.amount,
            refundable_amount=order.refundable_amount - outstanding,
            reason=command.reason,
            initiated_by=command.actor_id,
        )
        log = logger.bind(refund_id=str(refund.id), order_number=order.order_number, actor_id=command.actor_id)

        self.stages.run("persist_refund", self.refunds.add, refund)

        if refund.is_full:
            try:
                self._update_order(order.id, lambda current: current.record_refund_initiated(full=True))
            except MarketplaceError as exc:
                refund.fail("Order could not be updated")
                self.stages.attempt("persist_refund", self.refunds.add, refund)
                log.error("Refund voided, order write failed", code=exc.code, error=exc.message)
                raise

        log.info("Refund initiated", refund_type=refund.refund_type, amount=refund.amount)
        return refund

    def settle_refund(self, refund_id, actor_id) -> Refund:
        refund = self.refunds.get(refund_id)
        if refund.status == RefundStatus.COMPLETED.value:
            return refund

        order = self.orders.get(refund.order_ref)
        log = logger.bind(refund_id=str(refund.id), order_number=refund.order_number, actor_id=actor_id)

        if refund.status != RefundStatus.PROCESSING.value:
            refund.mark_processing()

        try:
            result = self.stages.run(
                "refund", self.gateway.refund, order.payment_confirmation_code, refund.amount, refund.reason
            )
        except UpstreamFailure as exc:
            refund.mark_processing(gateway_status="error")
            refund.failure_reason = exc.message
            self.stages.run("persist_refund", self.refunds.add, refund)
            log.warning("Refund left processing after gateway error", error=exc.message)
            return refund

        if result.outcome is RefundOutcome.COMPLETED:
            refund.complete(result.gateway_refund_id, result.gateway_status)
            self._update_order(order.id, lambda current: current.record_refund_settled(refund.amount))
        elif result.outcome is RefundOutcome.PENDING:
            refund.mark_processing(gateway_status=result.gateway_status)
        else:
            refund.fail(result.failure_reason, gateway_status=result.gateway_status)
            if refund.is_full:
                self._update_order(order.id, lambda current: current.record_refund_failed())

        self.stages.run("persist_refund", self.refunds.add, refund)
        log.info("Refund settled", status=refund.status, gateway_status=refund.gateway_status)
        return refund

    # -------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------
    def reconcile_incomplete_orders(
        self,
        as_of: datetime | None = None,
        grace_minutes: int | None = None,
    ) -> ReconcileResult:
        """Cancel live orders that have no items and are older than the grace period.

        ``Order.create`` never produces an item-less order, so this only finds
        orders written by another system or left half-persisted by a failed
        import. It is a guard, not part of the checkout flow.
        """
        as_of = as_of or datetime.now(UTC)
        grace = grace_minutes if grace_minutes is not None else self.settings.reconcile_grace_minutes
        cutoff = as_of - timedelta(minutes=grace)

        candidates = self.orders.older_than(cutoff, _RECONCILABLE_STATUSES)
        incomplete = [order for order in candidates if not order.items]
        logger.info("Reconciling incomplete orders", cutoff=cutoff.isoformat(), candidates=len(incomplete))

        result = ReconcileResult(checked=len(candidates))
        for order in incomplete:
            try:
                self.cancellations.cancel(
                    order,
                    OrderStatus.CANCELLED_BY_ADMIN,
                    INCOMPLETE_ORDER_REASON,
                    actor_id=SYSTEM_ACTOR,
                    notes="Order was never completed",
                    stage="reconcile",
                )
                result.cancelled.append(str(order.id))
            except MarketplaceError as exc:
                result.failed.append(str(order.id))
                logger.warning(
                    "Failed to cancel incomplete order",
                    order_id=str(order.id),
                    order_number=order.order_number,
                    error=exc.message,
                )
        return result
