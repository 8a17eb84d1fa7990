"""Order payment — gateway submission and asynchronous notifications.

Flow:
    1. process_payment  → callback registered, payment submitted,
                          payment status NOT_INITIATED/FAILED → PENDING
    2. gateway notifies → COMPLETED: PAID, stock reserved,
                          PENDING_PAYMENT → PROCESSING
                          REVERSED:  PAID → REFUNDED
                          otherwise: FAILED with the gateway's reason

Notifications can arrive more than once and race with admin writes. A
repeated notification is a no-op, and a stale write is retried on a fresh
copy of the order.
"""

from dataclasses import dataclass

import structlog
from protean.fields import Identifier

from marketplace.catalogue.port import CatalogPort
from marketplace.checkout.stages import StageRunner
from marketplace.config import Settings
from marketplace.domain import marketplace
from marketplace.errors import (
    STALE_WRITE,
    ConflictError,
    MarketplaceError,
    NotFoundError,
    UpstreamFailure,
    ValidationError,
)
from marketplace.gateway.port import NotificationStatus, PaymentGateway, PaymentNotification, PaymentRequest
from marketplace.notifications.port import OrderNotifier
from marketplace.order.order import CAPTURED_PAYMENT_STATUSES, Order, OrderStatus, PaymentMethod, PaymentStatus
from marketplace.order.stock import reserve_stock, restore_stock
from marketplace.projections.cart_view import ViewCache, orders_key
from marketplace.repository import OrderRepository

logger = structlog.get_logger(__name__)

MAX_NOTIFICATION_ATTEMPTS = 3


@marketplace.command(part_of="Order")
class ProcessPayment:
    customer_ref = Identifier(required=True)
    order_id = Identifier(required=True)


@dataclass(frozen=True)
class PaymentRedirect:
    order_id: str
    order_number: str
    redirect_url: str | None
    tracking_id: str


@dataclass(frozen=True)
class NotificationResult:
    order_id: str
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    changed: bool


class PaymentService:
    def __init__(
        self,
        orders: OrderRepository,
        catalog: CatalogPort,
        gateway: PaymentGateway,
        notifier: OrderNotifier,
        cache: ViewCache,
        stages: StageRunner,
        settings: Settings,
    ) -> None:
        self.orders = orders
        self.catalog = catalog
        self.gateway = gateway
        self.notifier = notifier
        self.cache = cache
        self.stages = stages
        self.settings = settings

    # -------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------
    def process_payment(self, command: ProcessPayment) -> PaymentRedirect:
        order = self.orders.get_owned(command.order_id, command.customer_ref)
        if order.payment_method != PaymentMethod.PESAPAL.value:
            raise ValidationError("Only PESAPAL orders are paid online", code="VALIDATION")
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise ConflictError(f"Order is {order.status}, not awaiting payment", code="INVALID_TRANSITION")
        if not order.requires_payment:
            raise ConflictError("Order does not require payment", code="CONFLICT")

        notification_id = self.stages.run(
            "register_callback", self.gateway.register_callback, self.settings.payment_callback_url
        )
        request = PaymentRequest(
            order_id=str(order.id),
            order_number=order.order_number,
            amount=order.totals.total,
            currency=order.currency,
            description=f"Payment for order {order.order_number}",
            callback_url=self.settings.payment_callback_url,
            notification_id=notification_id,
            customer_ref=str(order.customer_ref),
        )
        result = self.stages.run("submit_payment", self.gateway.submit_payment, request)
        if not result.success or not result.tracking_id:
            logger.warning("Payment submission rejected", order_number=order.order_number, reason=result.failure_reason)
            raise UpstreamFailure(
                result.failure_reason or "The payment provider rejected the request",
                code="UPSTREAM_FAILURE",
                stage="submit_payment",
            )

        order.record_payment_submitted(result.tracking_id)
        self.stages.run("persist", self.orders.add, order)
        self.cache.invalidate(orders_key(order.customer_ref))

        logger.info(
            "Payment submitted",
            order_id=str(order.id),
            order_number=order.order_number,
            tracking_id=result.tracking_id,
            amount=order.totals.total,
        )
        return PaymentRedirect(
            order_id=str(order.id),
            order_number=order.order_number,
            redirect_url=result.redirect_url,
            tracking_id=result.tracking_id,
        )

    # -------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------
    def handle_notification(self, notification: PaymentNotification) -> NotificationResult:
        attempt = 0
        while True:
            attempt += 1
            order = self.orders.find_by_number(notification.merchant_reference)
            if order is None:
                raise NotFoundError("Order", notification.merchant_reference)
            try:
                return self._apply(order, notification)
            except ConflictError as exc:
                if exc.code != STALE_WRITE or attempt == MAX_NOTIFICATION_ATTEMPTS:
                    raise
                logger.warning(
                    "Order changed concurrently, retrying notification",
                    order_number=order.order_number,
                    attempt=attempt,
                )

    def _apply(self, order: Order, notification: PaymentNotification) -> NotificationResult:
        log = logger.bind(
            order_number=order.order_number,
            tracking_id=notification.tracking_id,
            notification_status=notification.status.value,
        )
        previous_status = order.status

        if notification.status is NotificationStatus.COMPLETED:
            changed = self._confirm(order, notification, log)
        elif notification.status is NotificationStatus.REVERSED:
            if order.payment_status == PaymentStatus.REFUNDED.value:
                changed = False
            else:
                order.record_payment_reversed()
                changed = True
        elif PaymentStatus(order.payment_status) in CAPTURED_PAYMENT_STATUSES:
            log.warning("Failure notice for a captured payment ignored", payment_status=order.payment_status)
            changed = False
        elif (
            order.payment_status == PaymentStatus.FAILED.value
            and order.payment_failure_reason == _failure_reason(notification)
        ):
            changed = False
        else:
            order.record_payment_failed(_failure_reason(notification))
            changed = True

        if not changed:
            log.info("Payment notification already applied")
            return _result(order, changed=False)

        try:
            self.stages.run("persist", self.orders.add, order)
        except MarketplaceError:
            if order.stock_reserved and previous_status == OrderStatus.PENDING_PAYMENT.value:
                restore_stock(self.catalog, order)
            raise

        self.cache.invalidate(orders_key(order.customer_ref))
        log.info(
            "Payment notification applied",
            payment_status=order.payment_status,
            status=order.status,
            confirmation_code=order.payment_confirmation_code,
        )

        if order.status != previous_status:
            self.stages.attempt(
                "notify",
                self.notifier.order_status_changed,
                order.order_number,
                order.customer_ref,
                order.status,
                order.notes,
            )
        return _result(order, changed=True)

    def _confirm(self, order: Order, notification: PaymentNotification, log) -> bool:
        if PaymentStatus(order.payment_status) in CAPTURED_PAYMENT_STATUSES:
            if order.transaction_id != notification.tracking_id:
                log.warning("Second payment reported for an order already paid", transaction_id=order.transaction_id)
            return False

        order.record_payment_confirmed(notification.tracking_id, notification.confirmation_code)

        if order.is_cancelled:
            log.warning("Payment received for a cancelled order", status=order.status)
            return True

        try:
            self.stages.run("reserve_stock", reserve_stock, self.catalog, order)
        except MarketplaceError as exc:
            log.error("Stock could not be reserved for a paid order", code=exc.code, error=exc.message)

        if order.status == OrderStatus.PENDING_PAYMENT.value:
            order.transition_to(OrderStatus.PROCESSING, notes="Payment confirmed")
        return True


def _result(order: Order, changed: bool) -> NotificationResult:
    return NotificationResult(
        order_id=str(order.id),
        order_number=order.order_number,
        status=OrderStatus(order.status),
        payment_status=PaymentStatus(order.payment_status),
        changed=changed,
    )


def _failure_reason(notification: PaymentNotification) -> str:
    return notification.description or notification.status.value
