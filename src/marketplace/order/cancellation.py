"""Order cancellation — shared by the customer and admin flows.

The cancelled order and its released reservation are written first; stock
goes back to the catalog only after that write commits, so a rejected write
never restores stock. Coupon usage is reverted for orders that were still
awaiting payment.
"""

import structlog

from marketplace.catalogue.port import CatalogPort
from marketplace.checkout.stages import StageRunner
from marketplace.coupons.port import CouponService
from marketplace.notifications.port import OrderNotifier
from marketplace.order.order import Order, OrderStatus
from marketplace.order.stock import release_reservation, return_stock
from marketplace.projections.cart_view import ViewCache, orders_key
from marketplace.repository import OrderRepository

logger = structlog.get_logger(__name__)


class CancellationService:
    def __init__(
        self,
        orders: OrderRepository,
        catalog: CatalogPort,
        coupons: CouponService,
        notifier: OrderNotifier,
        cache: ViewCache,
        stages: StageRunner,
    ) -> None:
        self.orders = orders
        self.catalog = catalog
        self.coupons = coupons
        self.notifier = notifier
        self.cache = cache
        self.stages = stages

    def cancel(
        self,
        order: Order,
        cancelled_status: OrderStatus,
        reason: str,
        actor_id,
        notes: str | None = None,
        stage: str = "cancel",
    ) -> Order:
        was_pending = order.status == OrderStatus.PENDING_PAYMENT.value

        order.cancel(cancelled_status, reason, actor_id=actor_id, notes=notes)
        movements = release_reservation(order)
        self.stages.run(stage, self.orders.add, order)

        return_stock(self.catalog, order.order_number, movements)
        if was_pending and order.totals.coupon_code:
            self.stages.attempt("revert_coupon", self.coupons.revert_usage, order.totals.coupon_code, str(order.id))

        self.cache.invalidate(orders_key(order.customer_ref))
        logger.info(
            "Order cancelled",
            order_id=str(order.id),
            order_number=order.order_number,
            status=order.status,
            reason=reason,
            stock_restored=bool(movements),
        )

        cancelled_by = "customer" if cancelled_status is OrderStatus.CANCELLED_BY_USER else "admin"
        result = self.stages.attempt(
            "notify",
            self.notifier.order_cancelled,
            order.order_number,
            order.customer_ref,
            reason,
            cancelled_by,
        )
        if result is not None and result.get("status") != "sent":
            logger.warning("Cancellation notice not sent", order_number=order.order_number, error=result.get("error"))
        return order
