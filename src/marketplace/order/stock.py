"""Stock movements for orders.

Stock is decremented when an order actually consumes inventory (COD orders
at creation, PESAPAL orders once paid) and restored on cancellation. Unpaid
PESAPAL orders never touch inventory, so cancelling one restores nothing.
``Order.stock_reserved`` records what really happened, so a reservation is
never applied or reversed twice.
"""

import structlog

from marketplace.catalogue.port import CatalogPort, LineKind
from marketplace.errors import InsufficientStockError, MarketplaceError
from marketplace.order.order import CAPTURED_PAYMENT_STATUSES, Order, OrderItem, PaymentMethod, PaymentStatus

logger = structlog.get_logger(__name__)


def should_restore_stock(order: Order) -> bool:
    """COD always restores; PESAPAL only when money was captured."""
    if order.payment_method == PaymentMethod.COD.value:
        return True
    if order.payment_method == PaymentMethod.PESAPAL.value:
        return PaymentStatus(order.payment_status) in CAPTURED_PAYMENT_STATUSES
    return True


def _movements(items: list[OrderItem]) -> list[tuple[str, str | None, int]]:
    return [
        (str(item.product_ref), item.variant_sku, item.quantity)
        for item in items
        if item.kind == LineKind.PRODUCT.value
    ]


def reserve_stock(catalog: CatalogPort, order: Order) -> None:
    """Decrement stock for every product item, all or nothing."""
    if order.stock_reserved:
        return

    applied: list[tuple[str, str | None, int]] = []
    try:
        for product_ref, variant_sku, quantity in _movements(order.items):
            catalog.adjust_stock(product_ref, variant_sku, -quantity)
            applied.append((product_ref, variant_sku, quantity))
    except InsufficientStockError:
        _compensate(catalog, applied, order.order_number)
        raise

    order.stock_reserved = True
    logger.info("Stock reserved", order_number=order.order_number, lines=len(applied))


def _compensate(catalog: CatalogPort, applied, order_number: str) -> None:
    for product_ref, variant_sku, quantity in reversed(applied):
        catalog.adjust_stock(product_ref, variant_sku, quantity)
    if applied:
        logger.warning("Stock reservation rolled back", order_number=order_number, lines=len(applied))


def release_reservation(order: Order) -> list[tuple[str, str | None, int]]:
    """Clear the reservation flag and return the movements to give back.

    Callers persist the order first and then hand the movements to
    ``return_stock``, so a failed write never restores stock.
    """
    if not should_restore_stock(order):
        logger.info(
            "Stock restoration skipped, payment not captured",
            order_number=order.order_number,
            payment_status=order.payment_status,
        )
        return []
    if not order.stock_reserved:
        logger.info("Stock restoration skipped, nothing reserved", order_number=order.order_number)
        return []

    order.stock_reserved = False
    return _movements(order.items)


def return_stock(catalog: CatalogPort, order_number: str, movements) -> None:
    """Increment stock for each movement; a failing line is logged and skipped."""
    for product_ref, variant_sku, quantity in movements:
        try:
            catalog.adjust_stock(product_ref, variant_sku, quantity)
        except MarketplaceError as exc:
            logger.error(
                "Stock restoration failed",
                order_number=order_number,
                product_ref=product_ref,
                variant_sku=variant_sku,
                quantity=quantity,
                error=str(exc),
            )
    if movements:
        logger.info("Stock restored", order_number=order_number, lines=len(movements))


def restore_stock(catalog: CatalogPort, order: Order) -> bool:
    movements = release_reservation(order)
    return_stock(catalog, order.order_number, movements)
    return bool(movements)


def check_availability(catalog: CatalogPort, lines) -> None:
    """Fail with INSUFFICIENT_STOCK if any product line asks for more than is on hand.

    ``lines`` are priced lines or order items; quantities for the same stock
    counter are summed.
    """
    wanted: dict[tuple[str, str | None], int] = {}
    for line in lines:
        if LineKind(line.kind) is LineKind.PRODUCT:
            key = (line.ref, line.variant_sku)
            wanted[key] = wanted.get(key, 0) + line.quantity

    for (product_ref, variant_sku), quantity in wanted.items():
        available = catalog.available_stock(product_ref, variant_sku)
        if quantity > available:
            raise InsufficientStockError(product_ref, variant_sku, quantity, available)
