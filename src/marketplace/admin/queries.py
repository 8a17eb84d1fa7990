"""Admin order queries — filtered listing and dashboard statistics.

Filter values are passed to the DAO as keyword lookups; nothing is
interpolated into a query string. The free-text search also looks at item
names, which live on a child entity, so it is applied to the filtered
orders after they are loaded.
"""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime

from marketplace.order.order import CANCELLED_STATUSES, Order, OrderStatus, PaymentMethod, PaymentStatus
from marketplace.repository import OrderRepository, each

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class OrderQuery:
    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    payment_method: PaymentMethod | None = None
    search: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = 20
    offset: int = 0

    def lookups(self) -> dict:
        lookups = {}
        if self.status is not None:
            lookups["status"] = self.status.value
        if self.payment_status is not None:
            lookups["payment_status"] = self.payment_status.value
        if self.payment_method is not None:
            lookups["payment_method"] = self.payment_method.value
        if self.date_from is not None:
            lookups["order_date__gte"] = self.date_from
        if self.date_to is not None:
            lookups["order_date__lte"] = self.date_to
        return lookups

    @property
    def term(self) -> str | None:
        return self.search.strip().lower() if self.search and self.search.strip() else None


def matches_search(order: Order, term: str) -> bool:
    """Case-insensitive substring match on order number, customer and item names."""
    values = [order.order_number, str(order.customer_ref), *(item.name for item in order.items)]
    return any(term in value.lower() for value in values if value)


@dataclass(frozen=True)
class OrderPage:
    orders: list[Order]
    total: int
    limit: int
    offset: int


@dataclass(frozen=True)
class OrderStats:
    total_orders: int
    by_status: dict[str, int]
    pending_payments: int
    failed_payments: int
    cancelled_orders: int
    total_revenue: int


class OrderQueries:
    def __init__(self, orders: OrderRepository) -> None:
        self.orders = orders

    def list_orders(self, query: OrderQuery) -> OrderPage:
        limit = max(1, min(query.limit, MAX_PAGE_SIZE))
        offset = max(0, query.offset)
        dao_query = self.orders._dao.query.filter(**query.lookups()).order_by("-order_date")

        if query.term is None:
            page = dao_query.offset(offset).limit(limit).all()
            return OrderPage(orders=list(page.items), total=page.total, limit=limit, offset=offset)

        found = [order for order in each(dao_query) if matches_search(order, query.term)]
        return OrderPage(orders=found[offset : offset + limit], total=len(found), limit=limit, offset=offset)

    def order_stats(self) -> OrderStats:
        orders = list(each(self.orders._dao.query))
        by_status = Counter(order.status for order in orders)
        return OrderStats(
            total_orders=len(orders),
            by_status={status.value: by_status.get(status.value, 0) for status in OrderStatus},
            pending_payments=sum(1 for order in orders if order.payment_status == PaymentStatus.PENDING.value),
            failed_payments=sum(1 for order in orders if order.payment_status == PaymentStatus.FAILED.value),
            cancelled_orders=sum(1 for order in orders if OrderStatus(order.status) in CANCELLED_STATUSES),
            total_revenue=sum(order.totals.total for order in orders if order.is_paid),
        )
