"""Repositories for the Cart, Order and Refund aggregates.

Each repository adds two things to protean's ``BaseRepository``: a
compare-and-set on the aggregate's ``version`` field, and the uniqueness
rules that span aggregates. Both run under one lock together with the write,
so two concurrent writers can never both succeed against the same state.
A stale write raises ``ExpectedVersionError``.

Query values are passed to the DAO as keyword filters; nothing is
interpolated into a query string.
"""

import threading

from protean.core.repository import BaseRepository
from protean.exceptions import ExpectedVersionError, ObjectNotFoundError

from marketplace.cart.cart import Cart
from marketplace.domain import marketplace
from marketplace.errors import ConflictError, NotFoundError
from marketplace.order.order import Order, OrderStatus
from marketplace.order.refund import Refund

PAGE_SIZE = 100


def each(query):
    """Yield every record of a DAO query, fetching one page at a time."""
    offset = 0
    while True:
        page = query.offset(offset).limit(PAGE_SIZE).all()
        yield from page.items
        offset += PAGE_SIZE
        if offset >= page.total:
            return


class _VersionedRepository(BaseRepository):
    _write_lock = threading.RLock()

    def get(self, identifier):
        try:
            return super().get(identifier)
        except ObjectNotFoundError:
            raise NotFoundError(self.meta_.part_of.__name__, str(identifier)) from None

    def add(self, aggregate):
        """Insert or update; bumps ``version`` on the passed aggregate."""
        with self._write_lock:
            try:
                current_version = self._dao.get(aggregate.id).version
            except ObjectNotFoundError:
                current_version = 0
            if aggregate.version != current_version:
                raise ExpectedVersionError(
                    f"Wrong expected version: {aggregate.version} (Aggregate: {self.meta_.part_of.__name__}"
                    f"({aggregate.id}), Version: {current_version})"
                )

            self._check_constraints(aggregate)

            aggregate.version = current_version + 1
            return super().add(aggregate)

    def _check_constraints(self, aggregate) -> None:
        """Hook for uniqueness rules, called under the write lock."""


@marketplace.repository(part_of=Cart)
class CartRepository(_VersionedRepository):
    def _check_constraints(self, cart: Cart) -> None:
        existing = self.find_by_customer(cart.customer_ref)
        if existing is not None and existing.id != cart.id:
            raise ConflictError(f"Customer {cart.customer_ref} already has a cart", code="CONFLICT")

    def find_by_customer(self, customer_ref) -> Cart | None:
        return self._dao.query.filter(customer_ref=str(customer_ref)).all().first


@marketplace.repository(part_of=Order)
class OrderRepository(_VersionedRepository):
    """Orders, with unique order numbers and at most one live pending order per customer."""

    def _check_constraints(self, order: Order) -> None:
        same_number = self.find_by_number(order.order_number)
        if same_number is not None and same_number.id != order.id:
            raise ConflictError(
                f"Order number {order.order_number} is already taken",
                code="ORDER_NUMBER_COLLISION",
            )
        if order.status == OrderStatus.PENDING_PAYMENT.value:
            other = next((o for o in self.pending_for_customer(order.customer_ref) if o.id != order.id), None)
            if other is not None:
                raise ConflictError(
                    "Another order is already awaiting payment",
                    code="DUPLICATE_PENDING_ORDER",
                    details={"pending_order_id": str(other.id)},
                )

    def find_by_number(self, order_number: str) -> Order | None:
        return self._dao.query.filter(order_number=order_number).all().first

    def pending_for_customer(self, customer_ref) -> list[Order]:
        return self._dao.query.filter(
            customer_ref=str(customer_ref),
            status=OrderStatus.PENDING_PAYMENT.value,
        ).all().items

    def find_for_customer(self, customer_ref) -> list[Order]:
        """All orders of a customer, newest first."""
        return list(each(self._dao.query.filter(customer_ref=str(customer_ref)).order_by("-order_date")))

    def older_than(self, cutoff, statuses) -> list[Order]:
        return list(
            each(
                self._dao.query.filter(
                    order_date__lt=cutoff,
                    status__in=[status.value for status in statuses],
                )
            )
        )

    def get_owned(self, order_id, customer_ref) -> Order:
        """Load an order owned by ``customer_ref``; anything else is NOT_FOUND."""
        try:
            order = self.get(order_id)
        except NotFoundError:
            raise NotFoundError("Order", str(order_id), message="Order not found or access denied") from None
        if str(order.customer_ref) != str(customer_ref):
            raise NotFoundError("Order", str(order_id), message="Order not found or access denied")
        return order


@marketplace.repository(part_of=Refund)
class RefundRepository(_VersionedRepository):
    def for_order(self, order_ref) -> list[Refund]:
        return list(each(self._dao.query.filter(order_ref=str(order_ref)).order_by("initiated_at")))
