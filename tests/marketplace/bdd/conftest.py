"""Shared BDD fixtures and step definitions for orders."""

import pytest
from pytest_bdd import given, parsers, then, when

from marketplace.admin.operations import AdminCancelOrder, ReactivateOrder
from marketplace.catalogue.port import LineKind
from marketplace.errors import MarketplaceError
from marketplace.order.order import AdminCancellationReason, OrderStatus, PaymentMethod, PaymentStatus
from marketplace.order.payment import ProcessPayment

ADMIN = "admin-1"
MUGS = [(LineKind.PRODUCT, "prod-mug", None, 3)]


@pytest.fixture()
def error():
    """Holds the error raised by a When step, if any."""
    return {"exc": None}


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(parsers.cfparse("a {payment_method} order for 3 mugs"), target_fixture="order")
def _(place_order, payment_method):
    return place_order(PaymentMethod(payment_method), lines=MUGS)


@given(
    parsers.cfparse("a {payment_method} order for 3 mugs whose payment is {payment_status}"),
    target_fixture="order",
)
def _(marketplace, place_order, pay_order, payment_method, payment_status):
    order = place_order(PaymentMethod(payment_method), lines=MUGS)
    if order.payment_method != PaymentMethod.PESAPAL.value:
        return order
    if payment_status == PaymentStatus.PAID.value:
        return pay_order(order)
    if payment_status == PaymentStatus.PENDING.value:
        marketplace.payments.process_payment(ProcessPayment(customer_ref=order.customer_ref, order_id=str(order.id)))
    return marketplace.orders.get(order.id)


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@when("an admin cancels the order", target_fixture="order")
def _(marketplace, order, catalog):
    catalog.stock_adjustments.clear()
    return marketplace.admin.cancel_with_notes(
        AdminCancelOrder(
            order_id=str(order.id),
            reason=AdminCancellationReason.CUSTOMER_REQUEST.value,
            notes="Customer called to cancel",
            actor_id=ADMIN,
        )
    )


@when("an admin reactivates the order", target_fixture="order")
def _(marketplace, order, error):
    try:
        return marketplace.admin.reactivate(ReactivateOrder(order_id=str(order.id), actor_id=ADMIN))
    except MarketplaceError as exc:
        error["exc"] = exc
        return order


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the order status is "{status}"'))
def _(marketplace, order, status):
    assert marketplace.orders.get(order.id).status == OrderStatus(status).value


@then(parsers.cfparse('the order history reads "{statuses}"'))
def _(marketplace, order, statuses):
    history = [entry.status for entry in marketplace.orders.get(order.id).history]
    assert history == [status.strip() for status in statuses.split(",")]


@then("the action succeeds")
def _(error):
    assert error["exc"] is None, f"Unexpected error: {error['exc']!r}"


@then(parsers.cfparse('the action fails with "{code}"'))
def _(error, code):
    assert error["exc"] is not None, f"Expected {code} but nothing was raised"
    assert error["exc"].code == code


@then(parsers.cfparse('{count:d} mugs are in stock'))
def _(catalog, count):
    assert catalog.available_stock("prod-mug", None) == count
