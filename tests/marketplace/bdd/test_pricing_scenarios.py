"""BDD tests for line pricing, order totals and price snapshots."""

from pytest_bdd import given, parsers, scenarios, then, when

from marketplace.cart.cart import CartLine
from marketplace.catalogue.port import Discount, LineKind, Product
from marketplace.order.order import OrderItem
from marketplace.pricing.calculator import AppliedCoupon, compute_line_price, compute_order_totals

scenarios("features/pricing.feature")


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(
    parsers.cfparse("a product priced at {price:d} with an active {percentage:d}% discount"),
    target_fixture="product",
)
def _(price, percentage):
    return Product(
        ref="prod-mug",
        title="Coffee Mug",
        price=price,
        discount=Discount(percentage=percentage, is_active=True),
        total_stock=10,
    )


@given(parsers.cfparse("a basket whose items come to {subtotal:d}"), target_fixture="basket")
def _(subtotal):
    product = Product(ref="prod-x", title="Basket", price=subtotal, total_stock=1)
    return [compute_line_price(CartLine.new(LineKind.PRODUCT, "prod-x"), product)]


@given(parsers.cfparse("a {percentage:d}% coupon"), target_fixture="coupon")
def _(percentage):
    return AppliedCoupon(code="SCENARIO", percentage=percentage)


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@when(parsers.cfparse("{quantity:d} of the product are priced"), target_fixture="priced")
def _(product, quantity):
    return compute_line_price(CartLine.new(LineKind.PRODUCT, product.ref, quantity=quantity), product)


@when(parsers.cfparse("the basket is totalled with {shipping:d} shipping"), target_fixture="totals")
def _(basket, coupon, shipping):
    return compute_order_totals(basket, coupon, shipping_cost=shipping).totals


@when(parsers.cfparse('the mug is renamed "{title}" and repriced at {price:d}'))
def _(catalog, title, price):
    catalog.update_entry("prod-mug", title=title, price=price)


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse("the line subtotal is {amount:d}"))
def _(priced, amount):
    assert priced.line_subtotal == amount


@then(parsers.cfparse("the line discount is {amount:d}"))
def _(priced, amount):
    assert priced.line_discount == amount


@then(parsers.cfparse("the line total is {amount:d}"))
def _(priced, amount):
    assert priced.line_total == amount


@then(parsers.cfparse("the ordered item records a final unit price of {amount:d}"))
def _(priced, amount):
    item = OrderItem.from_priced_line(priced)
    assert item.final_price == amount
    assert item.line_total == priced.line_total


@then(parsers.cfparse("the coupon discount is {amount:d}"))
def _(totals, amount):
    assert totals.order_level_discount == amount


@then(parsers.cfparse("the order total is {amount:d}"))
def _(totals, amount):
    assert totals.total == amount
    assert totals.total == max(
        0,
        totals.subtotal_before_discount
        - totals.item_discount_total
        + totals.shipping_cost
        - totals.order_level_discount,
    )


@then(parsers.cfparse('the ordered mug is still "{title}" at {price:d}'))
def _(marketplace, order, title, price):
    item = marketplace.orders.get(order.id).items[0]
    assert item.name == title
    assert item.snapshot.title == title
    assert item.original_price == price


@then(parsers.cfparse("the order total is still {amount:d}"))
def _(marketplace, order, amount):
    stored = marketplace.orders.get(order.id)
    assert stored.totals.total == amount
    assert stored.items[0].line_total == amount
