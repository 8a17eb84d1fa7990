"""Order Lifecycle Controller — turns a customer's cart into an order.

Flow of ``create_order``:
    1. load_cart       → CART_EMPTY when there is nothing to order
    2. check_address   → the shipping address must belong to the customer
    3. fetch_catalog   → typed entries for every line (+ fetch_zone for delivery)
    4. price           → calculator, with the coupon quoted first
    5. check_stock     → every product line must be covered
    6. cancel_pending  → older PENDING_PAYMENT orders are superseded
    7. number / reserve_stock / persist
                       → retried with a fresh number on a collision;
                         reserved stock is given back if the write fails
    8. clear_cart, apply_coupon, notify
                       → best effort, the order stands regardless

Everything up to and including step 5 has no side effects, so a failure
there leaves the system untouched. Every stage is bounded by the stage
runner's timeout.
"""

import threading
import weakref
from dataclasses import dataclass

import structlog
from protean.fields import Identifier, String, Text

from marketplace.addresses.port import AddressBook
from marketplace.cart.cart import Cart
from marketplace.catalogue.port import CatalogEntry, CatalogPort, DeliveryZone
from marketplace.checkout.stages import StageRunner
from marketplace.config import Settings
from marketplace.coupons.port import CouponService
from marketplace.domain import marketplace
from marketplace.errors import (
    ConflictError,
    ForbiddenError,
    MarketplaceError,
    NotFoundError,
    StageTimeout,
    ValidationError,
)
from marketplace.notifications.port import OrderNotifier
from marketplace.order.cancellation import CancellationService
from marketplace.order.numbering import OrderNumberGenerator
from marketplace.order.order import (
    CustomerCancellationReason,
    Order,
    OrderStatus,
    PaymentMethod,
)
from marketplace.order.stock import check_availability, reserve_stock, restore_stock
from marketplace.pricing.calculator import (
    AppliedCoupon,
    DeliveryMethod,
    PricedLine,
    compute_line_price,
    compute_order_totals,
    compute_shipping_cost,
)
from marketplace.projections.cart_view import ViewCache, cart_key, orders_key
from marketplace.repository import CartRepository, OrderRepository

logger = structlog.get_logger(__name__)

SUPERSEDED_REASON = "superseded"

_CUSTOMER_CANCELLABLE = {OrderStatus.PROCESSING, OrderStatus.READY_FOR_DELIVERY}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------
@marketplace.command(part_of="Order")
class CreateOrder:
    customer_ref = Identifier(required=True)
    shipping_address_ref = Identifier(required=True)
    delivery_method = String(required=True, choices=DeliveryMethod)
    delivery_zone_ref = Identifier()
    payment_method = String(required=True, choices=PaymentMethod)
    coupon_code = String(max_length=100)


@marketplace.command(part_of="Order")
class CancelPendingOrder:
    customer_ref = Identifier(required=True)
    order_id = Identifier(required=True)


@marketplace.command(part_of="Order")
class CancelOrder:
    customer_ref = Identifier(required=True)
    order_id = Identifier(required=True)
    reason = String(required=True, choices=CustomerCancellationReason)
    notes = Text()


@marketplace.command(part_of="Order")
class UpdateOrderStatus:
    customer_ref = Identifier(required=True)
    order_id = Identifier(required=True)
    status = String(required=True, choices=OrderStatus)
    notes = Text()


@dataclass(frozen=True)
class OrderCreated:
    order_id: str
    order_number: str
    total: int
    requires_payment: bool


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------
class OrderLifecycleController:
    def __init__(
        self,
        orders: OrderRepository,
        carts: CartRepository,
        catalog: CatalogPort,
        addresses: AddressBook,
        coupons: CouponService,
        notifier: OrderNotifier,
        cache: ViewCache,
        numbering: OrderNumberGenerator,
        stages: StageRunner,
        settings: Settings,
    ) -> None:
        self.orders = orders
        self.carts = carts
        self.catalog = catalog
        self.addresses = addresses
        self.coupons = coupons
        self.notifier = notifier
        self.cache = cache
        self.numbering = numbering
        self.stages = stages
        self.settings = settings
        self.cancellations = CancellationService(orders, catalog, coupons, notifier, cache, stages)
        self._checkout_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # -------------------------------------------------------------------
    # Order creation
    # -------------------------------------------------------------------
    def _checkout_lock(self, customer_ref) -> threading.Lock:
        """One lock per customer, kept only while some checkout holds a reference to it."""
        key = str(customer_ref)
        with self._locks_guard:
            lock = self._checkout_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._checkout_locks[key] = lock
            return lock

    def create_order(self, command: CreateOrder) -> OrderCreated:
        """Checkouts of one customer run one at a time; the store constraints back this up."""
        with self._checkout_lock(command.customer_ref):
            return self._create_order(command)

    def _create_order(self, command: CreateOrder) -> OrderCreated:
        log = logger.bind(customer_ref=command.customer_ref)

        cart = self.stages.run("load_cart", self.carts.find_by_customer, command.customer_ref)
        if cart is None or cart.is_empty:
            raise ValidationError("Your cart is empty", code="CART_EMPTY", stage="load_cart")

        owns_address = self.stages.run(
            "check_address", self.addresses.owns, command.customer_ref, command.shipping_address_ref
        )
        if not owns_address:
            raise NotFoundError(
                "Address", command.shipping_address_ref, message="Shipping address not found"
            ).at_stage("check_address")

        refs = sorted({line.ref for line in cart.lines})
        entries = self.stages.run("fetch_catalog", self.catalog.fetch_entries, refs)
        zone = self._load_zone(command)

        priced = self._price_lines(cart, entries)
        applied = self._quote_coupon(command, priced)
        shipping_cost = compute_shipping_cost(
            DeliveryMethod(command.delivery_method),
            zone,
            default_fee=self.settings.default_delivery_fee,
            require_zone=True,
        )
        pricing = compute_order_totals(priced, applied, shipping_cost)
        if pricing.coupon_removed:
            log.info("Coupon dropped at pricing", coupon_code=command.coupon_code)

        self.stages.run("check_stock", check_availability, self.catalog, priced)

        self._supersede_pending_orders(command.customer_ref)

        order = self._persist_new_order(command, priced, pricing.totals)
        log = log.bind(order_id=str(order.id), order_number=order.order_number)

        self.stages.attempt("clear_cart", self._clear_cart, command.customer_ref)

        if order.totals.coupon_code:
            result = self.stages.attempt(
                "apply_coupon",
                self.coupons.apply_coupon,
                order.totals.coupon_code,
                str(order.id),
                order.totals.order_level_discount,
                command.customer_ref,
            )
            if result is not None and not result.success:
                log.warning("Coupon usage not recorded", reason=result.failure_reason)

        self.cache.invalidate(cart_key(command.customer_ref), orders_key(command.customer_ref))
        self.stages.attempt(
            "notify", self.notifier.order_created, order.order_number, order.customer_ref, order.totals.total
        )

        log.info(
            "Order created",
            total=order.totals.total,
            payment_method=order.payment_method,
            status=order.status,
        )
        return OrderCreated(
            order_id=str(order.id),
            order_number=order.order_number,
            total=order.totals.total,
            requires_payment=order.requires_payment,
        )

    def _load_zone(self, command: CreateOrder) -> DeliveryZone | None:
        if command.delivery_method != DeliveryMethod.LOCAL_DELIVERY.value:
            return None
        if not command.delivery_zone_ref:
            raise ValidationError(
                "A delivery zone is required for local delivery",
                code="DELIVERY_ZONE_REQUIRED",
                stage="fetch_zone",
            )
        zone = self.stages.run("fetch_zone", self.catalog.fetch_zone, command.delivery_zone_ref)
        if zone is None or not zone.is_active:
            raise NotFoundError(
                "DeliveryZone", command.delivery_zone_ref, message="Delivery zone not available"
            ).at_stage("fetch_zone")
        return zone

    def _price_lines(self, cart: Cart, entries: dict[str, CatalogEntry]) -> list[PricedLine]:
        priced = []
        for line in cart.lines:
            entry = entries.get(line.ref)
            if entry is None:
                raise NotFoundError(line.kind.title(), line.ref).at_stage("price")
            try:
                priced.append(compute_line_price(line, entry))
            except MarketplaceError as exc:
                raise exc.at_stage("price")
        return priced

    def _quote_coupon(self, command: CreateOrder, priced: list[PricedLine]) -> AppliedCoupon | None:
        if not command.coupon_code:
            return None

        subtotal = sum(line.line_total for line in priced)
        quote = self.stages.run(
            "quote_coupon",
            self.coupons.quote,
            command.coupon_code,
            command.customer_ref,
            subtotal,
            [line.ref for line in priced],
        )
        if not quote.valid:
            raise ValidationError(
                quote.error or f"Coupon {command.coupon_code} cannot be applied",
                code="VALIDATION",
                stage="quote_coupon",
                details={"coupon_code": command.coupon_code},
            )
        return AppliedCoupon(
            code=quote.code,
            percentage=quote.percentage,
            minimum_order_amount=quote.minimum_order_amount,
        )

    def _supersede_pending_orders(self, customer_ref: str) -> None:
        pending = self.stages.run("cancel_pending", self.orders.pending_for_customer, customer_ref)
        for order in pending:
            self.cancellations.cancel(
                order,
                OrderStatus.CANCELLED_BY_USER,
                SUPERSEDED_REASON,
                actor_id=customer_ref,
                notes="Replaced by a newer order",
                stage="cancel_pending",
            )

    def _persist_new_order(self, command: CreateOrder, priced, totals) -> Order:
        attempts = self.settings.order_number_attempts
        for attempt in range(1, attempts + 1):
            order = Order.create(
                customer_ref=command.customer_ref,
                order_number=self.numbering.next(),
                priced_lines=priced,
                totals=totals,
                payment_method=PaymentMethod(command.payment_method),
                delivery_method=DeliveryMethod(command.delivery_method),
                shipping_address_ref=command.shipping_address_ref,
                delivery_zone_ref=command.delivery_zone_ref,
                currency=self.settings.currency,
                actor_id=command.customer_ref,
            )
            self._settle_at_creation(order)
            if order.status == OrderStatus.PROCESSING.value:
                self.stages.run("reserve_stock", reserve_stock, self.catalog, order)

            try:
                self.stages.run("persist", self.orders.add, order)
                return order
            except StageTimeout:
                # The write may still land, so the reservation stays.
                logger.error(
                    "Order persist timed out, stock left reserved",
                    order_number=order.order_number,
                    stock_reserved=order.stock_reserved,
                )
                raise
            except ConflictError as exc:
                self._release(order)
                if exc.code == "ORDER_NUMBER_COLLISION" and attempt < attempts:
                    logger.warning("Order number collision, retrying", order_number=order.order_number, attempt=attempt)
                    continue
                raise
            except MarketplaceError:
                self._release(order)
                raise

        raise ConflictError("Could not allocate a unique order number", code="ORDER_NUMBER_COLLISION")

    def _settle_at_creation(self, order: Order) -> None:
        """COD orders start processing at once, as do PESAPAL orders with nothing to pay."""
        if order.payment_method == PaymentMethod.COD.value:
            order.transition_to(OrderStatus.PROCESSING, notes="Cash on delivery order confirmed")
        elif order.totals.total == 0:
            order.record_payment_confirmed(None, None)
            order.transition_to(OrderStatus.PROCESSING, notes="No payment required")

    def _release(self, order: Order) -> None:
        if order.stock_reserved:
            restore_stock(self.catalog, order)

    def _clear_cart(self, customer_ref: str) -> None:
        cart = self.carts.find_by_customer(customer_ref)
        if cart is not None and not cart.is_empty:
            cart.clear()
            self.carts.add(cart)

    # -------------------------------------------------------------------
    # Customer order operations
    # -------------------------------------------------------------------
    def cancel_pending(self, command: CancelPendingOrder) -> Order:
        """Cancel an order that is still awaiting payment; it is never deleted."""
        order = self.orders.get_owned(command.order_id, command.customer_ref)
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            raise ConflictError(
                f"Order is {order.status}, not awaiting payment",
                code="INVALID_TRANSITION",
            )
        return self.cancellations.cancel(
            order,
            OrderStatus.CANCELLED_BY_USER,
            "checkout_abandoned",
            actor_id=command.customer_ref,
            notes="Checkout abandoned by customer",
        )

    def cancel_order(self, command: CancelOrder) -> Order:
        order = self.orders.get_owned(command.order_id, command.customer_ref)
        if order.is_cancelled:
            raise ConflictError("Order is already cancelled", code="ORDER_ALREADY_CANCELLED")
        if OrderStatus(order.status) not in _CUSTOMER_CANCELLABLE:
            raise ConflictError(
                f"Orders that are {order.status} cannot be cancelled by the customer",
                code="INVALID_TRANSITION",
            )
        return self.cancellations.cancel(
            order,
            OrderStatus.CANCELLED_BY_USER,
            command.reason,
            actor_id=command.customer_ref,
            notes=command.notes,
        )

    def update_status(self, command: UpdateOrderStatus) -> Order:
        """Customers may only move their own order to CANCELLED_BY_USER."""
        if command.status != OrderStatus.CANCELLED_BY_USER.value:
            raise ForbiddenError("Customers can only cancel their orders")

        order = self.orders.get_owned(command.order_id, command.customer_ref)
        if order.status == OrderStatus.PENDING_PAYMENT.value:
            return self.cancel_pending(CancelPendingOrder(customer_ref=command.customer_ref, order_id=str(order.id)))
        return self.cancel_order(
            CancelOrder(
                customer_ref=command.customer_ref,
                order_id=str(order.id),
                reason=CustomerCancellationReason.OTHER.value,
                notes=command.notes,
            )
        )

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def get_order(self, order_id, customer_ref) -> Order:
        return self.orders.get_owned(order_id, customer_ref)

    def list_orders(self, customer_ref) -> list[Order]:
        key = orders_key(customer_ref)
        orders, token = self.cache.lookup(key)
        if orders is None:
            orders = self.orders.find_for_customer(customer_ref)
            self.cache.put(key, orders, token)
        return orders
