"""Composition root — wires the marketplace domain to its collaborators.

``build_marketplace()`` takes the repositories from the initialized protean
domain and hands them, together with the external ports, to the
application services in one ``Marketplace`` container. Every collaborator
is passed in explicitly, so the app and each test build their own instance.
The domain must be initialized (``marketplace.init()``) before building.
"""

from dataclasses import dataclass

import structlog
from protean.domain import Domain

from marketplace.addresses import AddressBook, InMemoryAddressBook
from marketplace.admin.operations import AdminOrderService
from marketplace.admin.queries import OrderQueries
from marketplace.cart.cart import Cart
from marketplace.cart.management import CartHandler
from marketplace.catalogue import CatalogPort, InMemoryCatalog
from marketplace.checkout.lifecycle import OrderLifecycleController
from marketplace.checkout.stages import StageRunner
from marketplace.config import Settings
from marketplace.coupons import CouponService, InMemoryCoupons
from marketplace.domain import marketplace as marketplace_domain
from marketplace.gateway import PaymentGateway, build_gateway
from marketplace.notifications import FakeNotifier, OrderNotifier
from marketplace.order.numbering import OrderNumberGenerator
from marketplace.order.order import Order
from marketplace.order.payment import PaymentService
from marketplace.order.refund import Refund
from marketplace.projections.cart_view import CART_PREFIX, ViewCache
from marketplace.repository import CartRepository, OrderRepository, RefundRepository

logger = structlog.get_logger(__name__)


@dataclass
class Marketplace:
    domain: Domain
    settings: Settings
    catalog: CatalogPort
    gateway: PaymentGateway
    coupons: CouponService
    notifier: OrderNotifier
    addresses: AddressBook
    carts: CartRepository
    orders: OrderRepository
    refunds: RefundRepository
    cache: ViewCache
    stages: StageRunner
    numbering: OrderNumberGenerator
    cart_handler: CartHandler
    lifecycle: OrderLifecycleController
    payments: PaymentService
    admin: AdminOrderService
    admin_queries: OrderQueries

    def close(self) -> None:
        self.stages.shutdown()


def build_marketplace(
    settings: Settings | None = None,
    *,
    domain: Domain = marketplace_domain,
    catalog: CatalogPort | None = None,
    gateway: PaymentGateway | None = None,
    coupons: CouponService | None = None,
    notifier: OrderNotifier | None = None,
    addresses: AddressBook | None = None,
    cache: ViewCache | None = None,
) -> Marketplace:
    """Build a marketplace; ports that are not given get their in-memory adapter."""
    settings = settings or Settings.from_env()
    catalog = catalog or InMemoryCatalog()
    gateway = gateway or build_gateway(settings.payment_gateway_adapter)
    coupons = coupons or InMemoryCoupons()
    notifier = notifier or FakeNotifier()
    addresses = addresses or InMemoryAddressBook()
    cache = cache or ViewCache(ttl_seconds=settings.cart_view_ttl_seconds)

    carts = domain.repository_for(Cart)
    orders = domain.repository_for(Order)
    refunds = domain.repository_for(Refund)
    stages = StageRunner(domain, timeout=settings.stage_timeout_seconds, max_workers=settings.stage_workers)
    numbering = OrderNumberGenerator(prefix=settings.order_number_prefix, digits=settings.order_number_digits)

    # Cart views are priced from the catalog, so any catalog edit voids them
    catalog.on_change(lambda ref: cache.invalidate_prefix(CART_PREFIX))

    container = Marketplace(
        domain=domain,
        settings=settings,
        catalog=catalog,
        gateway=gateway,
        coupons=coupons,
        notifier=notifier,
        addresses=addresses,
        carts=carts,
        orders=orders,
        refunds=refunds,
        cache=cache,
        stages=stages,
        numbering=numbering,
        cart_handler=CartHandler(carts, catalog, coupons, cache, settings),
        lifecycle=OrderLifecycleController(
            orders, carts, catalog, addresses, coupons, notifier, cache, numbering, stages, settings
        ),
        payments=PaymentService(orders, catalog, gateway, notifier, cache, stages, settings),
        admin=AdminOrderService(orders, refunds, catalog, coupons, gateway, notifier, cache, stages, settings),
        admin_queries=OrderQueries(orders),
    )
    logger.info(
        "Marketplace initialized",
        env=settings.env,
        gateway=type(gateway).__name__,
        stage_timeout=settings.stage_timeout_seconds,
    )
    return container
