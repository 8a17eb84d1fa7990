import pytest
from protean.integrations.pytest import DomainFixture

from marketplace.addresses import InMemoryAddressBook
from marketplace.application import build_marketplace
from marketplace.cart.management import AddToCart
from marketplace.catalogue import InMemoryCatalog
from marketplace.catalogue.port import LineKind
from marketplace.checkout.lifecycle import CreateOrder
from marketplace.config import Settings
from marketplace.coupons import Coupon, InMemoryCoupons
from marketplace.gateway import FakeGateway
from marketplace.gateway.port import NotificationStatus, PaymentNotification
from marketplace.notifications import FakeNotifier
from marketplace.order.order import PaymentMethod
from marketplace.order.payment import ProcessPayment
from marketplace.pricing.calculator import DeliveryMethod

CUSTOMER = "cust-1"
OTHER_CUSTOMER = "cust-2"
ADMIN = "admin-1"
ADDRESS = "addr-1"
OTHER_ADDRESS = "addr-2"


@pytest.fixture(scope="session")
def marketplace_bed():
    from marketplace.domain import marketplace

    bed = DomainFixture(marketplace)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(marketplace_bed):
    with marketplace_bed.domain_context():
        yield

        from protean import current_domain

        for _, provider in current_domain.providers.items():
            provider._data_reset()


@pytest.fixture()
def settings():
    return Settings(env="test", stage_timeout_seconds=2.0, stage_workers=4)


@pytest.fixture()
def catalog():
    catalog = InMemoryCatalog()
    catalog.add_product(
        "prod-mug",
        "Coffee Mug",
        10000,
        discount={"percentage": 10, "is_active": True, "title": "Launch offer"},
        total_stock=20,
    )
    catalog.add_product(
        "prod-shirt",
        "T-Shirt",
        25000,
        variants=[
            {"sku": "SHIRT-S", "price": 25000, "stock": 5, "attributes": {"size": "S"}},
            {"sku": "SHIRT-L", "price": 27000, "stock": 3, "attributes": {"size": "L"}},
        ],
    )
    catalog.add_product(
        "prod-bag",
        "Tote Bag",
        8000,
        discount={"percentage": 50, "is_active": False},
        total_stock=2,
    )
    catalog.add_course(
        "course-py",
        "Python Basics",
        150000,
        duration="6 weeks",
        skill_level="beginner",
    )
    catalog.add_course("course-free", "Community Meetup", 0)
    catalog.add_zone("zone-kla", "Kampala", 5000)
    catalog.add_zone("zone-closed", "Closed Zone", 7000, is_active=False)
    return catalog


@pytest.fixture()
def addresses():
    book = InMemoryAddressBook()
    book.add(CUSTOMER, ADDRESS)
    book.add(OTHER_CUSTOMER, OTHER_ADDRESS)
    return book


@pytest.fixture()
def coupons():
    service = InMemoryCoupons()
    service.add(Coupon(code="SAVE10", percentage=10, title="Ten off"))
    service.add(Coupon(code="BIG50", percentage=50, minimum_order_amount=100000))
    return service


@pytest.fixture()
def gateway():
    return FakeGateway()


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def marketplace(settings, catalog, addresses, coupons, gateway, notifier):
    instance = build_marketplace(
        settings,
        catalog=catalog,
        gateway=gateway,
        coupons=coupons,
        notifier=notifier,
        addresses=addresses,
    )
    yield instance
    instance.close()


@pytest.fixture()
def fill_cart(marketplace):
    """Add ``(kind, ref, variant_sku, quantity)`` lines to a customer's cart."""

    def _fill(*lines, customer_ref=CUSTOMER):
        for kind, ref, variant_sku, quantity in lines:
            marketplace.cart_handler.add_to_cart(
                AddToCart(
                    customer_ref=customer_ref,
                    kind=kind.value,
                    ref=ref,
                    variant_sku=variant_sku,
                    quantity=quantity,
                )
            )

    return _fill


@pytest.fixture()
def place_order(marketplace, fill_cart):
    """Fill the cart with three mugs (unless lines are given) and check out."""

    def _place(
        payment_method=PaymentMethod.COD,
        lines=None,
        customer_ref=CUSTOMER,
        address=ADDRESS,
        delivery_method=DeliveryMethod.PICKUP,
        delivery_zone_ref=None,
        coupon_code=None,
    ):
        fill_cart(*(lines or [(LineKind.PRODUCT, "prod-mug", None, 3)]), customer_ref=customer_ref)
        created = marketplace.lifecycle.create_order(
            CreateOrder(
                customer_ref=customer_ref,
                shipping_address_ref=address,
                delivery_method=delivery_method.value,
                delivery_zone_ref=delivery_zone_ref,
                payment_method=payment_method.value,
                coupon_code=coupon_code,
            )
        )
        return marketplace.orders.get(created.order_id)

    return _place


@pytest.fixture()
def pay_order(marketplace):
    """Submit a PESAPAL order to the gateway and confirm it by notification."""

    def _pay(order, confirmation_code="CONF-001"):
        redirect = marketplace.payments.process_payment(
            ProcessPayment(customer_ref=order.customer_ref, order_id=str(order.id))
        )
        marketplace.payments.handle_notification(
            PaymentNotification(
                tracking_id=redirect.tracking_id,
                merchant_reference=order.order_number,
                status=NotificationStatus.COMPLETED,
                confirmation_code=confirmation_code,
            )
        )
        return marketplace.orders.get(order.id)

    return _pay
