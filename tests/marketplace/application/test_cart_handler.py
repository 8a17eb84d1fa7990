"""Tests for cart commands, the cart view and quotes."""

import json
import threading

import pytest

from marketplace.application import build_marketplace
from marketplace.cart.cart import MAX_SYNC_TOKENS
from marketplace.cart.management import (
    AddToCart,
    ClearCart,
    QuoteCart,
    RemoveCartItem,
    SyncCart,
    UpdateCartItem,
)
from marketplace.catalogue import InMemoryCatalog
from marketplace.catalogue.port import LineKind
from marketplace.checkout.lifecycle import CreateOrder
from marketplace.errors import InsufficientStockError, NotFoundError, ValidationError
from marketplace.order.order import PaymentMethod
from marketplace.pricing.calculator import DeliveryMethod
from marketplace.projections.cart_view import ViewCache, cart_key

CUSTOMER = "cust-1"


class RecordingCache(ViewCache):
    """View cache that remembers which keys were invalidated."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.invalidations: list[str] = []

    def invalidate(self, *keys: str) -> None:
        self.invalidations.extend(keys)
        super().invalidate(*keys)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class SlowReaderCatalog(InMemoryCatalog):
    """Holds catalog reads made on the ``cart-reader`` thread until released."""

    def __init__(self) -> None:
        super().__init__()
        self.reading = threading.Event()
        self.release = threading.Event()

    def fetch_entries(self, refs):
        if threading.current_thread().name == "cart-reader":
            self.reading.set()
            self.release.wait(timeout=5)
        return super().fetch_entries(refs)


def _add(marketplace, ref, quantity=1, kind=LineKind.PRODUCT, variant_sku=None, customer_ref=CUSTOMER):
    return marketplace.cart_handler.add_to_cart(
        AddToCart(customer_ref=customer_ref, kind=kind.value, ref=ref, variant_sku=variant_sku, quantity=quantity)
    )


def _sync(marketplace, lines, sync_token=None):
    return marketplace.cart_handler.sync_cart(
        SyncCart(customer_ref=CUSTOMER, lines=json.dumps(lines), sync_token=sync_token)
    )


class TestAddToCart:
    def test_creates_cart_on_first_use(self, marketplace):
        cart = _add(marketplace, "prod-mug", 2)
        assert cart.version == 1
        assert marketplace.carts.find_by_customer(CUSTOMER).item_count == 2

    def test_same_product_is_merged(self, marketplace):
        _add(marketplace, "prod-mug", 2)
        cart = _add(marketplace, "prod-mug", 3)
        assert len(cart.lines) == 1
        assert cart.lines[0].quantity == 5

    def test_unknown_product(self, marketplace):
        with pytest.raises(NotFoundError):
            _add(marketplace, "prod-missing")

    def test_course_ref_as_product(self, marketplace):
        with pytest.raises(NotFoundError):
            _add(marketplace, "course-py")

    def test_variant_required(self, marketplace):
        with pytest.raises(NotFoundError) as exc:
            _add(marketplace, "prod-shirt")
        assert exc.value.code == "VARIANT_NOT_FOUND"

    def test_stock_covers_merged_quantity(self, marketplace):
        _add(marketplace, "prod-shirt", 2, variant_sku="SHIRT-L")
        with pytest.raises(InsufficientStockError):
            _add(marketplace, "prod-shirt", 2, variant_sku="SHIRT-L")
        assert marketplace.carts.find_by_customer(CUSTOMER).item_count == 2

    def test_courses_are_not_stock_checked(self, marketplace):
        cart = _add(marketplace, "course-py", 3, kind=LineKind.COURSE)
        assert cart.item_count == 3


class TestUpdateAndRemove:
    def test_update_quantity(self, marketplace):
        line = _add(marketplace, "prod-mug", 1).lines[0]
        cart = marketplace.cart_handler.update_cart_item(
            UpdateCartItem(customer_ref=CUSTOMER, line_id=str(line.id), quantity=4)
        )
        assert cart.lines[0].quantity == 4

    def test_update_to_zero_removes(self, marketplace):
        line = _add(marketplace, "prod-mug", 1).lines[0]
        cart = marketplace.cart_handler.update_cart_item(
            UpdateCartItem(customer_ref=CUSTOMER, line_id=str(line.id), quantity=0)
        )
        assert cart.is_empty

    def test_negative_quantity(self, marketplace):
        cart = _add(marketplace, "prod-mug", 1)
        with pytest.raises(ValidationError) as exc:
            cart.update_quantity(cart.lines[0].id, -2)
        assert exc.value.code == "INVALID_QUANTITY"

    def test_update_beyond_stock(self, marketplace):
        line = _add(marketplace, "prod-bag", 1).lines[0]
        with pytest.raises(InsufficientStockError):
            marketplace.cart_handler.update_cart_item(
                UpdateCartItem(customer_ref=CUSTOMER, line_id=str(line.id), quantity=3)
            )

    def test_change_variant(self, marketplace):
        line = _add(marketplace, "prod-shirt", 1, variant_sku="SHIRT-S").lines[0]
        cart = marketplace.cart_handler.update_cart_item(
            UpdateCartItem(customer_ref=CUSTOMER, line_id=str(line.id), variant_sku="SHIRT-L")
        )
        assert cart.lines[0].variant_sku == "SHIRT-L"

    def test_change_to_unknown_variant(self, marketplace):
        line = _add(marketplace, "prod-shirt", 1, variant_sku="SHIRT-S").lines[0]
        with pytest.raises(NotFoundError):
            marketplace.cart_handler.update_cart_item(
                UpdateCartItem(customer_ref=CUSTOMER, line_id=str(line.id), variant_sku="SHIRT-XXL")
            )

    def test_remove_and_clear(self, marketplace):
        line = _add(marketplace, "prod-mug").lines[0]
        _add(marketplace, "course-py", kind=LineKind.COURSE)

        cart = marketplace.cart_handler.remove_cart_item(
            RemoveCartItem(customer_ref=CUSTOMER, line_id=str(line.id))
        )
        assert [line.ref for line in cart.lines] == ["course-py"]

        cart = marketplace.cart_handler.clear_cart(ClearCart(customer_ref=CUSTOMER))
        assert cart.is_empty


class TestSyncCart:
    def test_merges_guest_lines(self, marketplace):
        _add(marketplace, "prod-mug", 1)

        cart = _sync(
            marketplace,
            [
                {"kind": "PRODUCT", "ref": "prod-mug", "quantity": 2},
                {"kind": "COURSE", "ref": "course-py", "quantity": 1, "preferred_start_date": "2026-11-01"},
            ],
            sync_token="guest-session-1",
        )

        assert {line.ref: line.quantity for line in cart.lines} == {"prod-mug": 3, "course-py": 1}

    def test_replayed_sync_is_a_no_op(self, marketplace):
        lines = [{"kind": "PRODUCT", "ref": "prod-mug", "quantity": 2}]
        _sync(marketplace, lines, sync_token="guest-session-1")
        cart = _sync(marketplace, lines, sync_token="guest-session-1")

        assert cart.lines[0].quantity == 2

    def test_only_recent_tokens_are_remembered(self, marketplace):
        lines = [{"kind": "COURSE", "ref": "course-py", "quantity": 1}]
        for n in range(MAX_SYNC_TOKENS + 5):
            _sync(marketplace, lines, sync_token=f"guest-session-{n}")

        stored = marketplace.carts.find_by_customer(CUSTOMER)
        assert len(stored.sync_tokens) == MAX_SYNC_TOKENS
        assert "guest-session-0" not in stored.sync_tokens
        assert stored.item_count == MAX_SYNC_TOKENS + 5

    def test_malformed_lines(self, marketplace):
        with pytest.raises(ValidationError):
            marketplace.cart_handler.sync_cart(SyncCart(customer_ref=CUSTOMER, lines="{not json"))


class TestCartView:
    def test_view_is_priced_from_the_catalog(self, marketplace):
        _add(marketplace, "prod-mug", 3)
        view = marketplace.cart_handler.get_cart(CUSTOMER)

        assert view.subtotal_before_discount == 30000
        assert view.item_discount_total == 3000
        assert view.subtotal == 27000
        assert view.lines[0].name == "Coffee Mug"

    def test_view_is_cached_and_invalidated_on_write(self, settings, catalog, addresses, coupons, gateway, notifier):
        cache = RecordingCache()
        marketplace = build_marketplace(
            settings,
            catalog=catalog,
            gateway=gateway,
            coupons=coupons,
            notifier=notifier,
            addresses=addresses,
            cache=cache,
        )
        try:
            _add(marketplace, "prod-mug", 1)
            first = marketplace.cart_handler.get_cart(CUSTOMER)
            assert marketplace.cart_handler.get_cart(CUSTOMER) is first

            _add(marketplace, "prod-mug", 1)
            assert cart_key(CUSTOMER) in cache.invalidations
            assert marketplace.cart_handler.get_cart(CUSTOMER).item_count == 2
        finally:
            marketplace.close()

    def test_catalog_edits_drop_cached_views(self, marketplace, catalog):
        _add(marketplace, "prod-mug", 1)
        assert marketplace.cart_handler.get_cart(CUSTOMER).lines[0].unit_price == 10000

        catalog.update_entry("prod-mug", price=12000)

        assert marketplace.cart_handler.get_cart(CUSTOMER).lines[0].unit_price == 12000

    def test_unavailable_lines_are_reported(self, marketplace, catalog):
        line = _add(marketplace, "prod-shirt", 1, variant_sku="SHIRT-S").lines[0]
        marketplace.cart_handler.get_cart(CUSTOMER)
        catalog.update_entry(
            "prod-shirt",
            variants=[{"sku": "SHIRT-L", "price": 27000, "stock": 3, "attributes": {"size": "L"}}],
        )

        view = marketplace.cart_handler.get_cart(CUSTOMER)

        assert view.unavailable_line_ids == [str(line.id)]
        assert view.lines == []

    def test_empty_cart_view(self, marketplace):
        view = marketplace.cart_handler.get_cart("cust-new")
        assert view.lines == []
        assert view.subtotal == 0

    def test_slow_read_does_not_outlive_a_checkout(self, marketplace_bed, settings, addresses, coupons, gateway):
        catalog = SlowReaderCatalog()
        catalog.add_product("prod-mug", "Coffee Mug", 10000, total_stock=20)
        marketplace = build_marketplace(
            settings, catalog=catalog, gateway=gateway, coupons=coupons, addresses=addresses
        )
        views = []

        def read_cart():
            with marketplace_bed.domain_context():
                views.append(marketplace.cart_handler.get_cart(CUSTOMER))

        try:
            _add(marketplace, "prod-mug", 3)
            reader = threading.Thread(target=read_cart, name="cart-reader")
            reader.start()
            assert catalog.reading.wait(timeout=5)

            marketplace.lifecycle.create_order(
                CreateOrder(
                    customer_ref=CUSTOMER,
                    shipping_address_ref="addr-1",
                    delivery_method=DeliveryMethod.PICKUP.value,
                    payment_method=PaymentMethod.COD.value,
                )
            )
            catalog.release.set()
            reader.join(timeout=5)

            # The reader rendered the cart as it was before checkout
            assert views[0].item_count == 3
            assert marketplace.cart_handler.get_cart(CUSTOMER).item_count == 0
        finally:
            catalog.release.set()
            marketplace.close()


class TestViewCache:
    def test_entries_expire(self):
        clock = FakeClock()
        cache = ViewCache(ttl_seconds=30, clock=clock)
        cache.put("cart:cust-1", "view")

        clock.now = 29.9
        assert cache.get("cart:cust-1") == "view"
        clock.now = 30.0
        assert cache.get("cart:cust-1") is None

    def test_put_after_invalidation_is_dropped(self):
        cache = ViewCache()
        view, token = cache.lookup("cart:cust-1")
        assert view is None

        cache.invalidate("cart:cust-1")

        assert cache.put("cart:cust-1", "stale", token) is False
        assert cache.get("cart:cust-1") is None

    def test_prefix_invalidation_voids_outstanding_tokens(self):
        cache = ViewCache()
        cache.put("cart:cust-1", "one")
        cache.put("orders:cust-1", "orders")
        _, token = cache.lookup("cart:cust-2")

        cache.invalidate_prefix("cart:")

        assert cache.get("cart:cust-1") is None
        assert cache.get("orders:cust-1") == "orders"
        assert cache.put("cart:cust-2", "stale", token) is False


class TestQuoteCart:
    def test_quote_with_zone_and_coupon(self, marketplace):
        _add(marketplace, "prod-mug", 3)

        quote = marketplace.cart_handler.quote(
            QuoteCart(
                customer_ref=CUSTOMER,
                delivery_method=DeliveryMethod.LOCAL_DELIVERY.value,
                delivery_zone_ref="zone-kla",
                coupon_code="save10",
            )
        )

        assert quote.totals.shipping_cost == 5000
        assert quote.totals.order_level_discount == 2700
        assert quote.totals.total == 27000 + 5000 - 2700
        assert quote.coupon_error is None

    def test_invalid_coupon_is_reported_not_raised(self, marketplace):
        _add(marketplace, "prod-mug", 1)

        quote = marketplace.cart_handler.quote(QuoteCart(customer_ref=CUSTOMER, coupon_code="BIG50"))

        assert quote.coupon_error is not None
        assert quote.totals.order_level_discount == 0

    def test_preview_without_zone_uses_default_fee(self, marketplace, settings):
        _add(marketplace, "prod-mug", 1)
        quote = marketplace.cart_handler.quote(
            QuoteCart(customer_ref=CUSTOMER, delivery_method=DeliveryMethod.LOCAL_DELIVERY.value)
        )
        assert quote.totals.shipping_cost == settings.default_delivery_fee

    def test_quote_has_no_side_effects(self, marketplace, coupons):
        _add(marketplace, "prod-mug", 1)
        marketplace.cart_handler.quote(QuoteCart(customer_ref=CUSTOMER, coupon_code="SAVE10"))
        assert coupons.get("SAVE10").current_uses == 0
        assert marketplace.orders._dao.query.all().total == 0
