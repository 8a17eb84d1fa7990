"""Integration tests for the admin API."""

import pytest

from marketplace.order.order import PaymentMethod


@pytest.fixture()
def cod_order(client, customer_headers):
    client.post("/cart/items", json={"kind": "PRODUCT", "ref": "prod-mug", "quantity": 3}, headers=customer_headers)
    response = client.post(
        "/orders",
        json={"shipping_address_ref": "addr-1", "delivery_method": "PICKUP", "payment_method": "COD"},
        headers=customer_headers,
    )
    return response.json()


@pytest.fixture()
def paid_order(place_order, pay_order):
    return pay_order(place_order(PaymentMethod.PESAPAL))


class TestAdminAccess:
    def test_customers_are_forbidden(self, client, customer_headers):
        response = client.get("/admin/orders", headers=customer_headers)
        assert response.status_code == 403

    def test_anonymous_is_unauthenticated(self, client):
        response = client.get("/admin/orders")
        assert response.status_code == 401


class TestAdminOrdersAPI:
    def test_list_and_search(self, client, admin_headers, cod_order):
        response = client.get("/admin/orders", params={"search": "coffee"}, headers=admin_headers)

        body = response.json()
        assert body["total"] == 1
        assert body["orders"][0]["order_number"] == cod_order["order_number"]

    def test_limit_out_of_range(self, client, admin_headers):
        response = client.get("/admin/orders", params={"limit": 1000}, headers=admin_headers)
        assert response.status_code == 422

    def test_stats(self, client, admin_headers, cod_order):
        response = client.get("/admin/orders/stats", headers=admin_headers)
        assert response.json()["total_orders"] == 1

    def test_status_update(self, client, admin_headers, cod_order):
        response = client.put(
            f"/admin/orders/{cod_order['order_id']}/status",
            json={"status": "READY_FOR_DELIVERY", "notes": "Packed"},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["status"] == "READY_FOR_DELIVERY"

    def test_invalid_transition_shows_conflict(self, client, admin_headers, cod_order):
        response = client.put(
            f"/admin/orders/{cod_order['order_id']}/status",
            json={"status": "DELIVERED"},
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "INVALID_TRANSITION"

    def test_cancel_then_reactivate(self, client, admin_headers, cod_order, catalog):
        order_id = cod_order["order_id"]

        cancelled = client.post(
            f"/admin/orders/{order_id}/cancel",
            json={"reason": "items_unavailable", "notes": "Supplier delay"},
            headers=admin_headers,
        )
        assert cancelled.json()["status"] == "CANCELLED_BY_ADMIN"
        assert catalog.available_stock("prod-mug", None) == 20

        reactivated = client.post(f"/admin/orders/{order_id}/reactivate", json={}, headers=admin_headers)
        assert reactivated.json()["status"] == "PROCESSING"
        assert catalog.available_stock("prod-mug", None) == 17

    def test_cancel_requires_notes(self, client, admin_headers, cod_order):
        response = client.post(
            f"/admin/orders/{cod_order['order_id']}/cancel",
            json={"reason": "other", "notes": ""},
            headers=admin_headers,
        )
        assert response.status_code == 422

    def test_admin_errors_include_stage(self, client, admin_headers, cod_order, catalog):
        order_id = cod_order["order_id"]
        client.post(
            f"/admin/orders/{order_id}/cancel",
            json={"reason": "other", "notes": "Duplicate order"},
            headers=admin_headers,
        )
        catalog.adjust_stock("prod-mug", None, -20)

        response = client.post(f"/admin/orders/{order_id}/reactivate", json={}, headers=admin_headers)

        assert response.status_code == 409
        assert response.json()["error"]["stage"] == "reserve_stock"


class TestRefundAPI:
    def test_initiate_and_settle(self, client, admin_headers, paid_order):
        response = client.post(
            f"/admin/orders/{paid_order.id}/refunds",
            json={"refund_type": "PARTIAL", "amount": 5000, "reason": "Chipped mug"},
            headers=admin_headers,
        )
        assert response.status_code == 201
        refund = response.json()
        assert refund["status"] == "INITIATED"

        settled = client.post(f"/admin/refunds/{refund['id']}/settle", headers=admin_headers)

        assert settled.json()["status"] == "COMPLETED"
        order = client.get(f"/admin/orders/{paid_order.id}", headers=admin_headers).json()
        assert order["payment_status"] == "PARTIAL"
        assert order["refunded_amount"] == 5000

    def test_refund_of_unpaid_order(self, client, admin_headers, cod_order):
        response = client.post(
            f"/admin/orders/{cod_order['order_id']}/refunds",
            json={"refund_type": "FULL", "reason": "Goodwill"},
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "NOT_REFUNDABLE"


class TestMaintenanceAPI:
    def test_reconcile(self, client, admin_headers, cod_order):
        response = client.post("/admin/maintenance/reconcile-orders", json={}, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["cancelled"] == []
