"""Integration tests for the order and payment APIs."""

import pytest


@pytest.fixture()
def filled_cart(client, customer_headers):
    client.post("/cart/items", json={"kind": "PRODUCT", "ref": "prod-mug", "quantity": 3}, headers=customer_headers)


def _create(client, headers, payment_method="COD", **fields):
    payload = {"shipping_address_ref": "addr-1", "delivery_method": "PICKUP", "payment_method": payment_method}
    payload.update(fields)
    return client.post("/orders", json=payload, headers=headers)


class TestCreateOrderAPI:
    def test_cod_order(self, client, customer_headers, filled_cart):
        response = _create(client, customer_headers)

        assert response.status_code == 201
        body = response.json()
        assert body["total"] == 27000
        assert body["requires_payment"] is False
        assert body["order_number"].startswith("KAPC-")

    def test_order_is_readable(self, client, customer_headers, filled_cart):
        order_id = _create(client, customer_headers).json()["order_id"]

        response = client.get(f"/orders/{order_id}", headers=customer_headers)

        body = response.json()
        assert body["status"] == "PROCESSING"
        assert body["items"][0]["name"] == "Coffee Mug"
        assert [entry["status"] for entry in body["history"]] == ["PENDING_PAYMENT", "PROCESSING"]

    def test_empty_cart(self, client, customer_headers):
        response = _create(client, customer_headers)

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "CART_EMPTY"
        assert "stage" not in error

    def test_other_customer_sees_not_found(self, client, customer_headers, filled_cart):
        order_id = _create(client, customer_headers).json()["order_id"]

        response = client.get(f"/orders/{order_id}", headers={"X-User-Id": "cust-2"})

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Order not found or access denied"

    def test_list_orders(self, client, customer_headers, filled_cart):
        _create(client, customer_headers)
        response = client.get("/orders", headers=customer_headers)
        assert len(response.json()["orders"]) == 1

    def test_timeout_is_reported_as_retryable(self, client, customer_headers, filled_cart, catalog, marketplace):
        catalog.configure(latency=0.3)
        marketplace.stages.timeout = 0.05

        response = _create(client, customer_headers)

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["code"] == "STAGE_TIMEOUT"
        assert error["retryable"] is True


class TestCustomerCancellationAPI:
    def test_cancel_processing_order(self, client, customer_headers, filled_cart, catalog):
        order_id = _create(client, customer_headers).json()["order_id"]

        response = client.post(
            f"/orders/{order_id}/cancel",
            json={"reason": "changed_mind", "notes": "Ordered twice"},
            headers=customer_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED_BY_USER"
        assert catalog.available_stock("prod-mug", None) == 20

    def test_unknown_reason(self, client, customer_headers, filled_cart):
        order_id = _create(client, customer_headers).json()["order_id"]
        response = client.post(f"/orders/{order_id}/cancel", json={"reason": "bored"}, headers=customer_headers)
        assert response.status_code == 422

    def test_cancel_pending(self, client, customer_headers, filled_cart):
        order_id = _create(client, customer_headers, payment_method="PESAPAL").json()["order_id"]

        response = client.post(f"/orders/{order_id}/cancel-pending", headers=customer_headers)

        assert response.json()["status"] == "CANCELLED_BY_USER"

    def test_customer_cannot_mark_delivered(self, client, customer_headers, filled_cart):
        order_id = _create(client, customer_headers).json()["order_id"]

        response = client.put(f"/orders/{order_id}/status", json={"status": "DELIVERED"}, headers=customer_headers)

        assert response.status_code == 403


class TestPaymentAPI:
    def test_pay_and_confirm(self, client, customer_headers, filled_cart, marketplace):
        created = _create(client, customer_headers, payment_method="PESAPAL").json()
        assert created["requires_payment"] is True

        redirect = client.post(f"/orders/{created['order_id']}/payment", headers=customer_headers)
        assert redirect.status_code == 200
        tracking_id = redirect.json()["tracking_id"]

        response = client.post(
            "/payments/notifications",
            json={
                "order_tracking_id": tracking_id,
                "order_merchant_reference": created["order_number"],
                "status": "completed",
                "confirmation_code": "CONF-API",
            },
            headers={"X-Gateway-Signature": "test-signature"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "PROCESSING"
        assert response.json()["payment_status"] == "PAID"
        assert marketplace.orders.get(created["order_id"]).payment_confirmation_code == "CONF-API"

    def test_unsigned_notification_is_rejected(self, client, customer_headers, filled_cart, marketplace):
        created = _create(client, customer_headers, payment_method="PESAPAL").json()

        response = client.post(
            "/payments/notifications",
            json={
                "order_tracking_id": "trk-forged",
                "order_merchant_reference": created["order_number"],
                "status": "COMPLETED",
            },
            headers={"X-Gateway-Signature": "forged"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SIGNATURE"
        assert marketplace.orders.get(created["order_id"]).payment_status == "NOT_INITIATED"

    def test_gateway_down_is_503(self, client, customer_headers, filled_cart, gateway):
        created = _create(client, customer_headers, payment_method="PESAPAL").json()
        gateway.configure(unavailable=True)

        response = client.post(f"/orders/{created['order_id']}/payment", headers=customer_headers)

        assert response.status_code == 503
        assert "stage" not in response.json()["error"]
