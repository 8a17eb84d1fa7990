"""Tests for payment submission and gateway notifications."""

import pytest

from marketplace.errors import ConflictError, NotFoundError, UpstreamFailure, ValidationError
from marketplace.gateway.port import NotificationStatus, PaymentNotification
from marketplace.order.order import OrderStatus, PaymentMethod, PaymentStatus
from marketplace.order.payment import ProcessPayment

CUSTOMER = "cust-1"


def _submit(marketplace, order, customer_ref=CUSTOMER):
    return marketplace.payments.process_payment(ProcessPayment(customer_ref=customer_ref, order_id=str(order.id)))


def _notify(marketplace, order, status, tracking_id="trk-1", confirmation_code="CONF-001", description=None):
    return marketplace.payments.handle_notification(
        PaymentNotification(
            tracking_id=tracking_id,
            merchant_reference=order.order_number,
            status=status,
            confirmation_code=confirmation_code,
            description=description,
        )
    )


class TestProcessPayment:
    def test_submission_returns_redirect(self, marketplace, place_order, gateway):
        order = place_order(PaymentMethod.PESAPAL)

        redirect = _submit(marketplace, order)

        assert redirect.redirect_url.endswith(redirect.tracking_id)
        stored = marketplace.orders.get(order.id)
        assert stored.payment_status == PaymentStatus.PENDING.value
        assert stored.transaction_id == redirect.tracking_id
        assert [call["method"] for call in gateway.calls] == ["register_callback", "submit_payment"]
        assert gateway.calls[1]["amount"] == 27000

    def test_rejected_submission(self, marketplace, place_order, gateway):
        order = place_order(PaymentMethod.PESAPAL)
        gateway.configure(should_succeed=False, failure_reason="Card expired")

        with pytest.raises(UpstreamFailure) as exc:
            _submit(marketplace, order)

        assert exc.value.message == "Card expired"
        assert marketplace.orders.get(order.id).payment_status == PaymentStatus.NOT_INITIATED.value

    def test_gateway_unreachable(self, marketplace, place_order, gateway):
        order = place_order(PaymentMethod.PESAPAL)
        gateway.configure(unavailable=True)

        with pytest.raises(UpstreamFailure) as exc:
            _submit(marketplace, order)
        assert exc.value.stage == "register_callback"

    def test_cod_orders_are_not_paid_online(self, marketplace, place_order):
        order = place_order(PaymentMethod.COD)
        with pytest.raises(ValidationError):
            _submit(marketplace, order)

    def test_paid_order_cannot_be_submitted_again(self, marketplace, place_order, pay_order):
        order = pay_order(place_order(PaymentMethod.PESAPAL))
        with pytest.raises(ConflictError):
            _submit(marketplace, order)

    def test_other_customers_order(self, marketplace, place_order):
        order = place_order(PaymentMethod.PESAPAL)
        with pytest.raises(NotFoundError):
            _submit(marketplace, order, customer_ref="cust-2")


class TestCompletedNotification:
    def test_confirms_payment_and_starts_processing(self, marketplace, place_order, catalog, notifier):
        order = place_order(PaymentMethod.PESAPAL)
        redirect = _submit(marketplace, order)

        result = _notify(marketplace, order, NotificationStatus.COMPLETED, tracking_id=redirect.tracking_id)

        assert result.changed is True
        assert result.status == OrderStatus.PROCESSING
        stored = marketplace.orders.get(order.id)
        assert stored.payment_status == PaymentStatus.PAID.value
        assert stored.payment_confirmation_code == "CONF-001"
        assert stored.stock_reserved is True
        assert catalog.available_stock("prod-mug", None) == 17
        assert notifier.of_kind("order_status_changed")[-1]["status"] == "PROCESSING"

    def test_duplicate_notification_is_a_no_op(self, marketplace, place_order, catalog):
        order = place_order(PaymentMethod.PESAPAL)
        redirect = _submit(marketplace, order)
        _notify(marketplace, order, NotificationStatus.COMPLETED, tracking_id=redirect.tracking_id)

        result = _notify(marketplace, order, NotificationStatus.COMPLETED, tracking_id=redirect.tracking_id)

        assert result.changed is False
        assert catalog.available_stock("prod-mug", None) == 17
        assert len(marketplace.orders.get(order.id).history) == 2

    def test_payment_for_cancelled_order_is_recorded(self, marketplace, place_order, catalog):
        order = place_order(PaymentMethod.PESAPAL)
        stored = marketplace.orders.get(order.id)
        stored.cancel(OrderStatus.CANCELLED_BY_USER, "checkout_abandoned")
        marketplace.orders.add(stored)

        result = _notify(marketplace, order, NotificationStatus.COMPLETED)

        assert result.payment_status == PaymentStatus.PAID
        assert result.status == OrderStatus.CANCELLED_BY_USER
        assert catalog.available_stock("prod-mug", None) == 20

    def test_unknown_order(self, marketplace):
        with pytest.raises(NotFoundError):
            marketplace.payments.handle_notification(
                PaymentNotification(
                    tracking_id="trk-1",
                    merchant_reference="KAPC-2026-999999",
                    status=NotificationStatus.COMPLETED,
                )
            )


class TestFailedNotification:
    def test_failure_keeps_order_pending(self, marketplace, place_order):
        order = place_order(PaymentMethod.PESAPAL)
        _submit(marketplace, order)

        result = _notify(marketplace, order, NotificationStatus.FAILED, description="Insufficient funds")

        assert result.changed is True
        stored = marketplace.orders.get(order.id)
        assert stored.status == OrderStatus.PENDING_PAYMENT.value
        assert stored.payment_status == PaymentStatus.FAILED.value
        assert stored.payment_failure_reason == "Insufficient funds"

    def test_repeated_failure_is_a_no_op(self, marketplace, place_order):
        order = place_order(PaymentMethod.PESAPAL)
        _notify(marketplace, order, NotificationStatus.FAILED, description="Insufficient funds")

        result = _notify(marketplace, order, NotificationStatus.FAILED, description="Insufficient funds")

        assert result.changed is False

    def test_retry_after_failure(self, marketplace, place_order):
        order = place_order(PaymentMethod.PESAPAL)
        _notify(marketplace, order, NotificationStatus.FAILED, description="Insufficient funds")

        redirect = _submit(marketplace, order)

        assert redirect.tracking_id
        assert marketplace.orders.get(order.id).payment_status == PaymentStatus.PENDING.value

    def test_late_failure_does_not_undo_a_payment(self, marketplace, place_order, pay_order):
        order = pay_order(place_order(PaymentMethod.PESAPAL))

        result = _notify(marketplace, order, NotificationStatus.FAILED)

        assert result.changed is False
        assert result.payment_status == PaymentStatus.PAID


class TestReversedNotification:
    def test_reversal_marks_refunded(self, marketplace, place_order, pay_order):
        order = pay_order(place_order(PaymentMethod.PESAPAL))

        result = _notify(marketplace, order, NotificationStatus.REVERSED)

        assert result.changed is True
        assert result.payment_status == PaymentStatus.REFUNDED

        again = _notify(marketplace, order, NotificationStatus.REVERSED)
        assert again.changed is False

    def test_reversal_of_unpaid_order(self, marketplace, place_order):
        order = place_order(PaymentMethod.PESAPAL)
        with pytest.raises(ConflictError):
            _notify(marketplace, order, NotificationStatus.REVERSED)
