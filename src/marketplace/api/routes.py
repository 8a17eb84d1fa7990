"""FastAPI routes for the Marketplace — carts, orders, payments and admin.

Handlers are plain ``def`` functions: the services block on their stage
runner, so FastAPI runs them in its worker threadpool.
"""

import json
from datetime import datetime

from fastapi import APIRouter, Depends, Header, Query

from marketplace.admin.operations import AdminCancelOrder, AdminUpdateStatus, InitiateRefund, ReactivateOrder
from marketplace.admin.queries import OrderQuery
from marketplace.api.auth import Identity, current_identity, require_admin
from marketplace.api.dependencies import get_marketplace
from marketplace.api.schemas import (
    AddCartItemRequest,
    AdminCancelOrderRequest,
    AdminOrderPageResponse,
    AdminUpdateStatusRequest,
    CancelOrderRequest,
    CartQuoteResponse,
    CreateOrderRequest,
    InitiateRefundRequest,
    NotificationResponse,
    OrderCreatedResponse,
    OrderListResponse,
    OrderResponse,
    OrderStatsResponse,
    PaymentNotificationRequest,
    PaymentRedirectResponse,
    QuoteCartRequest,
    ReactivateOrderRequest,
    ReconcileOrdersRequest,
    ReconcileResponse,
    RefundResponse,
    SyncCartRequest,
    UpdateCartItemRequest,
    UpdateOrderStatusRequest,
)
from marketplace.cart.management import (
    AddToCart,
    ClearCart,
    QuoteCart,
    RemoveCartItem,
    SyncCart,
    UpdateCartItem,
)
from marketplace.checkout.lifecycle import CancelOrder, CancelPendingOrder, CreateOrder, UpdateOrderStatus
from marketplace.application import Marketplace
from marketplace.errors import UnauthenticatedError
from marketplace.gateway.port import NotificationStatus, PaymentNotification
from marketplace.order.order import OrderStatus, PaymentMethod, PaymentStatus
from marketplace.order.payment import ProcessPayment
from marketplace.projections.cart_view import CartView


def _order_response(order) -> OrderResponse:
    return OrderResponse.model_validate(order, from_attributes=True)


def _refund_response(refund) -> RefundResponse:
    return RefundResponse.model_validate(refund, from_attributes=True)


def _value(member):
    return member.value if member is not None else None


# ---------------------------------------------------------------------------
# Cart Router
# ---------------------------------------------------------------------------
cart_router = APIRouter(prefix="/cart", tags=["cart"])


@cart_router.get("", response_model=CartView)
def get_cart(
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartView:
    return marketplace.cart_handler.get_cart(identity.user_id)


@cart_router.post("/items", response_model=CartView)
def add_cart_item(
    body: AddCartItemRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartView:
    command = AddToCart(
        customer_ref=identity.user_id,
        kind=body.kind.value,
        ref=body.ref,
        variant_sku=body.variant_sku,
        quantity=body.quantity,
        preferred_start_date=body.preferred_start_date,
    )
    marketplace.cart_handler.add_to_cart(command)
    return marketplace.cart_handler.get_cart(identity.user_id)


@cart_router.put("/items/{line_id}", response_model=CartView)
def update_cart_item(
    line_id: str,
    body: UpdateCartItemRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartView:
    command = UpdateCartItem(
        customer_ref=identity.user_id,
        line_id=line_id,
        quantity=body.quantity,
        variant_sku=body.variant_sku,
    )
    marketplace.cart_handler.update_cart_item(command)
    return marketplace.cart_handler.get_cart(identity.user_id)


@cart_router.delete("/items/{line_id}", response_model=CartView)
def remove_cart_item(
    line_id: str,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartView:
    marketplace.cart_handler.remove_cart_item(RemoveCartItem(customer_ref=identity.user_id, line_id=line_id))
    return marketplace.cart_handler.get_cart(identity.user_id)


@cart_router.delete("", response_model=CartView)
def clear_cart(
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartView:
    marketplace.cart_handler.clear_cart(ClearCart(customer_ref=identity.user_id))
    return marketplace.cart_handler.get_cart(identity.user_id)


@cart_router.post("/sync", response_model=CartView)
def sync_cart(
    body: SyncCartRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartView:
    command = SyncCart(
        customer_ref=identity.user_id,
        lines=json.dumps([line.model_dump(mode="json") for line in body.lines]),
        sync_token=body.sync_token,
    )
    marketplace.cart_handler.sync_cart(command)
    return marketplace.cart_handler.get_cart(identity.user_id)


@cart_router.post("/quote", response_model=CartQuoteResponse)
def quote_cart(
    body: QuoteCartRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> CartQuoteResponse:
    command = QuoteCart(
        customer_ref=identity.user_id,
        delivery_method=body.delivery_method.value,
        delivery_zone_ref=body.delivery_zone_ref,
        coupon_code=body.coupon_code,
    )
    return CartQuoteResponse.model_validate(marketplace.cart_handler.quote(command), from_attributes=True)


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post("", status_code=201, response_model=OrderCreatedResponse)
def create_order(
    body: CreateOrderRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderCreatedResponse:
    command = CreateOrder(
        customer_ref=identity.user_id,
        shipping_address_ref=body.shipping_address_ref,
        delivery_method=body.delivery_method.value,
        delivery_zone_ref=body.delivery_zone_ref,
        payment_method=body.payment_method.value,
        coupon_code=body.coupon_code,
    )
    result = marketplace.lifecycle.create_order(command)
    return OrderCreatedResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        total=result.total,
        requires_payment=result.requires_payment,
    )


@order_router.get("", response_model=OrderListResponse)
def list_orders(
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderListResponse:
    orders = marketplace.lifecycle.list_orders(identity.user_id)
    return OrderListResponse(orders=[_order_response(order) for order in orders])


@order_router.get("/{order_id}", response_model=OrderResponse)
def get_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    return _order_response(marketplace.lifecycle.get_order(order_id, identity.user_id))


@order_router.post("/{order_id}/payment", response_model=PaymentRedirectResponse)
def process_payment(
    order_id: str,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> PaymentRedirectResponse:
    result = marketplace.payments.process_payment(ProcessPayment(customer_ref=identity.user_id, order_id=order_id))
    return PaymentRedirectResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        redirect_url=result.redirect_url,
        tracking_id=result.tracking_id,
    )


@order_router.put("/{order_id}/status", response_model=OrderResponse)
def update_order_status(
    order_id: str,
    body: UpdateOrderStatusRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    command = UpdateOrderStatus(
        customer_ref=identity.user_id,
        order_id=order_id,
        status=body.status.value,
        notes=body.notes,
    )
    return _order_response(marketplace.lifecycle.update_status(command))


@order_router.post("/{order_id}/cancel", response_model=OrderResponse)
def cancel_order(
    order_id: str,
    body: CancelOrderRequest,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    command = CancelOrder(
        customer_ref=identity.user_id,
        order_id=order_id,
        reason=body.reason.value,
        notes=body.notes,
    )
    return _order_response(marketplace.lifecycle.cancel_order(command))


@order_router.post("/{order_id}/cancel-pending", response_model=OrderResponse)
def cancel_pending_order(
    order_id: str,
    identity: Identity = Depends(current_identity),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    command = CancelPendingOrder(customer_ref=identity.user_id, order_id=order_id)
    return _order_response(marketplace.lifecycle.cancel_pending(command))


# ---------------------------------------------------------------------------
# Payment Router
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("/notifications", response_model=NotificationResponse)
def payment_notification(
    body: PaymentNotificationRequest,
    x_gateway_signature: str = Header(default=""),
    marketplace: Marketplace = Depends(get_marketplace),
) -> NotificationResponse:
    """Process an asynchronous payment status update from the gateway."""
    if not marketplace.gateway.verify_signature(json.dumps(body.model_dump()), x_gateway_signature):
        raise UnauthenticatedError("Invalid notification signature", code="INVALID_SIGNATURE")

    notification = PaymentNotification(
        tracking_id=body.order_tracking_id,
        merchant_reference=body.order_merchant_reference,
        status=NotificationStatus.__members__.get(body.status.upper(), NotificationStatus.INVALID),
        confirmation_code=body.confirmation_code,
        description=body.description,
    )
    result = marketplace.payments.handle_notification(notification)
    return NotificationResponse(
        order_id=result.order_id,
        order_number=result.order_number,
        status=result.status,
        payment_status=result.payment_status,
        changed=result.changed,
    )


# ---------------------------------------------------------------------------
# Admin Router
# ---------------------------------------------------------------------------
admin_router = APIRouter(prefix="/admin", tags=["admin"])


@admin_router.get("/orders", response_model=AdminOrderPageResponse)
def admin_list_orders(
    status: OrderStatus | None = None,
    payment_status: PaymentStatus | None = None,
    payment_method: PaymentMethod | None = None,
    search: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> AdminOrderPageResponse:
    query = OrderQuery(
        status=status,
        payment_status=payment_status,
        payment_method=payment_method,
        search=search,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    page = marketplace.admin_queries.list_orders(query)
    return AdminOrderPageResponse(
        orders=[_order_response(order) for order in page.orders],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@admin_router.get("/orders/stats", response_model=OrderStatsResponse)
def admin_order_stats(
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderStatsResponse:
    return OrderStatsResponse.model_validate(marketplace.admin_queries.order_stats(), from_attributes=True)


@admin_router.get("/orders/{order_id}", response_model=OrderResponse)
def admin_get_order(
    order_id: str,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    return _order_response(marketplace.admin.get_order(order_id))


@admin_router.put("/orders/{order_id}/status", response_model=OrderResponse)
def admin_update_status(
    order_id: str,
    body: AdminUpdateStatusRequest,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    command = AdminUpdateStatus(
        order_id=order_id,
        status=body.status.value,
        actor_id=identity.user_id,
        notes=body.notes,
        reason=_value(body.reason),
    )
    return _order_response(marketplace.admin.update_status(command))


@admin_router.post("/orders/{order_id}/cancel", response_model=OrderResponse)
def admin_cancel_order(
    order_id: str,
    body: AdminCancelOrderRequest,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    command = AdminCancelOrder(
        order_id=order_id,
        reason=body.reason.value,
        notes=body.notes,
        actor_id=identity.user_id,
    )
    return _order_response(marketplace.admin.cancel_with_notes(command))


@admin_router.post("/orders/{order_id}/reactivate", response_model=OrderResponse)
def admin_reactivate_order(
    order_id: str,
    body: ReactivateOrderRequest,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> OrderResponse:
    command = ReactivateOrder(order_id=order_id, actor_id=identity.user_id, notes=body.notes)
    return _order_response(marketplace.admin.reactivate(command))


@admin_router.post("/orders/{order_id}/refunds", status_code=201, response_model=RefundResponse)
def admin_initiate_refund(
    order_id: str,
    body: InitiateRefundRequest,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> RefundResponse:
    command = InitiateRefund(
        order_id=order_id,
        refund_type=body.refund_type.value,
        amount=body.amount,
        reason=body.reason,
        actor_id=identity.user_id,
    )
    refund = marketplace.admin.initiate_refund(command)
    return _refund_response(refund)


@admin_router.post("/refunds/{refund_id}/settle", response_model=RefundResponse)
def admin_settle_refund(
    refund_id: str,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> RefundResponse:
    refund = marketplace.admin.settle_refund(refund_id, actor_id=identity.user_id)
    return _refund_response(refund)


@admin_router.post("/maintenance/reconcile-orders", response_model=ReconcileResponse)
def admin_reconcile_orders(
    body: ReconcileOrdersRequest,
    identity: Identity = Depends(require_admin),
    marketplace: Marketplace = Depends(get_marketplace),
) -> ReconcileResponse:
    """Cancel incomplete orders; meant to be triggered by an external scheduler."""
    result = marketplace.admin.reconcile_incomplete_orders(as_of=body.as_of, grace_minutes=body.grace_minutes)
    return ReconcileResponse(checked=result.checked, cancelled=result.cancelled, failed=result.failed)
