"""Pydantic request/response schemas for the Marketplace API.

These are external contracts, kept separate from the internal commands and
aggregates.
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from marketplace.catalogue.port import LineKind
from marketplace.order.order import (
    AdminCancellationReason,
    CustomerCancellationReason,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from marketplace.order.refund import RefundStatus, RefundType
from marketplace.pricing.calculator import DeliveryMethod


# ---------------------------------------------------------------------------
# Cart Request Schemas
# ---------------------------------------------------------------------------
class AddCartItemRequest(BaseModel):
    kind: LineKind
    ref: str
    variant_sku: str | None = None
    quantity: int = Field(ge=1, default=1)
    preferred_start_date: date | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "kind": "PRODUCT",
                    "ref": "prod-mug",
                    "variant_sku": "MUG-RED",
                    "quantity": 2,
                }
            ]
        }
    }


class UpdateCartItemRequest(BaseModel):
    quantity: int | None = None
    variant_sku: str | None = None


class GuestCartLineSchema(BaseModel):
    kind: LineKind
    ref: str
    variant_sku: str | None = None
    quantity: int = Field(ge=1)
    preferred_start_date: date | None = None


class SyncCartRequest(BaseModel):
    lines: list[GuestCartLineSchema]
    sync_token: str | None = None


class QuoteCartRequest(BaseModel):
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    delivery_zone_ref: str | None = None
    coupon_code: str | None = None


# ---------------------------------------------------------------------------
# Order Request Schemas
# ---------------------------------------------------------------------------
class CreateOrderRequest(BaseModel):
    shipping_address_ref: str
    delivery_method: DeliveryMethod
    delivery_zone_ref: str | None = None
    payment_method: PaymentMethod
    coupon_code: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "shipping_address_ref": "addr-001",
                    "delivery_method": "LOCAL_DELIVERY",
                    "delivery_zone_ref": "zone-kampala",
                    "payment_method": "PESAPAL",
                    "coupon_code": "WELCOME10",
                }
            ]
        }
    }


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(default=None, max_length=1000)


class CancelOrderRequest(BaseModel):
    reason: CustomerCancellationReason
    notes: str | None = Field(default=None, max_length=1000)


class PaymentNotificationRequest(BaseModel):
    order_tracking_id: str
    order_merchant_reference: str
    status: str
    confirmation_code: str | None = None
    description: str | None = None


# ---------------------------------------------------------------------------
# Admin Request Schemas
# ---------------------------------------------------------------------------
class AdminUpdateStatusRequest(BaseModel):
    status: OrderStatus
    notes: str | None = Field(default=None, max_length=1000)
    reason: AdminCancellationReason | None = None


class AdminCancelOrderRequest(BaseModel):
    reason: AdminCancellationReason = AdminCancellationReason.OTHER
    notes: str = Field(min_length=1, max_length=1000)


class ReactivateOrderRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class InitiateRefundRequest(BaseModel):
    refund_type: RefundType
    amount: int | None = Field(default=None, gt=0)
    reason: str = Field(min_length=1, max_length=500)


class ReconcileOrdersRequest(BaseModel):
    as_of: datetime | None = None
    grace_minutes: int | None = Field(default=None, ge=0)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------
class StatusResponse(BaseModel):
    status: str = "ok"


class OrderCreatedResponse(BaseModel):
    order_id: str
    order_number: str
    total: int
    requires_payment: bool


class TotalsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    subtotal_before_discount: int
    item_discount_total: int
    order_level_discount: int = 0
    coupon_code: str | None = None
    coupon_percentage: int | None = None
    shipping_cost: int = 0
    total: int


class ItemSnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: LineKind
    title: str
    sku: str | None = None
    attributes: dict[str, str] = {}
    duration: str | None = None
    skill_level: str | None = None
    start_date: str | None = None


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: LineKind
    product_ref: str | None = None
    course_ref: str | None = None
    variant_sku: str | None = None
    name: str
    quantity: int
    original_price: int
    discount_applied: int
    final_price: int
    line_discount: int
    line_total: int
    preferred_start_date: date | None = None
    snapshot: ItemSnapshotResponse | None = None


class OrderHistoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: OrderStatus
    timestamp: datetime
    actor_id: str | None = None
    notes: str | None = None


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_number: str
    order_date: datetime
    customer_ref: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    delivery_method: DeliveryMethod
    delivery_zone_ref: str | None = None
    shipping_address_ref: str
    currency: str
    totals: TotalsResponse
    items: list[OrderItemResponse]
    history: list[OrderHistoryResponse]
    notes: str | None = None
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    delivered_at: datetime | None = None
    transaction_id: str | None = None
    refunded_amount: int = 0
    created_at: datetime
    updated_at: datetime


class CartQuoteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    totals: TotalsResponse
    coupon_removed: bool = False
    coupon_error: str | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderResponse]


class AdminOrderPageResponse(BaseModel):
    orders: list[OrderResponse]
    total: int
    limit: int
    offset: int


class OrderStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_orders: int
    by_status: dict[str, int]
    pending_payments: int
    failed_payments: int
    cancelled_orders: int
    total_revenue: int


class PaymentRedirectResponse(BaseModel):
    order_id: str
    order_number: str
    redirect_url: str | None = None
    tracking_id: str


class NotificationResponse(BaseModel):
    order_id: str
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    changed: bool


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_ref: str
    order_number: str
    refund_type: RefundType
    amount: int
    reason: str
    status: RefundStatus
    initiated_at: datetime
    initiated_by: str
    gateway_refund_id: str | None = None
    gateway_status: str | None = None
    failure_reason: str | None = None
    completed_at: datetime | None = None


class ReconcileResponse(BaseModel):
    checked: int
    cancelled: list[str]
    failed: list[str]
