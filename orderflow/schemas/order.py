from pydantic import BaseModel, EmailStr, Field
from typing import Optional, List, Dict
from datetime import datetime
from decimal import Decimal
import uuid

from orderflow.core.state_machine import OrderStatus, SubOrderStatus
from orderflow.models import OrderSource, PaymentMethod, PaymentStatus, ShippingMethod
from orderflow.schemas.base import BaseCreateSchema, BaseResponseSchema
from orderflow.schemas.payment import AdminPaymentResponse, PaymentResponse, PaymentStatusBrief
from orderflow.schemas.payout import PayoutBrief, PayoutResponse


# ==================== SNAPSHOT SCHEMAS ====================

class BuyerSnapshot(BaseModel):
    """Buyer details frozen at placement."""
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: Optional[str] = Field(None, max_length=30)
    country: Optional[str] = Field(None, max_length=100)


class SellerSnapshot(BaseModel):
    """Seller details frozen at placement."""
    name: str = Field(..., min_length=1, max_length=200)
    store_name: Optional[str] = Field(None, max_length=200)
    country: Optional[str] = Field(None, max_length=100)


class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: Optional[str] = None


class ShippingDetails(BaseModel):
    """Shipping selection at checkout."""
    address: ShippingAddress
    method: ShippingMethod = ShippingMethod.STANDARD
    cost: Decimal = Field(Decimal("0"), ge=0)
    estimated_delivery: Optional[datetime] = None
    special_instructions: Optional[str] = Field(None, max_length=1000)


# ==================== CHECKOUT PAYLOAD ====================

class OrderItemCreate(BaseModel):
    """One gem line in a seller's part of the cart."""
    gem_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    gem_details: Dict = Field(default_factory=dict, description="Catalog snapshot (type, carat, images...)")
    quantity: int = Field(..., ge=1)
    unit_price: Decimal = Field(..., gt=0)
    total_price: Decimal = Field(..., ge=0, description="Must equal quantity * unit_price")
    commission: Optional[Decimal] = Field(
        None, ge=0, description="Platform commission, defaults to the configured rate"
    )


class SubOrderCreate(BaseModel):
    seller_id: str = Field(..., min_length=1, max_length=64)
    seller: SellerSnapshot
    items: List[OrderItemCreate] = Field(..., min_length=1)
    subtotal: Decimal = Field(..., ge=0)
    shipping_cost: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Decimal = Field(..., ge=0, description="Must equal subtotal + shipping_cost")
    shipping_method: ShippingMethod = ShippingMethod.STANDARD


class OrderCreate(BaseCreateSchema):
    """Order placement payload supplied by checkout."""
    checkout_reference: Optional[str] = Field(
        None, max_length=100, description="Idempotency key, repeats return the same order"
    )
    buyer: BuyerSnapshot
    shipping: ShippingDetails
    payment_method: PaymentMethod
    transaction_id: Optional[str] = Field(None, max_length=100)
    sub_orders: List[SubOrderCreate] = Field(..., min_length=1)
    subtotal: Decimal = Field(..., ge=0)
    total_shipping: Decimal = Field(Decimal("0"), ge=0)
    total_amount: Decimal = Field(..., ge=0, description="Must equal the sum of sub-order totals")
    currency: Optional[str] = Field(None, min_length=3, max_length=3)
    source: OrderSource = OrderSource.CART
    notes: Optional[str] = Field(None, max_length=1000)


# ==================== ACTIONS ====================

class MarkShippedRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1, max_length=100)
    courier: str = Field(..., min_length=1, max_length=100)
    estimated_delivery: Optional[datetime] = None


class ConfirmDeliveryRequest(BaseModel):
    """Omit seller_id to confirm every shipped sub-order."""
    seller_id: Optional[str] = None


class CancelRequest(BaseModel):
    """Omit seller_id to cancel the whole order."""
    reason: str = Field(..., min_length=1)
    seller_id: Optional[str] = None


class RefundRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    seller_id: Optional[str] = None


class ReturnRequest(BaseModel):
    seller_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    notes: Optional[str] = None


# ==================== RESPONSES ====================

class OrderItemResponse(BaseResponseSchema):
    id: uuid.UUID
    gem_id: str
    gem_name: str
    gem_details: dict
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    commission: Decimal


class SubOrderResponse(BaseResponseSchema):
    """A seller's part of an order."""
    id: uuid.UUID
    seller_id: str
    seller_name: str
    seller_details: dict
    items: List[OrderItemResponse] = []
    subtotal: Decimal
    shipping_cost: Decimal
    total_amount: Decimal
    status: SubOrderStatus
    shipping_method: str
    tracking_number: Optional[str] = None
    courier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    status_reason: Optional[str] = None
    delivery_confirmed_by: Optional[str] = None
    profit_transferred: bool
    payment_refunded: bool = False


class SellerSubOrderResponse(SubOrderResponse):
    """Sub-order as its own seller sees it, with settlement figures."""
    commission_total: Decimal
    payout_amount: Decimal
    payout_error: Optional[str] = None
    payout: Optional[PayoutBrief] = None


class AdminSubOrderResponse(SellerSubOrderResponse):
    payout: Optional[PayoutResponse] = None


class StatusHistoryResponse(BaseResponseSchema):
    id: uuid.UUID
    seller_id: Optional[str] = None
    from_status: Optional[str] = None
    to_status: str
    changed_by: Optional[str] = None
    actor_role: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class OrderResponse(BaseResponseSchema):
    """Order as the buyer (or an admin) sees it."""
    id: uuid.UUID
    order_number: str
    checkout_reference: Optional[str] = None
    buyer_id: str
    buyer_details: dict
    source: str
    status: OrderStatus
    is_partial: bool
    payment: PaymentResponse
    shipping_details: dict
    sub_orders: List[SubOrderResponse] = []
    subtotal: Decimal
    total_shipping: Decimal
    total_amount: Decimal
    total_items: int
    currency: str
    notes: Optional[str] = None
    placed_at: datetime
    confirmed_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    updated_at: datetime
    version: int


class AdminOrderResponse(OrderResponse):
    """Everything, including seller settlement state and the audit trail."""
    payment: AdminPaymentResponse
    sub_orders: List[AdminSubOrderResponse] = []
    status_history: List[StatusHistoryResponse] = []


class SellerOrderView(BaseModel):
    """
    Parent context a seller needs for fulfillment.

    Other sellers' items, buyer contact details and payment instrument
    data are not part of this view.
    """
    order_number: str
    placed_at: datetime
    order_status: OrderStatus
    buyer_name: str
    shipping_address: dict
    shipping_method: Optional[str] = None
    special_instructions: Optional[str] = None
    payment: PaymentStatusBrief
    currency: str
    sub_order: SellerSubOrderResponse


class OrderListResponse(BaseModel):
    """Paginated order list."""
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int


class SellerOrderListResponse(BaseModel):
    items: List[SellerOrderView]
    total: int
    page: int
    size: int
    pages: int


class TopSeller(BaseModel):
    seller_id: str
    seller_name: str
    order_count: int
    revenue: Decimal


class OrderSummary(BaseModel):
    """Order summary statistics."""
    total_orders: int
    total_revenue: Decimal
    average_order_value: Decimal
    status_breakdown: Dict[str, int]
    payment_status_breakdown: Dict[str, int]
    pending_verifications: int
    pending_payouts: int
    top_sellers: List[TopSeller] = []


class OrderFilters(BaseModel):
    """Query filters shared by every role's list view."""
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    min_amount: Optional[Decimal] = Field(None, ge=0)
    max_amount: Optional[Decimal] = Field(None, ge=0)
    search: Optional[str] = Field(None, max_length=100)
    sort_by: str = Field("placed_at", pattern="^(placed_at|total_amount|status)$")
    sort_order: str = Field("desc", pattern="^(asc|desc)$")
    page: int = Field(1, ge=1)
    size: int = Field(20, ge=1, le=100)
