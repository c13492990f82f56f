from typing import Optional
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, status, Query

from orderflow.api.deps import CurrentActor, Orders, Payments, Queries
from orderflow.core.state_machine import OrderStatus
from orderflow.models import PaymentMethod, PaymentStatus
from orderflow.schemas.order import (
    CancelRequest,
    ConfirmDeliveryRequest,
    MarkShippedRequest,
    OrderCreate,
    OrderFilters,
    OrderResponse,
    RefundRequest,
    ReturnRequest,
)
from orderflow.schemas.payment import SubmitReceiptRequest


router = APIRouter(tags=["Orders"])


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def place_order(
    data: OrderCreate,
    actor: CurrentActor,
    orders: Orders,
):
    """
    Place a multi-seller order from a checkout payload.

    Repeating a checkout with the same ``checkout_reference`` returns the
    order that was already placed.
    """
    order = await orders.place_order(data, actor)
    return OrderResponse.model_validate(order)


@router.get("", response_model=None)
async def list_orders(
    actor: CurrentActor,
    queries: Queries,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    status: Optional[OrderStatus] = Query(None),
    payment_status: Optional[PaymentStatus] = Query(None),
    payment_method: Optional[PaymentMethod] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    min_amount: Optional[Decimal] = Query(None, ge=0),
    max_amount: Optional[Decimal] = Query(None, ge=0),
    search: Optional[str] = Query(None, description="Order number, buyer, seller or gem name"),
    sort_by: str = Query("placed_at", pattern="^(placed_at|total_amount|status)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
):
    """
    Orders visible to the caller.

    Buyers get their own orders, sellers their own sub-orders with a trimmed
    parent context, admins everything.
    """
    filters = OrderFilters(
        status=status,
        payment_status=payment_status,
        payment_method=payment_method,
        date_from=date_from,
        date_to=date_to,
        min_amount=min_amount,
        max_amount=max_amount,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        size=size,
    )
    return await queries.list_orders(actor, filters)


@router.get("/{order_number}", response_model=None)
async def get_order(
    order_number: str,
    actor: CurrentActor,
    queries: Queries,
):
    """Get order details by order number, shaped for the caller's role."""
    return await queries.get_order(order_number, actor)


# ==================== SELLER FULFILLMENT ====================

@router.post("/{order_number}/processing", response_model=None)
async def mark_processing(
    order_number: str,
    actor: CurrentActor,
    orders: Orders,
    queries: Queries,
):
    """Seller starts preparing their paid sub-order."""
    await orders.mark_processing(order_number, actor)
    return await queries.get_order(order_number, actor)


@router.post("/{order_number}/ship", response_model=None)
async def mark_shipped(
    order_number: str,
    data: MarkShippedRequest,
    actor: CurrentActor,
    orders: Orders,
    queries: Queries,
):
    """
    Seller hands their sub-order to a courier.

    Rejected with 422 until the order's payment is completed.
    """
    await orders.mark_shipped(order_number, data, actor)
    return await queries.get_order(order_number, actor)


# ==================== BUYER ACTIONS ====================

@router.post("/{order_number}/confirm-delivery", response_model=None)
async def confirm_delivery(
    order_number: str,
    actor: CurrentActor,
    orders: Orders,
    queries: Queries,
    data: Optional[ConfirmDeliveryRequest] = None,
):
    """Confirm receipt of one seller's shipment, or of every shipped sub-order."""
    seller_id = data.seller_id if data else None
    await orders.confirm_delivery(order_number, actor, seller_id=seller_id)
    return await queries.get_order(order_number, actor)


@router.post("/{order_number}/cancel", response_model=None)
async def cancel_order(
    order_number: str,
    data: CancelRequest,
    actor: CurrentActor,
    orders: Orders,
    queries: Queries,
):
    """Cancel the whole order (buyer or admin) or one seller's sub-order."""
    await orders.cancel(order_number, data.reason, actor, seller_id=data.seller_id)
    return await queries.get_order(order_number, actor)


@router.post("/{order_number}/return", response_model=None)
async def request_return(
    order_number: str,
    data: ReturnRequest,
    actor: CurrentActor,
    orders: Orders,
    queries: Queries,
):
    """Buyer sends one seller's goods back."""
    await orders.request_return(order_number, data.seller_id, data.reason, actor, notes=data.notes)
    return await queries.get_order(order_number, actor)


@router.post("/{order_number}/receipt", response_model=None)
async def submit_receipt(
    order_number: str,
    data: SubmitReceiptRequest,
    actor: CurrentActor,
    payments: Payments,
    queries: Queries,
):
    """Attach a bank-transfer receipt for admin review."""
    await payments.submit_receipt(order_number, str(data.receipt_url), actor)
    return await queries.get_order(order_number, actor)


# ==================== ADMIN ====================

@router.post("/{order_number}/refund", response_model=None)
async def refund_order(
    order_number: str,
    data: RefundRequest,
    actor: CurrentActor,
    orders: Orders,
    queries: Queries,
):
    """Refund one seller's sub-order, or every refundable sub-order."""
    await orders.refund(order_number, data.reason, actor, seller_id=data.seller_id)
    return await queries.get_order(order_number, actor)
