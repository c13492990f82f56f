"""
Aggregate-level transition helpers.

These functions mutate an Order that was loaded by the ledger store and run
inside ``LedgerStore.update_by_number``. They validate against the state in
front of them and raise domain errors without touching anything when a
precondition fails, so a retried call always re-checks fresh state.
"""

from typing import List, Optional

from orderflow.core.exceptions import NotFoundError, PaymentNotVerifiedError
from orderflow.core.state_machine import SubOrderStatus, validate_transition
from orderflow.models import Order, PaymentStatus, SubOrder
from orderflow.services.events import EventType
from orderflow.services.ledger_store import UpdateContext


def find_sub_order(order: Order, seller_id: str) -> SubOrder:
    sub_order = order.get_sub_order(seller_id)
    if sub_order is None:
        raise NotFoundError(
            "Sub-order not found",
            details={"order_number": order.order_number, "seller_id": seller_id},
        )
    return sub_order


def require_payment_completed(order: Order, action: str) -> None:
    payment = order.payment
    if payment is None or payment.status != PaymentStatus.COMPLETED.value:
        raise PaymentNotVerifiedError(
            f"Payment must be completed before {action}",
            details={
                "order_number": order.order_number,
                "payment_status": payment.status if payment is not None else None,
                "payment_method": payment.method if payment is not None else None,
            },
        )


def apply_transition(
    order: Order,
    sub_order: SubOrder,
    new_status: SubOrderStatus,
    ctx: UpdateContext,
    notes: Optional[str] = None,
) -> None:
    """Validate and apply one sub-order transition, stamping its timestamp."""
    current = sub_order.status
    validate_transition(current, new_status)

    sub_order.status = new_status.value
    if new_status == SubOrderStatus.SHIPPED:
        sub_order.shipped_at = ctx.now
    elif new_status == SubOrderStatus.DELIVERED:
        sub_order.delivered_at = ctx.now
    elif new_status == SubOrderStatus.CANCELLED:
        sub_order.cancelled_at = ctx.now

    ctx.record(order, sub_order, current, new_status.value, notes)


def confirm_payment(order: Order, ctx: UpdateContext) -> List[SubOrder]:
    """
    Move every pending sub-order to paid once the payment is completed.

    Sub-orders already past pending (or cancelled) are left alone, which
    makes repeated confirmations harmless.
    """
    require_payment_completed(order, "confirming sub-orders")
    if order.confirmed_at is None:
        order.confirmed_at = ctx.now

    moved = []
    for sub_order in order.sub_orders:
        if sub_order.status == SubOrderStatus.PENDING.value:
            apply_transition(order, sub_order, SubOrderStatus.PAID, ctx, notes="Payment confirmed")
            moved.append(sub_order)
    return moved


def emit_order_delivered_if_complete(order: Order, ctx: UpdateContext) -> None:
    """Emit OrderDelivered when the last active sub-order was just delivered."""
    active = [
        so for so in order.sub_orders
        if so.status not in (
            SubOrderStatus.CANCELLED.value,
            SubOrderStatus.REFUNDED.value,
            SubOrderStatus.RETURNED.value,
        )
    ]
    if active and all(so.status == SubOrderStatus.DELIVERED.value for so in active):
        ctx.emit(order, EventType.ORDER_DELIVERED, buyer_id=order.buyer_id)


def is_settled_with_buyer(sub_order: SubOrder) -> bool:
    """The buyer kept nothing from this part and has had its money back."""
    if sub_order.status in (SubOrderStatus.REFUNDED.value, SubOrderStatus.RETURNED.value):
        return True
    return sub_order.status == SubOrderStatus.CANCELLED.value and bool(sub_order.payment_refunded)


def refund_cancelled_share(order: Order, sub_order: SubOrder, reason: str, ctx: UpdateContext) -> None:
    """
    Return the buyer's money for a sub-order cancelled after payment.

    The sub-order stays cancelled; only its ``payment_refunded`` flag and the
    audit trail change.
    """
    require_payment_completed(order, "refunding a cancelled sub-order")
    sub_order.payment_refunded = True
    ctx.record(order, sub_order, SubOrderStatus.CANCELLED.value, SubOrderStatus.CANCELLED.value,
               notes=f"Payment refunded: {reason}")
    ctx.emit(order, EventType.SUB_ORDER_REFUNDED, seller_id=sub_order.seller_id,
             reason=reason, amount=sub_order.total_amount, after_cancellation=True)


def refund_payment_if_fully_reversed(order: Order, ctx: UpdateContext) -> None:
    """
    Mark the payment refunded when no money is left with the platform.

    Every sub-order must be refunded, returned, or cancelled with its share
    already paid back. A paid cancellation whose share was never refunded
    keeps the payment completed.
    """
    payment = order.payment
    if payment is None or payment.status != PaymentStatus.COMPLETED.value:
        return
    if order.sub_orders and all(is_settled_with_buyer(so) for so in order.sub_orders):
        payment.status = PaymentStatus.REFUNDED.value
        ctx.record(order, None, PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value,
                   notes="Payment refunded")
