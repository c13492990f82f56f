"""
Order lifecycle service.

Placement of multi-seller orders and every sub-order fulfillment transition:
payment confirmation, processing, shipment, delivery confirmation,
cancellation, refund and return. Each public method is one atomic ledger
update, retried on optimistic-concurrency conflicts.
"""

import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from orderflow.config import settings
from orderflow.core.exceptions import (
    NotFoundError,
    PreconditionError,
    ValidationError,
)
from orderflow.core.permissions import Actor, ActorRole, PermissionChecker
from orderflow.core.state_machine import (
    SubOrderStatus,
    can_cancel,
    is_off_path,
)
from orderflow.models import (
    Order,
    OrderItem,
    PaymentRecord,
    PaymentStatus,
    SubOrder,
)
from orderflow.schemas.order import MarkShippedRequest, OrderCreate
from orderflow.services.events import EventType
from orderflow.services.ledger_store import LedgerStore, UpdateContext
from orderflow.services.transitions import (
    apply_transition,
    confirm_payment,
    emit_order_delivered_if_complete,
    find_sub_order,
    is_settled_with_buyer,
    refund_cancelled_share,
    refund_payment_if_fully_reversed,
    require_payment_completed,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def ensure_visible(order: Order, actor: Actor) -> None:
    """Orders the caller may not see are reported as missing."""
    if not PermissionChecker(actor).can_view_order(order.buyer_id, order.seller_ids):
        raise NotFoundError("Order not found", details={"order_number": order.order_number})


def validate_reason(reason: Optional[str], field: str = "reason") -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError(f"A {field} is required", details={"field": field})
    if len(reason) > settings.MAX_REASON_LENGTH:
        raise ValidationError(
            f"The {field} must be at most {settings.MAX_REASON_LENGTH} characters",
            details={"field": field, "max_length": settings.MAX_REASON_LENGTH, "length": len(reason)},
        )
    return reason


def require_cents(value: Optional[Decimal], field: str, **context) -> None:
    """Money arrives in whole cents; anything finer would be rounded silently."""
    if value is not None and value != money(value):
        raise ValidationError(
            f"{field} must not have more than two decimal places",
            details={"field": field, "value": str(value), **context},
        )


def validate_order_totals(data: OrderCreate) -> None:
    """
    Check the checkout payload arithmetic before anything is written.

    Raises:
        ValidationError: naming the first line, sub-order or order total that does not add up
    """
    seller_ids = [so.seller_id for so in data.sub_orders]
    if len(set(seller_ids)) != len(seller_ids):
        raise ValidationError(
            "Each seller may appear in only one sub-order",
            details={"seller_ids": seller_ids},
        )

    for field in ("subtotal", "total_shipping", "total_amount"):
        require_cents(getattr(data, field), field)
    for so in data.sub_orders:
        for field in ("subtotal", "shipping_cost", "total_amount"):
            require_cents(getattr(so, field), field, seller_id=so.seller_id)
        for item in so.items:
            for field in ("unit_price", "total_price", "commission"):
                require_cents(getattr(item, field), field, seller_id=so.seller_id, gem_id=item.gem_id)
            expected = money(item.unit_price * item.quantity)
            if money(item.total_price) != expected:
                raise ValidationError(
                    "Item total does not equal quantity x unit price",
                    details={"seller_id": so.seller_id, "gem_id": item.gem_id,
                             "expected": str(expected), "actual": str(money(item.total_price))},
                )
        items_total = money(sum((item.total_price for item in so.items), Decimal("0")))
        if money(so.subtotal) != items_total:
            raise ValidationError(
                "Sub-order subtotal does not equal the sum of its items",
                details={"seller_id": so.seller_id, "expected": str(items_total),
                         "actual": str(money(so.subtotal))},
            )
        if money(so.total_amount) != money(so.subtotal + so.shipping_cost):
            raise ValidationError(
                "Sub-order total does not equal subtotal + shipping",
                details={"seller_id": so.seller_id,
                         "expected": str(money(so.subtotal + so.shipping_cost)),
                         "actual": str(money(so.total_amount))},
            )

    checks = (
        ("subtotal", data.subtotal, sum((so.subtotal for so in data.sub_orders), Decimal("0"))),
        ("total_shipping", data.total_shipping, sum((so.shipping_cost for so in data.sub_orders), Decimal("0"))),
        ("total_amount", data.total_amount, sum((so.total_amount for so in data.sub_orders), Decimal("0"))),
    )
    for field, actual, expected in checks:
        if money(actual) != money(expected):
            raise ValidationError(
                f"Order {field} does not equal the sum of sub-orders",
                details={"field": field, "expected": str(money(expected)), "actual": str(money(actual))},
            )


def check_totals_invariant(order: Order) -> bool:
    """True when the stored aggregate still adds up."""
    if money(order.total_amount) != money(sum((so.total_amount for so in order.sub_orders), Decimal("0"))):
        return False
    for so in order.sub_orders:
        if money(so.total_amount) != money(so.subtotal + so.shipping_cost):
            return False
        if money(so.subtotal) != money(sum((i.total_price for i in so.items), Decimal("0"))):
            return False
        for item in so.items:
            if money(item.total_price) != money(item.unit_price * item.quantity):
                return False
    return True


class OrderService:
    """Placement and fulfillment transitions for multi-seller orders."""

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store or LedgerStore()

    # ==================== PLACEMENT ====================

    def _build_order(self, data: OrderCreate, actor: Actor, order_number: str, ctx: UpdateContext) -> Order:
        currency = (data.currency or settings.DEFAULT_CURRENCY).upper()
        rate = settings.PLATFORM_COMMISSION_RATE

        order = Order(
            id=uuid.uuid4(),
            order_number=order_number,
            checkout_reference=data.checkout_reference,
            buyer_id=actor.id,
            buyer_details=data.buyer.model_dump(mode="json"),
            buyer_name=data.buyer.name,
            buyer_email=str(data.buyer.email),
            source=data.source.value,
            shipping_details=data.shipping.model_dump(mode="json"),
            subtotal=money(data.subtotal),
            total_shipping=money(data.total_shipping),
            total_amount=money(data.total_amount),
            total_items=sum(item.quantity for so in data.sub_orders for item in so.items),
            currency=currency,
            notes=data.notes,
            placed_at=ctx.now,
        )

        for position, so_data in enumerate(data.sub_orders):
            sub_order = SubOrder(
                id=uuid.uuid4(),
                position=position,
                seller_id=so_data.seller_id,
                seller_details=so_data.seller.model_dump(mode="json"),
                seller_name=so_data.seller.name,
                subtotal=money(so_data.subtotal),
                shipping_cost=money(so_data.shipping_cost),
                total_amount=money(so_data.total_amount),
                shipping_method=so_data.shipping_method.value,
                status=SubOrderStatus.PENDING.value,
                profit_transferred=False,
            )
            commission_total = Decimal("0")
            for item_position, item_data in enumerate(so_data.items):
                commission = (
                    money(item_data.commission)
                    if item_data.commission is not None
                    else money(item_data.total_price * rate)
                )
                commission_total += commission
                sub_order.items.append(OrderItem(
                    position=item_position,
                    gem_id=item_data.gem_id,
                    gem_details={**item_data.gem_details, "name": item_data.name},
                    gem_name=item_data.name,
                    quantity=item_data.quantity,
                    unit_price=money(item_data.unit_price),
                    total_price=money(item_data.total_price),
                    commission=commission,
                ))
            sub_order.commission_total = money(commission_total)
            order.sub_orders.append(sub_order)

        order.payment = PaymentRecord(
            method=data.payment_method.value,
            status=PaymentStatus.PENDING.value,
            amount=money(data.total_amount),
            currency=currency,
            transaction_id=data.transaction_id,
            reupload_requested=False,
        )

        ctx.record(order, None, None, SubOrderStatus.PENDING.value, notes="Order placed")
        ctx.emit(
            order,
            EventType.ORDER_PLACED,
            buyer_id=order.buyer_id,
            seller_ids=[so.seller_id for so in order.sub_orders],
            total_amount=order.total_amount,
            currency=currency,
            payment_method=data.payment_method.value,
        )
        return order

    async def place_order(self, data: OrderCreate, actor: Actor) -> Order:
        """
        Create an order and one pending sub-order per seller.

        A repeated ``checkout_reference`` returns the order already placed
        with it instead of creating a second one.
        """
        PermissionChecker(actor).require_role(ActorRole.BUYER, action="place orders")
        validate_order_totals(data)

        if data.checkout_reference:
            existing = await self.store.find_by_checkout_reference(data.checkout_reference)
            if existing is not None:
                if existing.buyer_id != actor.id:
                    raise ValidationError(
                        "Checkout reference already used",
                        details={"checkout_reference": data.checkout_reference},
                    )
                logger.info(f"Returning existing order {existing.order_number} for repeated checkout")
                return existing

        order = await self.store.create(
            lambda order_number, ctx: self._build_order(data, actor, order_number, ctx),
            actor,
        )
        logger.info(
            f"Placed order {order.order_number} for buyer {actor.id}: "
            f"{len(order.sub_orders)} sub-order(s), {order.total_amount} {order.currency}"
        )
        return order

    # ==================== PAYMENT CONFIRMATION ====================

    async def on_payment_confirmed(self, order_number: str, actor: Actor) -> Order:
        """pending -> paid for every pending sub-order. Requires a completed payment."""
        PermissionChecker(actor).require_role(
            ActorRole.ADMIN, ActorRole.SYSTEM, action="confirm payments"
        )

        def fn(order: Order, ctx: UpdateContext) -> Order:
            confirm_payment(order, ctx)
            return order

        return await self.store.transact(order_number, fn, actor)

    # ==================== SELLER FULFILLMENT ====================

    async def mark_processing(self, order_number: str, actor: Actor) -> Order:
        """Seller acknowledges the paid sub-order and starts preparing it."""
        PermissionChecker(actor).require_role(ActorRole.SELLER, action="process sub-orders")

        def fn(order: Order, ctx: UpdateContext) -> Order:
            ensure_visible(order, actor)
            sub_order = find_sub_order(order, actor.id)
            if sub_order.status == SubOrderStatus.PROCESSING.value:
                return order
            require_payment_completed(order, "processing")
            apply_transition(order, sub_order, SubOrderStatus.PROCESSING, ctx)
            ctx.emit(order, EventType.SUB_ORDER_PROCESSING, seller_id=sub_order.seller_id)
            return order

        return await self.store.transact(order_number, fn, actor)

    async def mark_shipped(self, order_number: str, data: MarkShippedRequest, actor: Actor) -> Order:
        """
        Ship the calling seller's sub-order.

        Repeating the call with the same tracking number is a no-op; a
        different tracking number for an already shipped sub-order fails.
        """
        PermissionChecker(actor).require_role(ActorRole.SELLER, action="ship sub-orders")
        tracking_number = data.tracking_number.strip()

        def fn(order: Order, ctx: UpdateContext) -> Order:
            ensure_visible(order, actor)
            sub_order = find_sub_order(order, actor.id)

            if sub_order.status in (SubOrderStatus.SHIPPED.value, SubOrderStatus.DELIVERED.value):
                if sub_order.tracking_number == tracking_number:
                    return order
                raise PreconditionError(
                    "Sub-order already shipped with a different tracking number",
                    details={
                        "order_number": order.order_number,
                        "seller_id": sub_order.seller_id,
                        "status": sub_order.status,
                    },
                )

            require_payment_completed(order, "shipping")
            apply_transition(
                order, sub_order, SubOrderStatus.SHIPPED, ctx,
                notes=f"{data.courier} {tracking_number}",
            )
            sub_order.tracking_number = tracking_number
            sub_order.courier = data.courier.strip()
            sub_order.estimated_delivery = data.estimated_delivery
            ctx.emit(
                order,
                EventType.SUB_ORDER_SHIPPED,
                seller_id=sub_order.seller_id,
                buyer_id=order.buyer_id,
                tracking_number=tracking_number,
                courier=sub_order.courier,
                estimated_delivery=data.estimated_delivery,
            )
            return order

        return await self.store.transact(order_number, fn, actor)

    # ==================== DELIVERY ====================

    async def confirm_delivery(
        self,
        order_number: str,
        actor: Actor,
        seller_id: Optional[str] = None,
    ) -> Order:
        """
        shipped -> delivered for one sub-order, or every shipped one.

        Used by the buyer, by admins, and by the auto-confirmation job with
        the same preconditions. Already delivered sub-orders are left as they are.
        """
        checker = PermissionChecker(actor)
        checker.require_role(
            ActorRole.BUYER, ActorRole.ADMIN, ActorRole.SYSTEM, action="confirm delivery"
        )

        def fn(order: Order, ctx: UpdateContext) -> Order:
            ensure_visible(order, actor)

            if seller_id is not None:
                sub_order = find_sub_order(order, seller_id)
                if sub_order.status == SubOrderStatus.DELIVERED.value:
                    return order
                targets = [sub_order]
            else:
                targets = [so for so in order.sub_orders if so.status == SubOrderStatus.SHIPPED.value]
                if not targets:
                    if any(so.status == SubOrderStatus.DELIVERED.value for so in order.sub_orders):
                        return order
                    raise PreconditionError(
                        "No shipped sub-orders to confirm",
                        details={
                            "order_number": order.order_number,
                            "statuses": {so.seller_id: so.status for so in order.sub_orders},
                        },
                    )

            for sub_order in targets:
                apply_transition(order, sub_order, SubOrderStatus.DELIVERED, ctx,
                                 notes=f"Delivery confirmed by {actor.role.value}")
                sub_order.delivery_confirmed_by = actor.role.value
                ctx.emit(order, EventType.SUB_ORDER_DELIVERED, seller_id=sub_order.seller_id,
                         confirmed_by=actor.role.value)
            emit_order_delivered_if_complete(order, ctx)
            return order

        return await self.store.transact(order_number, fn, actor)

    # ==================== CANCELLATION ====================

    async def cancel(
        self,
        order_number: str,
        reason: str,
        actor: Actor,
        seller_id: Optional[str] = None,
    ) -> Order:
        """
        Cancel before shipment.

        Without ``seller_id`` the whole order is cancelled, all or nothing:
        if any active sub-order has shipped, nothing changes. A completed
        payment is not released here; use ``refund``.
        """
        reason = validate_reason(reason)
        checker = PermissionChecker(actor)
        if seller_id is None:
            checker.require_role(ActorRole.BUYER, ActorRole.ADMIN, action="cancel orders")
        else:
            checker.require_role(ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN,
                                 action="cancel sub-orders")

        def fn(order: Order, ctx: UpdateContext) -> Order:
            ensure_visible(order, actor)

            if seller_id is not None:
                if actor.role == ActorRole.SELLER and seller_id != actor.id:
                    raise NotFoundError("Sub-order not found",
                                        details={"order_number": order.order_number, "seller_id": seller_id})
                sub_order = find_sub_order(order, seller_id)
                if sub_order.status == SubOrderStatus.CANCELLED.value:
                    return order
                targets = [sub_order]
            else:
                active = [so for so in order.sub_orders if not is_off_path(so.status)]
                if not active:
                    if all(so.status == SubOrderStatus.CANCELLED.value for so in order.sub_orders):
                        return order
                    raise PreconditionError(
                        "Order has no active sub-orders to cancel",
                        details={"order_number": order.order_number},
                    )
                blocked = {so.seller_id: so.status for so in active if not can_cancel(so.status)}
                if blocked:
                    raise PreconditionError(
                        "Order cannot be cancelled after shipment",
                        details={"order_number": order.order_number, "blocked": blocked},
                    )
                targets = active
                order.cancellation_reason = reason

            for sub_order in targets:
                apply_transition(order, sub_order, SubOrderStatus.CANCELLED, ctx, notes=reason)
                sub_order.status_reason = reason
                ctx.emit(order, EventType.SUB_ORDER_CANCELLED, seller_id=sub_order.seller_id,
                         reason=reason, cancelled_by=actor.role.value)
            return order

        return await self.store.transact(order_number, fn, actor)

    # ==================== REFUND / RETURN ====================

    def _reverse(
        self,
        order: Order,
        ctx: UpdateContext,
        targets: List[SubOrder],
        new_status: SubOrderStatus,
        event_type: EventType,
        reason: str,
        notes: Optional[str] = None,
    ) -> None:
        settled = [so.seller_id for so in targets if so.profit_transferred]
        if settled:
            raise PreconditionError(
                "Profit was already transferred to the seller",
                details={"order_number": order.order_number, "seller_ids": settled},
            )
        for sub_order in targets:
            apply_transition(order, sub_order, new_status, ctx, notes=notes or reason)
            sub_order.status_reason = reason
            ctx.emit(order, event_type, seller_id=sub_order.seller_id, reason=reason, notes=notes)
        refund_payment_if_fully_reversed(order, ctx)

    async def refund(
        self,
        order_number: str,
        reason: str,
        actor: Actor,
        seller_id: Optional[str] = None,
    ) -> Order:
        """
        Admin refund of one sub-order, or of everything still refundable.

        Shipped or delivered sub-orders move to refunded. A sub-order that was
        cancelled after payment keeps its status; only the buyer's share of the
        payment is returned. The payment itself flips to refunded once no money
        for any sub-order is left with the platform.
        """
        reason = validate_reason(reason)
        PermissionChecker(actor).require_role(ActorRole.ADMIN, action="refund orders")

        def fn(order: Order, ctx: UpdateContext) -> Order:
            cancelled: List[SubOrder] = []
            if seller_id is not None:
                sub_order = find_sub_order(order, seller_id)
                if is_settled_with_buyer(sub_order):
                    return order
                if sub_order.status == SubOrderStatus.CANCELLED.value:
                    cancelled = [sub_order]
                    targets = []
                else:
                    targets = [sub_order]
            else:
                targets = [
                    so for so in order.sub_orders
                    if so.status in (SubOrderStatus.SHIPPED.value, SubOrderStatus.DELIVERED.value)
                ]
                if order.payment is not None and order.payment.status == PaymentStatus.COMPLETED.value:
                    cancelled = [
                        so for so in order.sub_orders
                        if so.status == SubOrderStatus.CANCELLED.value and not so.payment_refunded
                    ]
                if not targets and not cancelled:
                    raise PreconditionError(
                        "Nothing left to refund on this order",
                        details={"order_number": order.order_number},
                    )
            for sub_order in cancelled:
                refund_cancelled_share(order, sub_order, reason, ctx)
            if targets:
                self._reverse(order, ctx, targets, SubOrderStatus.REFUNDED,
                              EventType.SUB_ORDER_REFUNDED, reason)
            else:
                refund_payment_if_fully_reversed(order, ctx)
            return order

        return await self.store.transact(order_number, fn, actor)

    async def request_return(
        self,
        order_number: str,
        seller_id: str,
        reason: str,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Order:
        """Buyer returns one seller's shipped or delivered goods."""
        reason = validate_reason(reason)
        if notes is not None and len(notes) > settings.MAX_VERIFICATION_NOTES_LENGTH:
            raise ValidationError(
                f"Notes must be at most {settings.MAX_VERIFICATION_NOTES_LENGTH} characters",
                details={"field": "notes", "max_length": settings.MAX_VERIFICATION_NOTES_LENGTH},
            )
        PermissionChecker(actor).require_role(ActorRole.BUYER, action="return orders")

        def fn(order: Order, ctx: UpdateContext) -> Order:
            if order.buyer_id != actor.id:
                raise NotFoundError("Order not found", details={"order_number": order.order_number})
            sub_order = find_sub_order(order, seller_id)
            if sub_order.status == SubOrderStatus.RETURNED.value:
                return order
            self._reverse(order, ctx, [sub_order], SubOrderStatus.RETURNED,
                          EventType.SUB_ORDER_RETURNED, reason, notes)
            return order

        return await self.store.transact(order_number, fn, actor)
