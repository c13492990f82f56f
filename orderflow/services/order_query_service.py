"""
Query / projection layer.

Read-only, role-filtered views over the ledger:

- buyers see their own orders in full (no payout data);
- sellers see only their own sub-orders with a redacted parent context;
- admins see everything, plus the receipt verification queue, the payout
  queue and summary statistics.

Filters work on the snapshot columns frozen at placement, never on live
buyer or seller profiles.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple, Union

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from orderflow.core.exceptions import NotFoundError
from orderflow.core.permissions import Actor, ActorRole, PermissionChecker
from orderflow.core.state_machine import OrderStatus, SubOrderStatus
from orderflow.database import async_session_factory
from orderflow.models import (
    Order,
    OrderItem,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    SubOrder,
)
from orderflow.schemas.base import page_count
from orderflow.schemas.order import (
    AdminOrderResponse,
    OrderFilters,
    OrderListResponse,
    OrderResponse,
    OrderSummary,
    SellerOrderListResponse,
    SellerOrderView,
    SellerSubOrderResponse,
    TopSeller,
)
from orderflow.schemas.payment import (
    PaymentStatusBrief,
    VerificationQueueItem,
    VerificationQueueResponse,
)
from orderflow.schemas.payout import PayoutQueueItem, PayoutQueueResponse
from orderflow.services.ledger_store import LedgerStore, aggregate_options
from orderflow.services.order_service import money

logger = logging.getLogger(__name__)


def to_seller_view(order: Order, sub_order: SubOrder) -> SellerOrderView:
    """Parent context trimmed to what the seller needs to fulfil their part."""
    shipping = order.shipping_details or {}
    return SellerOrderView(
        order_number=order.order_number,
        placed_at=order.placed_at,
        order_status=OrderStatus(order.derived_status),
        buyer_name=order.buyer_name,
        shipping_address=shipping.get("address", {}),
        shipping_method=sub_order.shipping_method,
        special_instructions=shipping.get("special_instructions"),
        payment=PaymentStatusBrief.model_validate(order.payment),
        currency=order.currency,
        sub_order=SellerSubOrderResponse.model_validate(sub_order),
    )


class OrderQueryService:
    """Role-aware read views."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        store: Optional[LedgerStore] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.store = store or LedgerStore(self.session_factory)

    # ==================== FILTERS ====================

    def _order_filters(self, filters: OrderFilters) -> list:
        conditions = []

        if filters.status:
            conditions.append(Order.derived_status == filters.status.value)

        if filters.payment_status:
            conditions.append(PaymentRecord.status == filters.payment_status.value)

        if filters.payment_method:
            conditions.append(PaymentRecord.method == filters.payment_method.value)

        if filters.date_from:
            conditions.append(Order.placed_at >= filters.date_from)

        if filters.date_to:
            conditions.append(Order.placed_at <= filters.date_to)

        if filters.min_amount is not None:
            conditions.append(Order.total_amount >= filters.min_amount)

        if filters.max_amount is not None:
            conditions.append(Order.total_amount <= filters.max_amount)

        if filters.search:
            search_filter = f"%{filters.search.strip()}%"
            seller_match = (
                select(SubOrder.id)
                .where(SubOrder.order_id == Order.id, SubOrder.seller_name.ilike(search_filter))
                .exists()
            )
            item_match = (
                select(OrderItem.id)
                .join(SubOrder, OrderItem.sub_order_id == SubOrder.id)
                .where(SubOrder.order_id == Order.id, OrderItem.gem_name.ilike(search_filter))
                .exists()
            )
            conditions.append(
                or_(
                    Order.order_number.ilike(search_filter),
                    Order.buyer_name.ilike(search_filter),
                    Order.buyer_email.ilike(search_filter),
                    seller_match,
                    item_match,
                )
            )

        return conditions

    def _sub_order_filters(self, filters: OrderFilters) -> list:
        conditions = []

        if filters.status:
            conditions.append(SubOrder.status == filters.status.value)

        if filters.payment_status:
            conditions.append(PaymentRecord.status == filters.payment_status.value)

        if filters.payment_method:
            conditions.append(PaymentRecord.method == filters.payment_method.value)

        if filters.date_from:
            conditions.append(Order.placed_at >= filters.date_from)

        if filters.date_to:
            conditions.append(Order.placed_at <= filters.date_to)

        if filters.min_amount is not None:
            conditions.append(SubOrder.total_amount >= filters.min_amount)

        if filters.max_amount is not None:
            conditions.append(SubOrder.total_amount <= filters.max_amount)

        if filters.search:
            search_filter = f"%{filters.search.strip()}%"
            item_match = (
                select(OrderItem.id)
                .where(OrderItem.sub_order_id == SubOrder.id, OrderItem.gem_name.ilike(search_filter))
                .exists()
            )
            conditions.append(
                or_(
                    Order.order_number.ilike(search_filter),
                    Order.buyer_name.ilike(search_filter),
                    item_match,
                )
            )

        return conditions

    @staticmethod
    def _sort_column(filters: OrderFilters, seller: bool = False):
        columns = {
            "placed_at": Order.placed_at,
            "total_amount": SubOrder.total_amount if seller else Order.total_amount,
            "status": SubOrder.status if seller else Order.derived_status,
        }
        column = columns.get(filters.sort_by, Order.placed_at)
        return column.desc() if filters.sort_order == "desc" else column.asc()

    # ==================== LISTS ====================

    async def _list_orders(
        self,
        filters: OrderFilters,
        buyer_id: Optional[str] = None,
    ) -> Tuple[List[Order], int]:
        conditions = self._order_filters(filters)
        if buyer_id is not None:
            conditions.append(Order.buyer_id == buyer_id)

        base = select(Order).join(PaymentRecord, PaymentRecord.order_id == Order.id)
        if conditions:
            base = base.where(and_(*conditions))

        async with self.session_factory() as session:
            count_stmt = select(func.count()).select_from(base.subquery())
            total = (await session.execute(count_stmt)).scalar() or 0

            stmt = (
                base.options(*aggregate_options())
                .order_by(self._sort_column(filters), Order.id)
                .offset((filters.page - 1) * filters.size)
                .limit(filters.size)
            )
            orders = (await session.execute(stmt)).scalars().unique().all()

        return list(orders), total

    async def _list_seller_sub_orders(
        self,
        filters: OrderFilters,
        seller_id: str,
    ) -> Tuple[List[SubOrder], int]:
        conditions = self._sub_order_filters(filters)
        conditions.append(SubOrder.seller_id == seller_id)

        base = (
            select(SubOrder)
            .join(Order, SubOrder.order_id == Order.id)
            .join(PaymentRecord, PaymentRecord.order_id == Order.id)
            .where(and_(*conditions))
        )

        async with self.session_factory() as session:
            count_stmt = select(func.count()).select_from(base.subquery())
            total = (await session.execute(count_stmt)).scalar() or 0

            stmt = (
                base.options(
                    selectinload(SubOrder.items),
                    selectinload(SubOrder.payout),
                    selectinload(SubOrder.order).selectinload(Order.payment),
                )
                .order_by(self._sort_column(filters, seller=True), SubOrder.id)
                .offset((filters.page - 1) * filters.size)
                .limit(filters.size)
            )
            sub_orders = (await session.execute(stmt)).scalars().unique().all()

        return list(sub_orders), total

    async def list_orders(
        self,
        actor: Actor,
        filters: Optional[OrderFilters] = None,
    ) -> Union[OrderListResponse, SellerOrderListResponse]:
        """Orders visible to the caller, newest first unless sorted otherwise."""
        filters = filters or OrderFilters()

        if actor.role == ActorRole.SELLER:
            sub_orders, total = await self._list_seller_sub_orders(filters, actor.id)
            return SellerOrderListResponse(
                items=[to_seller_view(so.order, so) for so in sub_orders],
                total=total,
                page=filters.page,
                size=filters.size,
                pages=page_count(total, filters.size),
            )

        if actor.role == ActorRole.BUYER:
            orders, total = await self._list_orders(filters, buyer_id=actor.id)
        else:
            orders, total = await self._list_orders(filters)

        return OrderListResponse(
            items=[OrderResponse.model_validate(o) for o in orders],
            total=total,
            page=filters.page,
            size=filters.size,
            pages=page_count(total, filters.size),
        )

    async def get_order(
        self,
        order_number: str,
        actor: Actor,
    ) -> Union[OrderResponse, AdminOrderResponse, SellerOrderView]:
        """One order, shaped for the caller's role. Invisible orders are not found."""
        order = await self.store.get_by_number(order_number, with_history=actor.is_privileged)

        if actor.is_privileged:
            return AdminOrderResponse.model_validate(order)

        if actor.role == ActorRole.BUYER and order.buyer_id == actor.id:
            return OrderResponse.model_validate(order)

        if actor.role == ActorRole.SELLER:
            sub_order = order.get_sub_order(actor.id)
            if sub_order is not None:
                return to_seller_view(order, sub_order)

        raise NotFoundError("Order not found", details={"order_number": order_number})

    # ==================== ADMIN QUEUES ====================

    async def verification_queue(self, actor: Actor, page: int = 1, size: int = 20) -> VerificationQueueResponse:
        """Bank-transfer receipts awaiting a decision, oldest submission first."""
        PermissionChecker(actor).require_role(ActorRole.ADMIN, action="view the verification queue")

        conditions = [
            PaymentRecord.method == PaymentMethod.BANK_TRANSFER.value,
            PaymentRecord.status == PaymentStatus.PROCESSING.value,
            PaymentRecord.decision.is_(None),
        ]
        base = (
            select(Order, PaymentRecord)
            .join(PaymentRecord, PaymentRecord.order_id == Order.id)
            .where(and_(*conditions))
        )

        async with self.session_factory() as session:
            count_stmt = (
                select(func.count(PaymentRecord.id))
                .where(and_(*conditions))
            )
            total = (await session.execute(count_stmt)).scalar() or 0

            stmt = (
                base.order_by(PaymentRecord.receipt_submitted_at.asc(), Order.placed_at.asc())
                .offset((page - 1) * size)
                .limit(size)
            )
            rows = (await session.execute(stmt)).all()

        items = [
            VerificationQueueItem(
                order_number=order.order_number,
                buyer_name=order.buyer_name,
                buyer_email=order.buyer_email,
                amount=payment.amount,
                currency=payment.currency,
                receipt_url=payment.receipt_url,
                receipt_submitted_at=payment.receipt_submitted_at,
                reupload_requested=payment.reupload_requested,
                verification_notes=payment.verification_notes,
                placed_at=order.placed_at,
            )
            for order, payment in rows
        ]
        return VerificationQueueResponse(
            items=items, total=total, page=page, size=size, pages=page_count(total, size)
        )

    async def payout_queue(self, actor: Actor, page: int = 1, size: int = 20) -> PayoutQueueResponse:
        """Delivered, paid and unsettled sub-orders. Failed payouts first."""
        PermissionChecker(actor).require_role(ActorRole.ADMIN, action="view the payout queue")

        conditions = [
            SubOrder.status == SubOrderStatus.DELIVERED.value,
            SubOrder.profit_transferred.is_(False),
            PaymentRecord.status == PaymentStatus.COMPLETED.value,
        ]
        base = (
            select(SubOrder, Order)
            .join(Order, SubOrder.order_id == Order.id)
            .join(PaymentRecord, PaymentRecord.order_id == Order.id)
            .where(and_(*conditions))
        )

        async with self.session_factory() as session:
            count_stmt = select(func.count()).select_from(base.subquery())
            total = (await session.execute(count_stmt)).scalar() or 0

            flagged_first = case((SubOrder.payout_error.is_(None), 1), else_=0)
            stmt = (
                base.order_by(flagged_first.asc(), SubOrder.delivered_at.asc())
                .offset((page - 1) * size)
                .limit(size)
            )
            rows = (await session.execute(stmt)).all()

        items = [
            PayoutQueueItem(
                order_number=order.order_number,
                seller_id=sub_order.seller_id,
                seller_name=sub_order.seller_name,
                payout_amount=sub_order.payout_amount,
                commission=sub_order.commission_total,
                currency=order.currency,
                delivered_at=sub_order.delivered_at,
                payout_error=sub_order.payout_error,
            )
            for sub_order, order in rows
        ]
        return PayoutQueueResponse(
            items=items, total=total, page=page, size=size, pages=page_count(total, size)
        )

    # ==================== SUMMARY ====================

    async def order_summary(
        self,
        actor: Actor,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        top_n: int = 5,
    ) -> OrderSummary:
        """Totals, revenue from completed payments, status breakdowns and top sellers."""
        PermissionChecker(actor).require_role(ActorRole.ADMIN, action="view order statistics")

        date_conditions = []
        if date_from:
            date_conditions.append(Order.placed_at >= date_from)
        if date_to:
            date_conditions.append(Order.placed_at <= date_to)

        def scoped(stmt):
            return stmt.where(and_(*date_conditions)) if date_conditions else stmt

        async with self.session_factory() as session:
            total_orders = (await session.execute(
                scoped(select(func.count(Order.id)))
            )).scalar() or 0

            paid_row = (await session.execute(
                scoped(
                    select(func.count(Order.id), func.coalesce(func.sum(Order.total_amount), 0))
                    .join(PaymentRecord, PaymentRecord.order_id == Order.id)
                    .where(PaymentRecord.status == PaymentStatus.COMPLETED.value)
                )
            )).one()
            paid_count, revenue = paid_row[0] or 0, money(Decimal(str(paid_row[1] or 0)))

            status_rows = (await session.execute(
                scoped(select(Order.derived_status, func.count(Order.id)).group_by(Order.derived_status))
            )).all()

            payment_rows = (await session.execute(
                scoped(
                    select(PaymentRecord.status, func.count(PaymentRecord.id))
                    .join(Order, PaymentRecord.order_id == Order.id)
                    .group_by(PaymentRecord.status)
                )
            )).all()

            pending_verifications = (await session.execute(
                scoped(
                    select(func.count(PaymentRecord.id))
                    .join(Order, PaymentRecord.order_id == Order.id)
                    .where(
                        PaymentRecord.method == PaymentMethod.BANK_TRANSFER.value,
                        PaymentRecord.status == PaymentStatus.PROCESSING.value,
                        PaymentRecord.decision.is_(None),
                    )
                )
            )).scalar() or 0

            pending_payouts = (await session.execute(
                scoped(
                    select(func.count(SubOrder.id))
                    .join(Order, SubOrder.order_id == Order.id)
                    .join(PaymentRecord, PaymentRecord.order_id == Order.id)
                    .where(
                        SubOrder.status == SubOrderStatus.DELIVERED.value,
                        SubOrder.profit_transferred.is_(False),
                        PaymentRecord.status == PaymentStatus.COMPLETED.value,
                    )
                )
            )).scalar() or 0

            revenue_col = func.sum(SubOrder.total_amount)
            seller_rows = (await session.execute(
                scoped(
                    select(
                        SubOrder.seller_id,
                        func.max(SubOrder.seller_name),
                        func.count(SubOrder.id),
                        revenue_col,
                    )
                    .join(Order, SubOrder.order_id == Order.id)
                    .where(SubOrder.status.notin_([
                        SubOrderStatus.CANCELLED.value,
                        SubOrderStatus.REFUNDED.value,
                        SubOrderStatus.RETURNED.value,
                    ]))
                    .group_by(SubOrder.seller_id)
                    .order_by(revenue_col.desc())
                    .limit(top_n)
                )
            )).all()

        average = money(revenue / paid_count) if paid_count else Decimal("0.00")
        return OrderSummary(
            total_orders=total_orders,
            total_revenue=revenue,
            average_order_value=average,
            status_breakdown={status: count for status, count in status_rows},
            payment_status_breakdown={status: count for status, count in payment_rows},
            pending_verifications=pending_verifications,
            pending_payouts=pending_payouts,
            top_sellers=[
                TopSeller(
                    seller_id=seller_id,
                    seller_name=seller_name,
                    order_count=count,
                    revenue=money(Decimal(str(total or 0))),
                )
                for seller_id, seller_name, count, total in seller_rows
            ],
        )
