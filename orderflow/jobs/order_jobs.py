"""
Order Lifecycle Jobs

Background jobs for:
- Delivery auto-confirmation (shipped sub-orders past the confirmation window)
- Automatic settlement of delivered, paid sub-orders
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.config import settings
from orderflow.core.exceptions import OrderFlowError, PayoutFailedError
from orderflow.core.permissions import SYSTEM_ACTOR
from orderflow.core.state_machine import SubOrderStatus
from orderflow.database import async_session_factory
from orderflow.db_types import utcnow
from orderflow.models import Order, PaymentRecord, PaymentStatus, SubOrder
from orderflow.services.ledger_store import LedgerStore
from orderflow.services.order_service import OrderService
from orderflow.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)


async def auto_confirm_deliveries(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    now: Optional[datetime] = None,
    days: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Confirm delivery of sub-orders shipped more than ``AUTO_CONFIRM_DELIVERY_DAYS`` ago.

    Uses ``OrderService.confirm_delivery`` as the system actor, so the same
    preconditions apply as for a buyer confirmation. Sub-orders that moved on
    (returned, refunded, confirmed meanwhile) are skipped by those checks.
    """
    session_factory = session_factory or async_session_factory
    now = now or utcnow()
    days = settings.AUTO_CONFIRM_DELIVERY_DAYS if days is None else days
    cutoff = now - timedelta(days=days)

    logger.info(f"Starting delivery auto-confirmation (shipped before {cutoff.isoformat()})...")
    processed_count = 0
    confirmed_count = 0
    failed_count = 0

    async with session_factory() as session:
        result = await session.execute(
            select(Order.order_number, SubOrder.seller_id)
            .select_from(SubOrder)
            .join(Order, SubOrder.order_id == Order.id)
            .where(
                SubOrder.status == SubOrderStatus.SHIPPED.value,
                SubOrder.shipped_at <= cutoff,
            )
            .order_by(SubOrder.shipped_at.asc())
            .limit(settings.AUTO_CONFIRM_BATCH_SIZE)
        )
        candidates = result.all()

    service = OrderService(LedgerStore(session_factory))
    for order_number, seller_id in candidates:
        processed_count += 1
        try:
            await service.confirm_delivery(order_number, SYSTEM_ACTOR, seller_id=seller_id)
            confirmed_count += 1
        except OrderFlowError as e:
            failed_count += 1
            logger.warning(f"Auto-confirm skipped for {order_number} seller {seller_id}: {e.message}")

    logger.info(
        f"Delivery auto-confirmation complete: {confirmed_count}/{processed_count} confirmed, "
        f"{failed_count} skipped"
    )
    return {
        "processed": processed_count,
        "confirmed": confirmed_count,
        "failed": failed_count,
    }


async def settle_delivered_orders(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Transfer profit for every delivered, paid, unsettled sub-order.

    Sub-orders flagged with an earlier payout failure are retried too; a
    seller without a payout account stays flagged until one is configured.
    """
    session_factory = session_factory or async_session_factory
    limit = limit or settings.AUTO_CONFIRM_BATCH_SIZE

    logger.info("Starting automatic settlement...")
    settled_count = 0
    failed_count = 0

    async with session_factory() as session:
        result = await session.execute(
            select(Order.order_number, SubOrder.seller_id)
            .select_from(SubOrder)
            .join(Order, SubOrder.order_id == Order.id)
            .join(PaymentRecord, PaymentRecord.order_id == Order.id)
            .where(
                SubOrder.status == SubOrderStatus.DELIVERED.value,
                SubOrder.profit_transferred.is_(False),
                PaymentRecord.status == PaymentStatus.COMPLETED.value,
            )
            .order_by(SubOrder.delivered_at.asc())
            .limit(limit)
        )
        candidates = result.all()

    service = SettlementService(LedgerStore(session_factory))
    for order_number, seller_id in candidates:
        try:
            await service.transfer_profit(order_number, SYSTEM_ACTOR, seller_id=seller_id)
            settled_count += 1
        except PayoutFailedError as e:
            failed_count += 1
            logger.error(f"Payout failed for {order_number} seller {seller_id}: {e.message}")
        except OrderFlowError as e:
            failed_count += 1
            logger.warning(f"Settlement skipped for {order_number} seller {seller_id}: {e.message}")

    logger.info(f"Automatic settlement complete: {settled_count} settled, {failed_count} failed")
    return {
        "processed": len(candidates),
        "settled": settled_count,
        "failed": failed_count,
    }


# Registry used by the scheduler wrapper
JOBS = {
    "auto_confirm_deliveries": auto_confirm_deliveries,
    "settle_delivered_orders": settle_delivered_orders,
}
