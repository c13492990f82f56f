"""
Settlement / payout trigger.

Releases a seller's profit once their sub-order is delivered and the
order's payment is completed. Each sub-order is settled at most once:

- the transition runs inside the ledger store's optimistic-concurrency
  check, so a concurrent second call is retried against fresh state and
  finds ``profit_transferred`` already set;
- ``payouts.sub_order_id`` is unique, so even a lost race cannot insert a
  second payout row.

The payout destination is looked up before anything is written. When the
seller has no usable payout account the attempt fails closed with
``PayoutFailedError`` and the sub-order is flagged for manual retry.
"""

import logging
import secrets
from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orderflow.core.exceptions import PayoutFailedError, PreconditionError
from orderflow.core.permissions import Actor, ActorRole, PermissionChecker
from orderflow.core.state_machine import SubOrderStatus
from orderflow.database import async_session_factory
from orderflow.models import Order, Payout, SellerPayoutAccount, SubOrder
from orderflow.services.events import EventType
from orderflow.services.ledger_store import LedgerStore, UpdateContext
from orderflow.services.transitions import find_sub_order, require_payment_completed

logger = logging.getLogger(__name__)


class PayoutDirectory(Protocol):
    """Where seller payout destinations come from."""

    async def get_destination(self, seller_id: str) -> Optional[dict]:
        """Opaque destination details, or None when the seller has none configured."""
        ...


class DatabasePayoutDirectory:
    """Default directory backed by the seller_payout_accounts table."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory or async_session_factory

    async def get_destination(self, seller_id: str) -> Optional[dict]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SellerPayoutAccount).where(SellerPayoutAccount.seller_id == seller_id)
            )
            account = result.scalar_one_or_none()
            if account is None or not account.is_active:
                return None
            return {"method": account.payment_method, **account.details}

    async def get_account(self, seller_id: str) -> Optional[SellerPayoutAccount]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SellerPayoutAccount).where(SellerPayoutAccount.seller_id == seller_id)
            )
            return result.scalar_one_or_none()

    async def upsert_account(
        self,
        seller_id: str,
        payment_method: str,
        details: dict,
        is_active: bool = True,
    ) -> SellerPayoutAccount:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SellerPayoutAccount).where(SellerPayoutAccount.seller_id == seller_id)
            )
            account = result.scalar_one_or_none()
            if account is None:
                account = SellerPayoutAccount(seller_id=seller_id)
                session.add(account)
            account.payment_method = payment_method
            account.details = details
            account.is_active = is_active
            await session.commit()
            await session.refresh(account)
            logger.info(f"Payout account for seller {seller_id} set to {payment_method}")
            return account


def generate_payout_reference(order_number: str) -> str:
    """PAY-YYYYMMDD-XXXXXXXX, date taken from the order number."""
    date_part = order_number.split("-")[1] if order_number.count("-") >= 2 else "00000000"
    return f"PAY-{date_part}-{secrets.token_hex(4).upper()}"


def is_eligible(order: Order, sub_order: SubOrder) -> bool:
    return (
        sub_order.status == SubOrderStatus.DELIVERED.value
        and order.payment is not None
        and order.payment.is_completed
        and not sub_order.profit_transferred
    )


class SettlementService:
    """Once-only profit transfer per sub-order."""

    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        directory: Optional[PayoutDirectory] = None,
    ):
        self.store = store or LedgerStore()
        self.directory = directory or DatabasePayoutDirectory(self.store.session_factory)

    async def _flag_failure(self, order_number: str, seller_id: str, message: str, actor: Actor) -> None:
        """Record the failure on the sub-order so it shows up in the payout queue."""
        def fn(order: Order, ctx: UpdateContext) -> None:
            sub_order = find_sub_order(order, seller_id)
            if sub_order.profit_transferred or sub_order.payout_error == message:
                return
            sub_order.payout_error = message
            ctx.emit(order, EventType.PAYOUT_FAILED, seller_id=seller_id, error=message)

        await self.store.transact(order_number, fn, actor)

    async def _settle_one(self, order_number: str, seller_id: str, actor: Actor) -> Payout:
        # Settled or ineligible sub-orders never reach the directory
        order = await self.store.get_by_number(order_number)
        sub_order = find_sub_order(order, seller_id)
        if sub_order.profit_transferred and sub_order.payout is not None:
            return sub_order.payout
        self._check_eligible(order, sub_order)

        destination = await self.directory.get_destination(seller_id)
        if not destination:
            message = "Seller payout account not configured"
            logger.error(f"Payout for {order_number} seller {seller_id} failed: {message}")
            await self._flag_failure(order_number, seller_id, message, actor)
            raise PayoutFailedError(
                message,
                details={"order_number": order_number, "seller_id": seller_id},
            )

        def fn(order: Order, ctx: UpdateContext) -> Payout:
            sub_order = find_sub_order(order, seller_id)
            if sub_order.profit_transferred:
                # Another caller won the race; report its payout
                return sub_order.payout
            self._check_eligible(order, sub_order)

            payout = Payout(
                reference=generate_payout_reference(order.order_number),
                order_number=order.order_number,
                seller_id=seller_id,
                amount=sub_order.payout_amount,
                commission=sub_order.commission_total,
                currency=order.currency,
                destination=destination,
                initiated_by=actor.id,
                created_at=ctx.now,
            )
            sub_order.payout = payout
            sub_order.profit_transferred = True
            sub_order.payout_error = None
            ctx.record(order, sub_order, sub_order.status, sub_order.status,
                       notes=f"Profit transferred ({payout.reference})")
            ctx.emit(
                order,
                EventType.PROFIT_TRANSFERRED,
                seller_id=seller_id,
                reference=payout.reference,
                amount=payout.amount,
                commission=payout.commission,
                currency=payout.currency,
            )
            return payout

        payout = await self.store.transact(order_number, fn, actor)
        logger.info(f"Payout {payout.reference} for {order_number} seller {seller_id}: {payout.amount}")
        return payout

    def _check_eligible(self, order: Order, sub_order: SubOrder) -> None:
        if sub_order.status != SubOrderStatus.DELIVERED.value:
            raise PreconditionError(
                "Sub-order must be delivered before profit can be transferred",
                details={
                    "order_number": order.order_number,
                    "seller_id": sub_order.seller_id,
                    "status": sub_order.status,
                },
            )
        require_payment_completed(order, "transferring profit")

    async def transfer_profit(
        self,
        order_number: str,
        actor: Actor,
        seller_id: Optional[str] = None,
    ) -> List[Payout]:
        """
        Settle one seller's sub-order, or every eligible sub-order of the order.

        Already settled sub-orders return their existing payout.
        """
        PermissionChecker(actor).require_role(
            ActorRole.ADMIN, ActorRole.SYSTEM, action="transfer profit"
        )

        if seller_id is not None:
            return [await self._settle_one(order_number, seller_id, actor)]

        order = await self.store.get_by_number(order_number)
        payouts = [so.payout for so in order.sub_orders if so.profit_transferred and so.payout is not None]
        eligible = [so.seller_id for so in order.sub_orders if is_eligible(order, so)]
        if not eligible and not payouts:
            raise PreconditionError(
                "No sub-orders are eligible for profit transfer",
                details={
                    "order_number": order_number,
                    "statuses": {so.seller_id: so.status for so in order.sub_orders},
                    "payment_status": order.payment.status,
                },
            )
        for eligible_seller in eligible:
            payouts.append(await self._settle_one(order_number, eligible_seller, actor))
        return payouts
