import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from orderflow.core.exceptions import (
    PayoutFailedError,
    PermissionDeniedError,
    PreconditionError,
)
from orderflow.models import Payout
from orderflow.schemas.order import MarkShippedRequest
from orderflow.services.settlement_service import generate_payout_reference

from tests.conftest import ADMIN, BUYER, SELLER_A, SELLER_B


async def deliver(orders, order_number, *sellers):
    for seller in sellers:
        await orders.mark_shipped(
            order_number,
            MarkShippedRequest(tracking_number=f"TRK-{seller.id}", courier="FedEx"),
            seller,
        )
        await orders.confirm_delivery(order_number, BUYER, seller_id=seller.id)


async def payout_count(session_factory) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count(Payout.id)))).scalar()


async def test_transfer_creates_payout(orders, settlement, payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)

    [payout] = await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")

    assert payout.amount == Decimal("90.00")
    assert payout.commission == Decimal("10.00")
    assert payout.destination["iban"] == "LK00seller-a"
    assert payout.reference.startswith("PAY-")
    fresh = await orders.store.get_by_number(paid_order.order_number)
    assert fresh.get_sub_order("seller-a").profit_transferred
    assert not fresh.get_sub_order("seller-b").profit_transferred


async def test_second_call_returns_existing_payout(orders, settlement, session_factory,
                                                   payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)

    [first] = await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")
    [second] = await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")

    assert second.reference == first.reference
    assert await payout_count(session_factory) == 1


async def test_concurrent_transfers_pay_once(orders, settlement, session_factory,
                                             payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)

    results = await asyncio.gather(*[
        settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")
        for _ in range(4)
    ])

    references = {payouts[0].reference for payouts in results}
    assert len(references) == 1
    assert await payout_count(session_factory) == 1


async def test_whole_order_settles_every_eligible_sub_order(orders, settlement, payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A, SELLER_B)

    payouts = await settlement.transfer_profit(paid_order.order_number, ADMIN)

    assert sorted(p.seller_id for p in payouts) == ["seller-a", "seller-b"]
    assert sum(p.amount for p in payouts) == Decimal("135.00")


async def test_not_delivered(orders, settlement, payout_accounts, paid_order):
    await orders.mark_shipped(
        paid_order.order_number, MarkShippedRequest(tracking_number="T-1", courier="UPS"), SELLER_A
    )
    with pytest.raises(PreconditionError):
        await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")


async def test_unpaid_order_is_never_settled(settlement, placed_order):
    with pytest.raises(PreconditionError):
        await settlement.transfer_profit(placed_order.order_number, ADMIN)


async def test_refunded_sub_order_is_never_settled(orders, settlement, payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)
    await orders.cancel(paid_order.order_number, "Out of stock", SELLER_B, seller_id="seller-b")
    await orders.refund(paid_order.order_number, "Fake stone", ADMIN, seller_id="seller-a")

    with pytest.raises(PreconditionError):
        await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")


async def test_missing_account_fails_closed_and_flags(orders, settlement, session_factory, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)

    with pytest.raises(PayoutFailedError):
        await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")

    fresh = await orders.store.get_by_number(paid_order.order_number)
    sub_order = fresh.get_sub_order("seller-a")
    assert not sub_order.profit_transferred
    assert sub_order.payout_error == "Seller payout account not configured"
    assert sub_order.status == "delivered"
    assert await payout_count(session_factory) == 0


async def test_retry_after_account_is_configured(orders, settlement, directory, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)
    with pytest.raises(PayoutFailedError):
        await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")

    await directory.upsert_account("seller-a", "paypal", {"email": "a@example.com"})
    [payout] = await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")

    assert payout.destination == {"method": "paypal", "email": "a@example.com"}
    fresh = await orders.store.get_by_number(paid_order.order_number)
    assert fresh.get_sub_order("seller-a").payout_error is None


async def test_inactive_account_counts_as_missing(orders, settlement, directory, paid_order):
    await directory.upsert_account("seller-a", "wise", {"account": "123"}, is_active=False)
    await deliver(orders, paid_order.order_number, SELLER_A)

    with pytest.raises(PayoutFailedError):
        await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")


async def test_settled_sub_order_cannot_be_refunded(orders, settlement, payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)
    await settlement.transfer_profit(paid_order.order_number, ADMIN, seller_id="seller-a")

    with pytest.raises(PreconditionError):
        await orders.refund(paid_order.order_number, "Too late", ADMIN, seller_id="seller-a")


async def test_sellers_cannot_trigger_payouts(orders, settlement, payout_accounts, paid_order):
    await deliver(orders, paid_order.order_number, SELLER_A)
    with pytest.raises(PermissionDeniedError):
        await settlement.transfer_profit(paid_order.order_number, SELLER_A, seller_id="seller-a")


def test_payout_reference_carries_order_date():
    reference = generate_payout_reference("ORD-20250301-0007")
    assert reference.startswith("PAY-20250301-")
    assert len(reference.split("-")[2]) == 8
