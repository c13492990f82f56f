from datetime import timedelta

from orderflow.db_types import utcnow
from orderflow.jobs.order_jobs import JOBS, auto_confirm_deliveries, settle_delivered_orders
from orderflow.schemas.order import MarkShippedRequest

from tests.conftest import ADMIN, BUYER, SELLER_A, SELLER_B


async def ship(orders, order_number, seller):
    await orders.mark_shipped(
        order_number, MarkShippedRequest(tracking_number=f"TRK-{seller.id}", courier="DHL"), seller
    )


class TestAutoConfirmDeliveries:
    async def test_confirms_after_window(self, orders, session_factory, paid_order):
        await ship(orders, paid_order.order_number, SELLER_A)

        result = await auto_confirm_deliveries(session_factory, now=utcnow() + timedelta(days=15), days=14)

        assert result == {"processed": 1, "confirmed": 1, "failed": 0}
        fresh = await orders.store.get_by_number(paid_order.order_number)
        sub_order = fresh.get_sub_order("seller-a")
        assert sub_order.status == "delivered"
        assert sub_order.delivery_confirmed_by == "system"
        assert fresh.get_sub_order("seller-b").status == "paid"

    async def test_leaves_recent_shipments_alone(self, orders, session_factory, paid_order):
        await ship(orders, paid_order.order_number, SELLER_A)

        result = await auto_confirm_deliveries(session_factory, days=14)

        assert result["processed"] == 0
        fresh = await orders.store.get_by_number(paid_order.order_number)
        assert fresh.get_sub_order("seller-a").status == "shipped"

    async def test_buyer_confirmation_wins(self, orders, session_factory, paid_order):
        await ship(orders, paid_order.order_number, SELLER_A)
        await ship(orders, paid_order.order_number, SELLER_B)
        await orders.confirm_delivery(paid_order.order_number, BUYER, seller_id="seller-b")

        result = await auto_confirm_deliveries(session_factory, now=utcnow() + timedelta(days=30), days=14)

        assert result["confirmed"] == 1
        fresh = await orders.store.get_by_number(paid_order.order_number)
        assert fresh.derived_status == "delivered"
        assert fresh.get_sub_order("seller-b").delivery_confirmed_by == "buyer"


class TestSettleDeliveredOrders:
    async def test_settles_every_delivered_sub_order(self, orders, session_factory, payout_accounts, paid_order):
        for seller in (SELLER_A, SELLER_B):
            await ship(orders, paid_order.order_number, seller)
        await orders.confirm_delivery(paid_order.order_number, ADMIN)

        result = await settle_delivered_orders(session_factory)

        assert result == {"processed": 2, "settled": 2, "failed": 0}
        fresh = await orders.store.get_by_number(paid_order.order_number)
        assert all(so.profit_transferred for so in fresh.sub_orders)

        again = await settle_delivered_orders(session_factory)
        assert again["processed"] == 0

    async def test_missing_account_is_flagged_not_raised(self, orders, session_factory, paid_order):
        await ship(orders, paid_order.order_number, SELLER_A)
        await orders.confirm_delivery(paid_order.order_number, BUYER)

        result = await settle_delivered_orders(session_factory)

        assert result == {"processed": 1, "settled": 0, "failed": 1}
        fresh = await orders.store.get_by_number(paid_order.order_number)
        assert fresh.get_sub_order("seller-a").payout_error == "Seller payout account not configured"


def test_registry_names_match_scheduler_ids():
    assert set(JOBS) == {"auto_confirm_deliveries", "settle_delivered_orders"}
