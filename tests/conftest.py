"""
Shared fixtures.

Every test gets its own SQLite file database so concurrent sessions behave
like separate connections to a real server.
"""

from decimal import Decimal
from typing import Optional

import pytest
from httpx import ASGITransport, AsyncClient

from orderflow.api.deps import get_session_factory
from orderflow.core.permissions import Actor, ActorRole
from orderflow.core.security import create_access_token
from orderflow.database import Base, build_engine, build_session_factory, init_db
from orderflow.main import app
from orderflow.schemas.order import OrderCreate
from orderflow.services.events import event_bus
from orderflow.services.ledger_store import LedgerStore
from orderflow.services.order_query_service import OrderQueryService
from orderflow.services.order_service import OrderService
from orderflow.services.payment_verification_service import PaymentVerificationService
from orderflow.services.settlement_service import DatabasePayoutDirectory, SettlementService


BUYER = Actor(id="buyer-1", role=ActorRole.BUYER)
OTHER_BUYER = Actor(id="buyer-2", role=ActorRole.BUYER)
SELLER_A = Actor(id="seller-a", role=ActorRole.SELLER)
SELLER_B = Actor(id="seller-b", role=ActorRole.SELLER)
OUTSIDER_SELLER = Actor(id="seller-z", role=ActorRole.SELLER)
ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN)


def seller_part(
    seller_id: str,
    price: str,
    quantity: int = 1,
    shipping: str = "0.00",
    gem_name: Optional[str] = None,
) -> dict:
    unit_price = Decimal(price)
    total = unit_price * quantity
    return {
        "seller_id": seller_id,
        "seller": {"name": f"Seller {seller_id}", "store_name": f"{seller_id} gems", "country": "LK"},
        "items": [
            {
                "gem_id": f"gem-{seller_id}",
                "name": gem_name or f"Sapphire from {seller_id}",
                "gem_details": {"type": "sapphire", "carat": "1.2"},
                "quantity": quantity,
                "unit_price": str(unit_price),
                "total_price": str(total),
            }
        ],
        "subtotal": str(total),
        "shipping_cost": shipping,
        "total_amount": str(total + Decimal(shipping)),
    }


def checkout_payload(
    payment_method: str = "bank-transfer",
    parts: Optional[list] = None,
    checkout_reference: Optional[str] = None,
    buyer_name: str = "Ada Buyer",
) -> dict:
    parts = parts or [seller_part("seller-a", "100.00"), seller_part("seller-b", "50.00")]
    subtotal = sum(Decimal(p["subtotal"]) for p in parts)
    shipping = sum(Decimal(p["shipping_cost"]) for p in parts)
    total = sum(Decimal(p["total_amount"]) for p in parts)
    payload = {
        "buyer": {"name": buyer_name, "email": "ada@example.com", "phone": "+94 11 555 0100", "country": "LK"},
        "shipping": {
            "address": {
                "full_name": buyer_name,
                "street": "1 Gem Street",
                "city": "Colombo",
                "postal_code": "00100",
                "country": "LK",
            },
            "method": "standard",
        },
        "payment_method": payment_method,
        "sub_orders": parts,
        "subtotal": str(subtotal),
        "total_shipping": str(shipping),
        "total_amount": str(total),
    }
    if checkout_reference:
        payload["checkout_reference"] = checkout_reference
    return payload


def make_checkout(**kwargs) -> OrderCreate:
    return OrderCreate.model_validate(checkout_payload(**kwargs))


def bearer(actor: Actor) -> dict:
    token = create_access_token(actor.id, actor.role.value)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'orderflow-test.db'}")
    await init_db(engine)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def bus():
    event_bus.clear()
    yield event_bus
    await event_bus.drain()
    event_bus.clear()


@pytest.fixture
def store(session_factory, bus):
    return LedgerStore(session_factory, bus)


@pytest.fixture
def orders(store):
    return OrderService(store)


@pytest.fixture
def payments(store):
    return PaymentVerificationService(store)


@pytest.fixture
def directory(session_factory):
    return DatabasePayoutDirectory(session_factory)


@pytest.fixture
def settlement(store, directory):
    return SettlementService(store, directory)


@pytest.fixture
def queries(session_factory, store):
    return OrderQueryService(session_factory, store)


@pytest.fixture
async def placed_order(orders):
    """Two-seller bank-transfer order, payment pending."""
    return await orders.place_order(make_checkout(), BUYER)


@pytest.fixture
async def paid_order(orders, payments, placed_order):
    """Two-seller order whose bank transfer was approved."""
    await payments.submit_receipt(placed_order.order_number, "https://evidence.example.com/r/1.png", BUYER)
    await payments.verify_receipt(placed_order.order_number, "approved", ADMIN)
    return await orders.store.get_by_number(placed_order.order_number)


@pytest.fixture
async def payout_accounts(directory):
    for seller in (SELLER_A, SELLER_B):
        await directory.upsert_account(seller.id, "bank-transfer", {"iban": f"LK00{seller.id}"})


@pytest.fixture
async def client(session_factory, bus):
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
