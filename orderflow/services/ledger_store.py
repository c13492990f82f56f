"""
Ledger Store

Durable storage for the Order aggregate (sub-orders, items, payment record,
payouts). Every write is a read-modify-write inside one session, guarded by
the ``orders.version`` column:

    async def ship(order, ctx):
        ...mutate order, ctx.record(...), ctx.emit(...)
        return order

    await store.update_by_number("ORD-20250101-0001", ship, actor)

If another writer committed in between, the UPDATE matches no row and the
whole unit of work is rolled back with ``ConflictError``. Services wrap the
call in ``retry_on_conflict`` so the transition is re-validated against fresh
state. Domain events collected on the context are written to the outbox in
the same transaction and published after commit.
"""

import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, TypeVar, Union

from pydantic_core import to_jsonable_python
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from orderflow.config import settings
from orderflow.core.exceptions import ConflictError, NotFoundError, ValidationError
from orderflow.core.permissions import Actor
from orderflow.core.state_machine import OrderStatus, derive_order_status, order_progress_rank
from orderflow.database import async_session_factory
from orderflow.db_types import utcnow
from orderflow.models import (
    Order,
    OrderEvent,
    OrderStatusHistory,
    PaymentRecord,
    SubOrder,
)
from orderflow.services.events import DomainEvent, EventBus, EventType, event_bus

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class UpdateContext:
    """Per-attempt scratchpad handed to transition functions."""
    actor: Actor
    session: AsyncSession
    now: datetime = field(default_factory=utcnow)
    events: List[DomainEvent] = field(default_factory=list)
    history: List[OrderStatusHistory] = field(default_factory=list)
    changed: bool = False

    def touch(self) -> None:
        """Mark the aggregate as modified even if no transition was recorded."""
        self.changed = True

    def emit(
        self,
        order: Order,
        event_type: EventType,
        seller_id: Optional[str] = None,
        **payload: Any,
    ) -> DomainEvent:
        event = DomainEvent(
            event_type=event_type,
            order_id=order.id,
            order_number=order.order_number,
            seller_id=seller_id,
            payload=to_jsonable_python(payload),
            occurred_at=self.now,
        )
        self.events.append(event)
        self.changed = True
        return event

    def record(
        self,
        order: Order,
        sub_order: Optional[SubOrder],
        from_status: Optional[str],
        to_status: str,
        notes: Optional[str] = None,
    ) -> None:
        """Queue an audit row for an applied transition."""
        seller_id = sub_order.seller_id if sub_order is not None else None
        self.history.append(OrderStatusHistory(
            order_id=order.id,
            seller_id=seller_id,
            from_status=from_status,
            to_status=to_status,
            changed_by=self.actor.id,
            actor_role=self.actor.role.value,
            notes=notes,
            created_at=self.now,
        ))
        self.changed = True
        logger.info(
            f"Order {order.order_number}"
            f"{f' seller {seller_id}' if seller_id else ''}: "
            f"{from_status or '-'} -> {to_status} by {self.actor}"
        )


TransitionFn = Callable[[Order, UpdateContext], Union[T, Awaitable[T]]]


def aggregate_options(with_history: bool = False) -> list:
    """Loader options that pull the whole aggregate in one round of SELECTs."""
    options = [
        selectinload(Order.sub_orders).selectinload(SubOrder.items),
        selectinload(Order.sub_orders).selectinload(SubOrder.payout),
        selectinload(Order.payment).selectinload(PaymentRecord.verifications),
    ]
    if with_history:
        options.append(selectinload(Order.status_history))
    return options


def refresh_derived_fields(order: Order, now: datetime) -> None:
    """
    Recompute the cached order status and the timestamps that follow it.

    ``shipped_at``/``delivered_at`` record the first time the derived status
    reached that stage; they are never cleared.
    """
    status, is_partial = derive_order_status(so.status for so in order.sub_orders)
    if order.derived_status != status.value:
        order.derived_status = status.value
    if order.is_partial != is_partial:
        order.is_partial = is_partial

    rank = order_progress_rank(status)
    if rank >= order_progress_rank(OrderStatus.SHIPPED) and order.shipped_at is None:
        order.shipped_at = now
    if rank >= order_progress_rank(OrderStatus.DELIVERED) and order.delivered_at is None:
        order.delivered_at = now
    if status == OrderStatus.CANCELLED and order.cancelled_at is None:
        order.cancelled_at = now


async def retry_on_conflict(
    operation: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
) -> T:
    """
    Re-run a whole read-validate-write cycle when it loses an optimistic race.

    Only ConflictError is retried; domain errors surface immediately.
    """
    attempts = attempts or settings.CONFLICT_RETRY_LIMIT
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except ConflictError as e:
            if attempt >= attempts:
                logger.warning(f"Giving up after {attempt} conflicting attempts: {e.message}")
                raise
            logger.warning(f"Conflict on attempt {attempt}/{attempts}, retrying: {e.message}")
    raise AssertionError("unreachable")


class LedgerStore:
    """Persistence and atomic updates for Order aggregates."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        bus: Optional[EventBus] = None,
    ):
        self.session_factory = session_factory or async_session_factory
        self.bus = bus or event_bus

    # ==================== READS ====================

    async def _load(self, session: AsyncSession, criterion, with_history: bool = False) -> Order:
        stmt = select(Order).options(*aggregate_options(with_history)).where(criterion)
        order = (await session.execute(stmt)).scalars().unique().one_or_none()
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def get(self, order_id: uuid.UUID, with_history: bool = False) -> Order:
        async with self.session_factory() as session:
            return await self._load(session, Order.id == order_id, with_history)

    async def get_by_number(self, order_number: str, with_history: bool = False) -> Order:
        async with self.session_factory() as session:
            return await self._load(session, Order.order_number == order_number, with_history)

    async def find_by_checkout_reference(self, reference: str) -> Optional[Order]:
        async with self.session_factory() as session:
            try:
                return await self._load(session, Order.checkout_reference == reference)
            except NotFoundError:
                return None

    # ==================== CREATE ====================

    async def _next_order_number(self, session: AsyncSession, now: datetime) -> str:
        """Generate order number: ORD-YYYYMMDD-XXXX"""
        prefix = f"ORD-{now.strftime('%Y%m%d')}-"
        stmt = select(func.count(Order.id)).where(Order.order_number.like(f"{prefix}%"))
        count = (await session.execute(stmt)).scalar() or 0
        return f"{prefix}{(count + 1):04d}"

    async def create(
        self,
        build: Callable[[str, UpdateContext], Order],
        actor: Actor,
        attempts: Optional[int] = None,
    ) -> Order:
        """
        Insert a new aggregate built by ``build(order_number, ctx)``.

        A concurrent checkout can grab the same order number; the insert is
        then rebuilt with the next number. A duplicate checkout reference
        returns the order that already holds it when the same buyer placed it.
        """
        attempts = attempts or settings.CONFLICT_RETRY_LIMIT
        for attempt in range(1, attempts + 1):
            async with self.session_factory() as session:
                ctx = UpdateContext(actor=actor, session=session)
                order_number = await self._next_order_number(session, ctx.now)
                order = build(order_number, ctx)
                checkout_reference, buyer_id = order.checkout_reference, order.buyer_id
                refresh_derived_fields(order, ctx.now)
                order.updated_at = ctx.now
                session.add(order)
                self._stage_side_rows(session, order, ctx)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if checkout_reference:
                        existing = await self.find_by_checkout_reference(checkout_reference)
                        if existing is not None:
                            if existing.buyer_id != buyer_id:
                                raise ValidationError(
                                    "Checkout reference already used",
                                    details={"checkout_reference": checkout_reference},
                                )
                            logger.info(
                                f"Checkout reference {checkout_reference} already placed "
                                f"as {existing.order_number}"
                            )
                            return existing
                    if attempt >= attempts:
                        raise ConflictError(
                            "Could not allocate an order number",
                            details={"order_number": order_number},
                        )
                    logger.warning(f"Order number {order_number} taken, retrying")
                    continue

            self.bus.publish(ctx.events)
            return await self.get(order.id)
        raise AssertionError("unreachable")

    # ==================== ATOMIC UPDATE ====================

    def _stage_side_rows(self, session: AsyncSession, order: Order, ctx: UpdateContext) -> None:
        for row in ctx.history:
            session.add(row)
        for event in ctx.events:
            session.add(OrderEvent(
                event_type=event.event_type.value,
                order_id=event.order_id,
                order_number=event.order_number,
                seller_id=event.seller_id,
                payload=event.payload,
                created_at=event.occurred_at,
            ))

    async def _atomic(self, criterion, fn: TransitionFn, actor: Actor) -> Any:
        async with self.session_factory() as session:
            order = await self._load(session, criterion)
            order_number = order.order_number
            ctx = UpdateContext(actor=actor, session=session)
            try:
                result = fn(order, ctx)
                if inspect.isawaitable(result):
                    result = await result

                modified = ctx.changed or bool(session.new) or any(
                    session.is_modified(obj) for obj in session.dirty
                )
                if not modified:
                    # Nothing to write: leave the version stamp alone
                    return result

                refresh_derived_fields(order, ctx.now)
                # Always touch the root row so the version check covers child-only edits
                order.updated_at = ctx.now
                self._stage_side_rows(session, order, ctx)
                await session.commit()
            except StaleDataError:
                await session.rollback()
                raise ConflictError(
                    f"Order {order_number} was modified concurrently",
                    details={"order_number": order_number},
                )
            except IntegrityError as e:
                await session.rollback()
                # A concurrent writer inserted the same unique row (e.g. a payout)
                raise ConflictError(
                    f"Order {order_number} was modified concurrently",
                    details={"order_number": order_number, "constraint": str(e.orig)},
                )
            except Exception:
                await session.rollback()
                raise

        self.bus.publish(ctx.events)
        return result

    async def atomic_update(self, order_id: uuid.UUID, fn: TransitionFn, actor: Actor) -> Any:
        """Apply ``fn`` to the freshly loaded order and commit if the version is unchanged."""
        return await self._atomic(Order.id == order_id, fn, actor)

    async def update_by_number(self, order_number: str, fn: TransitionFn, actor: Actor) -> Any:
        return await self._atomic(Order.order_number == order_number, fn, actor)

    async def transact(self, order_number: str, fn: TransitionFn, actor: Actor) -> Any:
        """``update_by_number`` with bounded retry on conflict."""
        return await retry_on_conflict(lambda: self.update_by_number(order_number, fn, actor))
