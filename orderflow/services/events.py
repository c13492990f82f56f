"""
Domain events and the in-process event bus.

Events are recorded in the ``order_events`` outbox inside the transition's
transaction and handed to the bus only after commit. Subscribers (for
example the notification service adapter) run as background tasks, so the
order lifecycle never waits on them and a failing subscriber cannot undo a
committed transition.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import UUID

from pydantic import BaseModel, Field

from orderflow.db_types import utcnow

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    ORDER_PLACED = "OrderPlaced"
    RECEIPT_SUBMITTED = "ReceiptSubmitted"
    RECEIPT_REUPLOAD_REQUESTED = "ReceiptReuploadRequested"
    PAYMENT_VERIFIED = "PaymentVerified"
    PAYMENT_REJECTED = "PaymentRejected"
    PAYMENT_FAILED = "PaymentFailed"
    SUB_ORDER_PROCESSING = "SubOrderProcessing"
    SUB_ORDER_SHIPPED = "SubOrderShipped"
    SUB_ORDER_DELIVERED = "SubOrderDelivered"
    ORDER_DELIVERED = "OrderDelivered"
    SUB_ORDER_CANCELLED = "SubOrderCancelled"
    SUB_ORDER_REFUNDED = "SubOrderRefunded"
    SUB_ORDER_RETURNED = "SubOrderReturned"
    PROFIT_TRANSFERRED = "ProfitTransferred"
    PAYOUT_FAILED = "PayoutFailed"


class DomainEvent(BaseModel):
    """Something that happened to an order. Immutable once emitted."""
    event_type: EventType
    order_id: UUID
    order_number: str
    seller_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=utcnow)

    model_config = {"frozen": True}


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """Fire-and-forget publisher with per-type subscriptions."""

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._wildcard: List[EventHandler] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: Optional[EventType], handler: EventHandler) -> None:
        """Register ``handler`` for one event type, or for every event when ``event_type`` is None."""
        if event_type is None:
            self._wildcard.append(handler)
        else:
            self._handlers.setdefault(event_type, []).append(handler)

    def clear(self) -> None:
        self._handlers.clear()
        self._wildcard.clear()

    def publish(self, events: List[DomainEvent]) -> None:
        for event in events:
            handlers = self._handlers.get(event.event_type, []) + self._wildcard
            for handler in handlers:
                task = asyncio.create_task(self._dispatch(handler, event))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

    async def _dispatch(self, handler: EventHandler, event: DomainEvent) -> None:
        try:
            await handler(event)
        except Exception:
            logger.error(
                f"Event handler {getattr(handler, '__name__', handler)!r} failed for "
                f"{event.event_type.value} on {event.order_number}",
                exc_info=True,
            )

    async def drain(self) -> None:
        """Wait for in-flight handlers. Used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


event_bus = EventBus()


async def log_event(event: DomainEvent) -> None:
    """Default subscriber: one INFO line per event."""
    target = f" seller={event.seller_id}" if event.seller_id else ""
    logger.info(f"[event] {event.event_type.value} order={event.order_number}{target}")
