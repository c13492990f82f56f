import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from orderflow.database import Base
from orderflow.db_types import JSONType, UTCDateTime, UUIDType, utcnow


class OrderEvent(Base):
    """
    Outbox row for every domain event emitted by a committed transition.

    Written in the same transaction as the state change, so a consumer that
    missed the in-process publish can replay from here.
    """
    __tablename__ = "order_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Event types: OrderPlaced, ReceiptSubmitted, PaymentVerified, PaymentRejected,
    #              SubOrderShipped, SubOrderDelivered, OrderDelivered, ProfitTransferred, ...
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    order_id: Mapped[uuid.UUID] = mapped_column(UUIDType, nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(String(30), nullable=False)
    seller_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True
    )

    def __repr__(self) -> str:
        return f"<OrderEvent(type='{self.event_type}', order='{self.order_number}')>"
