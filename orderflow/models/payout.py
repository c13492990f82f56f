import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

from sqlalchemy import Boolean, ForeignKey, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.core.enum_utils import enum_comment
from orderflow.database import Base
from orderflow.db_types import JSONType, UTCDateTime, UUIDType, utcnow

if TYPE_CHECKING:
    from orderflow.models.order import SubOrder


class PayoutMethod(str, Enum):
    """How a seller wants to be paid."""
    BANK_TRANSFER = "bank-transfer"
    PAYPAL = "paypal"
    WISE = "wise"


class Payout(Base):
    """
    Record of a released seller profit.

    One row per settled sub-order; the unique constraint on ``sub_order_id``
    is what makes a concurrent second settlement fail instead of paying twice.
    """
    __tablename__ = "payouts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    reference: Mapped[str] = mapped_column(
        String(40),
        unique=True,
        nullable=False,
        comment="PAY-YYYYMMDD-XXXXXXXX"
    )
    sub_order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("sub_orders.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )
    order_number: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Sub-order total minus commission"
    )
    commission: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Opaque snapshot from the payout directory
    destination: Mapped[dict] = mapped_column(JSONType, nullable=False)

    initiated_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    sub_order: Mapped["SubOrder"] = relationship("SubOrder", back_populates="payout")

    def __repr__(self) -> str:
        return f"<Payout(reference='{self.reference}', seller_id='{self.seller_id}', amount={self.amount})>"


class SellerPayoutAccount(Base):
    """Where a seller's profit is sent. Backs the default payout directory."""
    __tablename__ = "seller_payout_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    seller_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    payment_method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment=enum_comment(PayoutMethod)
    )
    # Account number / IBAN / PayPal email etc. Never shown to other parties.
    details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )
