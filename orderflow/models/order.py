import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orderflow.core.enum_utils import enum_comment
from orderflow.core.state_machine import OrderStatus, SubOrderStatus, derive_order_status
from orderflow.database import Base
from orderflow.db_types import JSONType, UTCDateTime, UUIDType, utcnow

if TYPE_CHECKING:
    from orderflow.models.payout import Payout


class PaymentStatus(str, Enum):
    """Payment record status."""
    PENDING = "pending"
    PROCESSING = "processing"    # Receipt submitted / gateway processing
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    """Payment method enumeration."""
    CREDIT_CARD = "credit-card"
    PAYPAL = "paypal"
    BANK_TRANSFER = "bank-transfer"
    CRYPTO = "crypto"
    WALLET = "wallet"


# Methods whose result is reported by the gateway without a human step
INSTANT_PAYMENT_METHODS = frozenset({
    PaymentMethod.CREDIT_CARD,
    PaymentMethod.PAYPAL,
    PaymentMethod.CRYPTO,
    PaymentMethod.WALLET,
})


class PaymentDecision(str, Enum):
    """Admin verdict on a bank-transfer receipt."""
    APPROVED = "approved"
    REJECTED = "rejected"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"
    INTERNATIONAL = "international"


class OrderSource(str, Enum):
    CART = "cart"
    AUCTION = "auction"
    DIRECT = "direct"


class Order(Base):
    """
    Buyer-facing order aggregate.

    The order status is derived from the sub-orders (see ``status``);
    ``derived_status`` is a cache written only by the ledger store after
    each transition so that list queries can filter in SQL.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index('ix_order_buyer_placed', 'buyer_id', 'placed_at'),
        Index('ix_order_status_placed', 'derived_status', 'placed_at'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )

    # Order Identification
    order_number: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        nullable=False,
        index=True
    )
    checkout_reference: Mapped[Optional[str]] = mapped_column(
        String(100),
        unique=True,
        nullable=True,
        comment="Idempotency key supplied by checkout"
    )

    # Buyer snapshot (frozen at placement)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    buyer_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    buyer_name: Mapped[str] = mapped_column(String(200), nullable=False)
    buyer_email: Mapped[str] = mapped_column(String(255), nullable=False)

    source: Mapped[str] = mapped_column(
        String(20),
        default=OrderSource.CART.value,
        nullable=False,
        comment=enum_comment(OrderSource)
    )

    # Shipping snapshot
    shipping_details: Mapped[dict] = mapped_column(JSONType, nullable=False)

    # Totals
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_shipping: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Sum of sub-order totals"
    )
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Derived status cache (never set outside the ledger store)
    derived_status: Mapped[str] = mapped_column(
        String(30),
        default=OrderStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(OrderStatus)
    )
    is_partial: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    placed_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False,
        index=True
    )
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    # Optimistic concurrency stamp
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    sub_orders: Mapped[List["SubOrder"]] = relationship(
        "SubOrder",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SubOrder.position"
    )
    payment: Mapped["PaymentRecord"] = relationship(
        "PaymentRecord",
        back_populates="order",
        cascade="all, delete-orphan",
        uselist=False
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.created_at"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def status(self) -> OrderStatus:
        """Status derived from the sub-orders."""
        return derive_order_status(so.status for so in self.sub_orders)[0]

    def get_sub_order(self, seller_id: str) -> Optional["SubOrder"]:
        for sub_order in self.sub_orders:
            if sub_order.seller_id == seller_id:
                return sub_order
        return None

    @property
    def seller_ids(self) -> List[str]:
        return [so.seller_id for so in self.sub_orders]

    def __repr__(self) -> str:
        return f"<Order(order_number='{self.order_number}', status='{self.derived_status}', version={self.version})>"


class SubOrder(Base):
    """One seller's part of an order. Never referenced outside its parent."""
    __tablename__ = "sub_orders"
    __table_args__ = (
        Index('ix_sub_order_seller_status', 'seller_id', 'status'),
        Index('uq_sub_order_order_seller', 'order_id', 'seller_id', unique=True),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Seller snapshot
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    seller_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    seller_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    shipping_cost: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )
    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="subtotal + shipping_cost"
    )
    commission_total: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )

    # Fulfillment
    status: Mapped[str] = mapped_column(
        String(30),
        default=SubOrderStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(SubOrderStatus)
    )
    shipping_method: Mapped[str] = mapped_column(
        String(20),
        default=ShippingMethod.STANDARD.value,
        nullable=False,
        comment=enum_comment(ShippingMethod)
    )
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    courier: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    estimated_delivery: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    shipped_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Cancellation, refund or return reason"
    )
    delivery_confirmed_by: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="buyer, admin or system"
    )

    # Settlement
    profit_transferred: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    payment_refunded: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Buyer's share returned after a paid cancellation"
    )
    payout_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Last payout failure, flagged for manual retry"
    )

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    # Relationships
    order: Mapped["Order"] = relationship("Order", back_populates="sub_orders")
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="sub_order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position"
    )
    payout: Mapped[Optional["Payout"]] = relationship(
        "Payout",
        back_populates="sub_order",
        uselist=False
    )

    @property
    def payout_amount(self) -> Decimal:
        """What the seller receives on settlement."""
        return self.total_amount - self.commission_total

    def __repr__(self) -> str:
        return f"<SubOrder(seller_id='{self.seller_id}', status='{self.status}')>"


class OrderItem(Base):
    """Line item inside a sub-order."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    sub_order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("sub_orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    gem_id: Mapped[str] = mapped_column(String(64), nullable=False)
    gem_details: Mapped[dict] = mapped_column(JSONType, nullable=False)
    gem_name: Mapped[str] = mapped_column(String(255), nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="quantity * unit_price"
    )
    commission: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        default=Decimal("0.00"),
        nullable=False
    )

    sub_order: Mapped["SubOrder"] = relationship("SubOrder", back_populates="items")


class PaymentRecord(Base):
    """
    Payment state of an order.

    Instant methods mirror the gateway; bank transfers go through manual
    receipt verification (see ``verifications`` for the audit trail).
    """
    __tablename__ = "payment_records"
    __table_args__ = (
        Index('ix_payment_method_status', 'method', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        unique=True,
        nullable=False
    )

    method: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        comment=enum_comment(PaymentMethod)
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        comment=enum_comment(PaymentStatus)
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Gateway
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    gateway: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Bank transfer evidence
    receipt_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    receipt_submitted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reupload_requested: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Admin decision on the current receipt
    decision: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment=enum_comment(PaymentDecision)
    )
    decided_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    decided_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="payment")
    verifications: Mapped[List["PaymentVerification"]] = relationship(
        "PaymentVerification",
        back_populates="payment",
        cascade="all, delete-orphan",
        order_by="PaymentVerification.created_at"
    )

    @property
    def is_instant(self) -> bool:
        return PaymentMethod(self.method) in INSTANT_PAYMENT_METHODS

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value


class PaymentVerification(Base):
    """Append-only trail of receipt submissions, admin decisions and gateway reports."""
    __tablename__ = "payment_verifications"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    payment_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("payment_records.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Actions: RECEIPT_SUBMITTED, APPROVED, REJECTED, REUPLOAD_REQUESTED, GATEWAY_REPORTED
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    status_after: Mapped[str] = mapped_column(String(20), nullable=False)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    actor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    payment: Mapped["PaymentRecord"] = relationship("PaymentRecord", back_populates="verifications")


class OrderStatusHistory(Base):
    """Audit row for every applied sub-order transition."""
    __tablename__ = "order_status_history"

    id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        primary_key=True,
        default=uuid.uuid4
    )
    order_id: Mapped[uuid.UUID] = mapped_column(
        UUIDType,
        ForeignKey("orders.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    seller_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime,
        default=utcnow,
        nullable=False
    )

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")
