from pydantic import BaseModel, Field, HttpUrl
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from orderflow.models import PaymentDecision, PaymentMethod, PaymentStatus
from orderflow.schemas.base import BaseResponseSchema


# ==================== REQUESTS ====================

class SubmitReceiptRequest(BaseModel):
    """Bank-transfer receipt reference from the evidence store."""
    receipt_url: HttpUrl


class VerifyReceiptRequest(BaseModel):
    decision: PaymentDecision
    reason: Optional[str] = Field(None, description="Required when rejecting")
    notes: Optional[str] = None


class ReceiptReuploadRequest(BaseModel):
    notes: str = Field(..., min_length=1)


class GatewayWebhookPayload(BaseModel):
    """Result reported by the payment gateway for an instant method."""
    order_number: str = Field(..., description="Merchant reference passed to the gateway")
    transaction_id: str = Field(..., min_length=1, max_length=100)
    status: PaymentStatus
    method: PaymentMethod
    gateway: Optional[str] = Field(None, max_length=50)


# ==================== RESPONSES ====================

class PaymentVerificationResponse(BaseResponseSchema):
    id: uuid.UUID
    action: str
    status_after: str
    receipt_url: Optional[str] = None
    transaction_id: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime


class PaymentResponse(BaseResponseSchema):
    """Payment record as the buyer sees it."""
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    currency: str
    transaction_id: Optional[str] = None
    gateway: Optional[str] = None
    paid_at: Optional[datetime] = None
    receipt_url: Optional[str] = None
    receipt_submitted_at: Optional[datetime] = None
    reupload_requested: bool = False
    verification_notes: Optional[str] = None
    decision: Optional[PaymentDecision] = None
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    verifications: List[PaymentVerificationResponse] = []


class AdminPaymentVerificationResponse(PaymentVerificationResponse):
    actor_id: Optional[str] = None


class AdminPaymentResponse(PaymentResponse):
    """Payment record with the admin who took each decision."""
    verifications: List[AdminPaymentVerificationResponse] = []


class PaymentStatusBrief(BaseResponseSchema):
    """Payment fields a seller may see."""
    method: PaymentMethod
    status: PaymentStatus
    paid_at: Optional[datetime] = None


class VerificationDecisionResponse(BaseModel):
    """Result of verify_receipt. ``already_decided`` marks a repeated call."""
    order_number: str
    decision: PaymentDecision
    payment_status: PaymentStatus
    decided_by: Optional[str] = None
    decided_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    already_decided: bool = False


class VerificationQueueItem(BaseModel):
    order_number: str
    buyer_name: str
    buyer_email: str
    amount: Decimal
    currency: str
    receipt_url: Optional[str] = None
    receipt_submitted_at: Optional[datetime] = None
    reupload_requested: bool
    verification_notes: Optional[str] = None
    placed_at: datetime


class VerificationQueueResponse(BaseModel):
    items: List[VerificationQueueItem]
    total: int
    page: int
    size: int
    pages: int
