from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from orderflow.models import PayoutMethod
from orderflow.schemas.base import BaseResponseSchema


class PayoutBrief(BaseResponseSchema):
    """Payout as the receiving seller sees it (no destination details)."""
    reference: str
    amount: Decimal
    commission: Decimal
    currency: str
    created_at: datetime


class PayoutResponse(PayoutBrief):
    """Full payout record, admin only."""
    id: uuid.UUID
    order_number: str
    seller_id: str
    destination: dict
    initiated_by: Optional[str] = None


class TransferProfitRequest(BaseModel):
    """Omit seller_id to settle every eligible sub-order of the order."""
    seller_id: Optional[str] = None


class TransferProfitResponse(BaseModel):
    order_number: str
    payouts: List[PayoutResponse]


class PayoutQueueItem(BaseModel):
    order_number: str
    seller_id: str
    seller_name: str
    payout_amount: Decimal
    commission: Decimal
    currency: str
    delivered_at: Optional[datetime] = None
    payout_error: Optional[str] = None


class PayoutQueueResponse(BaseModel):
    items: List[PayoutQueueItem]
    total: int
    page: int
    size: int
    pages: int


class PayoutAccountUpsert(BaseModel):
    payment_method: PayoutMethod
    details: dict = Field(..., description="Account number, IBAN, PayPal email...")
    is_active: bool = True


class PayoutAccountResponse(BaseResponseSchema):
    seller_id: str
    payment_method: PayoutMethod
    details: dict
    is_active: bool
    updated_at: datetime
