from typing import Optional
from datetime import datetime

from fastapi import APIRouter, Query

from orderflow.api.deps import CurrentActor, Payments, Queries, Settlement
from orderflow.core.permissions import ActorRole, require_role
from orderflow.jobs.scheduler import get_job_status
from orderflow.schemas.order import OrderSummary
from orderflow.schemas.payment import (
    ReceiptReuploadRequest,
    VerificationDecisionResponse,
    VerificationQueueResponse,
    VerifyReceiptRequest,
)
from orderflow.schemas.payout import (
    PayoutQueueResponse,
    PayoutResponse,
    TransferProfitRequest,
    TransferProfitResponse,
)


router = APIRouter(tags=["Admin"])


# ==================== RECEIPT VERIFICATION ====================

@router.get("/verification-queue", response_model=VerificationQueueResponse)
async def verification_queue(
    actor: CurrentActor,
    queries: Queries,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    """Bank-transfer receipts awaiting a decision, oldest first."""
    return await queries.verification_queue(actor, page=page, size=size)


@router.post("/orders/{order_number}/verify-receipt", response_model=VerificationDecisionResponse)
async def verify_receipt(
    order_number: str,
    data: VerifyReceiptRequest,
    actor: CurrentActor,
    payments: Payments,
):
    """
    Approve or reject a submitted bank-transfer receipt.

    A second call returns the decision already on record with
    ``already_decided`` set, whatever decision it asked for.
    """
    outcome = await payments.verify_receipt(
        order_number,
        data.decision,
        actor,
        reason=data.reason,
        notes=data.notes,
    )
    payment = outcome.payment
    return VerificationDecisionResponse(
        order_number=outcome.order.order_number,
        decision=payment.decision,
        payment_status=payment.status,
        decided_by=payment.decided_by,
        decided_at=payment.decided_at,
        rejection_reason=payment.rejection_reason,
        already_decided=outcome.already_decided,
    )


@router.post("/orders/{order_number}/request-reupload", response_model=None)
async def request_receipt_reupload(
    order_number: str,
    data: ReceiptReuploadRequest,
    actor: CurrentActor,
    payments: Payments,
    queries: Queries,
):
    """Send the receipt back to the buyer with notes."""
    await payments.request_receipt_reupload(order_number, data.notes, actor)
    return await queries.get_order(order_number, actor)


# ==================== SETTLEMENT ====================

@router.get("/payout-queue", response_model=PayoutQueueResponse)
async def payout_queue(
    actor: CurrentActor,
    queries: Queries,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
):
    """Delivered, paid sub-orders awaiting settlement. Failed payouts first."""
    return await queries.payout_queue(actor, page=page, size=size)


@router.post("/orders/{order_number}/transfer-profit", response_model=TransferProfitResponse)
async def transfer_profit(
    order_number: str,
    actor: CurrentActor,
    settlement: Settlement,
    data: Optional[TransferProfitRequest] = None,
):
    """
    Release seller profit for delivered sub-orders.

    Settled sub-orders return their existing payout, so retries are safe.
    """
    seller_id = data.seller_id if data else None
    payouts = await settlement.transfer_profit(order_number, actor, seller_id=seller_id)
    return TransferProfitResponse(
        order_number=order_number,
        payouts=[PayoutResponse.model_validate(p) for p in payouts],
    )


# ==================== REPORTING ====================

@router.get("/summary", response_model=OrderSummary)
async def order_summary(
    actor: CurrentActor,
    queries: Queries,
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    top_n: int = Query(5, ge=1, le=50),
):
    """Order counts, revenue and status breakdowns."""
    return await queries.order_summary(actor, date_from=date_from, date_to=date_to, top_n=top_n)


@router.get("/jobs")
async def job_status(actor: CurrentActor):
    """Scheduled background jobs and their next run."""
    require_role(actor, ActorRole.ADMIN, action="view scheduled jobs")
    return {"jobs": get_job_status()}
