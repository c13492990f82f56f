"""
Payment gateway callbacks.

Instant methods (card, PayPal, crypto, wallet) are confirmed by the gateway
calling back here. Bank transfers never are; they go through receipt
verification.
"""

from typing import Optional
import logging

from fastapi import APIRouter, HTTPException, status, Request, Header
from pydantic import ValidationError as PydanticValidationError

from orderflow.api.deps import Payments
from orderflow.core.permissions import SYSTEM_ACTOR
from orderflow.schemas.payment import GatewayWebhookPayload
from orderflow.services.payment_verification_service import verify_webhook_signature


logger = logging.getLogger(__name__)

router = APIRouter(tags=["Payments"])


@router.post(
    "/webhook",
    summary="Payment gateway webhook",
    description="Called by the payment gateway with the result of an instant payment.",
    include_in_schema=False,
)
async def payment_webhook(
    request: Request,
    payments: Payments,
    x_payment_signature: Optional[str] = Header(None, alias="X-Payment-Signature"),
):
    """
    Record a gateway-reported payment status.

    Security:
    - Verifies the HMAC-SHA256 signature when PAYMENT_WEBHOOK_SECRET is set
    - Idempotent: duplicate deliveries of the same result are no-ops
    """
    # Raw body is what the gateway signed
    body = await request.body()

    if not verify_webhook_signature(body, x_payment_signature):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature"
        )

    try:
        payload = GatewayWebhookPayload.model_validate_json(body)
    except PydanticValidationError as e:
        logger.warning(f"Rejected malformed webhook payload: {e.error_count()} error(s)")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.errors(include_url=False, include_context=False),
        )

    logger.info(
        f"Received gateway result {payload.status.value} for {payload.order_number} "
        f"({payload.transaction_id})"
    )
    order = await payments.record_gateway_result(payload, SYSTEM_ACTOR)

    return {
        "status": "ok",
        "order_number": order.order_number,
        "payment_status": order.payment.status,
    }
