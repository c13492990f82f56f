"""
Payment Verification Gate

Decides when an order's payment record may become ``completed``:

- Instant methods (card, PayPal, crypto, wallet): the gateway webhook result
  is recorded as reported.
- Bank transfer: the buyer submits a receipt reference, an admin approves or
  rejects it. Decisions are idempotent; a repeated verification returns the
  decision already on record.

Approval (or a completed gateway report) moves every pending sub-order to
``paid`` in the same atomic update.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from orderflow.config import settings
from orderflow.core.exceptions import NotFoundError, PreconditionError, ValidationError
from orderflow.core.permissions import Actor, ActorRole, PermissionChecker
from orderflow.models import (
    Order,
    PaymentDecision,
    PaymentMethod,
    PaymentRecord,
    PaymentStatus,
    PaymentVerification,
)
from orderflow.schemas.payment import GatewayWebhookPayload
from orderflow.services.events import EventType
from orderflow.services.ledger_store import LedgerStore, UpdateContext
from orderflow.services.order_service import validate_reason
from orderflow.services.transitions import confirm_payment

logger = logging.getLogger(__name__)


# Payment statuses the gateway may move a record between
GATEWAY_TRANSITIONS: Dict[PaymentStatus, List[PaymentStatus]] = {
    PaymentStatus.PENDING: [PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED],
    PaymentStatus.PROCESSING: [PaymentStatus.COMPLETED, PaymentStatus.FAILED],
    PaymentStatus.FAILED: [PaymentStatus.PROCESSING, PaymentStatus.COMPLETED],
    PaymentStatus.COMPLETED: [PaymentStatus.REFUNDED],
    PaymentStatus.REFUNDED: [],
}


class VerificationAction:
    RECEIPT_SUBMITTED = "RECEIPT_SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REUPLOAD_REQUESTED = "REUPLOAD_REQUESTED"
    GATEWAY_REPORTED = "GATEWAY_REPORTED"


@dataclass
class VerificationOutcome:
    """Result of verify_receipt. ``already_decided`` marks a repeated call."""
    order: Order
    already_decided: bool = False

    @property
    def payment(self) -> PaymentRecord:
        return self.order.payment


def verify_webhook_signature(body: bytes, signature: Optional[str]) -> bool:
    """
    Verify the gateway's HMAC-SHA256 signature over the raw body.

    Returns:
        True if the signature matches, or if no webhook secret is configured
    """
    webhook_secret = settings.PAYMENT_WEBHOOK_SECRET

    if not webhook_secret:
        logger.warning("Webhook secret not configured, accepting unsigned webhook")
        return True

    if not signature:
        logger.warning("Webhook received without signature header")
        return False

    expected_signature = hmac.new(
        webhook_secret.encode(),
        body,
        hashlib.sha256
    ).hexdigest()

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature)
    if not is_valid:
        logger.warning("Invalid webhook signature")
    return is_valid


def _require_bank_transfer(order: Order) -> PaymentRecord:
    payment = order.payment
    if payment.method != PaymentMethod.BANK_TRANSFER.value:
        raise PreconditionError(
            "Receipt verification applies to bank transfers only",
            details={"order_number": order.order_number, "payment_method": payment.method},
        )
    return payment


def _log_verification(
    payment: PaymentRecord,
    ctx: UpdateContext,
    action: str,
    notes: Optional[str] = None,
) -> None:
    payment.verifications.append(PaymentVerification(
        action=action,
        status_after=payment.status,
        receipt_url=payment.receipt_url,
        transaction_id=payment.transaction_id,
        notes=notes,
        actor_id=ctx.actor.id,
        created_at=ctx.now,
    ))
    ctx.touch()


def _validate_notes(notes: Optional[str]) -> Optional[str]:
    if notes is None:
        return None
    notes = notes.strip()
    if len(notes) > settings.MAX_VERIFICATION_NOTES_LENGTH:
        raise ValidationError(
            f"Notes must be at most {settings.MAX_VERIFICATION_NOTES_LENGTH} characters",
            details={"field": "notes", "max_length": settings.MAX_VERIFICATION_NOTES_LENGTH},
        )
    return notes or None


class PaymentVerificationService:
    """Receipt submission, admin verification and gateway results."""

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store or LedgerStore()

    # ==================== BANK TRANSFER: BUYER ====================

    async def submit_receipt(self, order_number: str, receipt_url: str, actor: Actor) -> Order:
        """
        Attach a bank-transfer receipt and put the payment under review.

        Allowed while pending, after a rejection, or when an admin asked for
        a new upload. Resubmitting the same receipt while under review is a no-op.
        """
        PermissionChecker(actor).require_role(ActorRole.BUYER, action="submit receipts")
        receipt_url = str(receipt_url).strip()
        if not receipt_url:
            raise ValidationError("A receipt reference is required", details={"field": "receipt_url"})

        def fn(order: Order, ctx: UpdateContext) -> Order:
            if order.buyer_id != actor.id:
                raise NotFoundError("Order not found", details={"order_number": order.order_number})
            payment = _require_bank_transfer(order)

            if payment.status == PaymentStatus.PROCESSING.value and not payment.reupload_requested:
                if payment.receipt_url == receipt_url:
                    return order
                raise PreconditionError(
                    "A receipt is already awaiting verification",
                    details={"order_number": order.order_number, "payment_status": payment.status},
                )
            if payment.status not in (PaymentStatus.PENDING.value, PaymentStatus.FAILED.value,
                                      PaymentStatus.PROCESSING.value):
                raise PreconditionError(
                    f"Cannot submit a receipt for a payment in '{payment.status}' status",
                    details={"order_number": order.order_number, "payment_status": payment.status},
                )

            payment.status = PaymentStatus.PROCESSING.value
            payment.receipt_url = receipt_url
            payment.receipt_submitted_at = ctx.now
            payment.reupload_requested = False
            payment.decision = None
            payment.decided_by = None
            payment.decided_at = None
            payment.rejection_reason = None
            _log_verification(payment, ctx, VerificationAction.RECEIPT_SUBMITTED)
            ctx.emit(order, EventType.RECEIPT_SUBMITTED, buyer_id=order.buyer_id)
            logger.info(f"Receipt submitted for {order.order_number}")
            return order

        return await self.store.transact(order_number, fn, actor)

    # ==================== BANK TRANSFER: ADMIN ====================

    async def verify_receipt(
        self,
        order_number: str,
        decision: PaymentDecision,
        actor: Actor,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> VerificationOutcome:
        """
        Approve or reject the submitted receipt.

        Approve -> payment completed, pending sub-orders become paid.
        Reject  -> payment failed (reason required), sub-orders stay pending.
        A record that already carries a decision is returned unchanged.
        """
        PermissionChecker(actor).require_role(ActorRole.ADMIN, action="verify receipts")
        decision = PaymentDecision(decision)
        notes = _validate_notes(notes)

        def fn(order: Order, ctx: UpdateContext) -> VerificationOutcome:
            payment = _require_bank_transfer(order)

            if payment.decision is not None:
                logger.info(
                    f"Receipt for {order.order_number} already {payment.decision}, "
                    f"ignoring repeated {decision.value}"
                )
                return VerificationOutcome(order=order, already_decided=True)

            if payment.status != PaymentStatus.PROCESSING.value or not payment.receipt_url:
                raise PreconditionError(
                    "No receipt has been submitted for verification",
                    details={"order_number": order.order_number, "payment_status": payment.status},
                )

            rejection_reason = None
            if decision == PaymentDecision.REJECTED:
                rejection_reason = validate_reason(reason)

            payment.decision = decision.value
            payment.decided_by = actor.id
            payment.decided_at = ctx.now
            payment.reupload_requested = False
            if notes:
                payment.verification_notes = notes

            if decision == PaymentDecision.APPROVED:
                payment.status = PaymentStatus.COMPLETED.value
                payment.paid_at = ctx.now
                payment.rejection_reason = None
                _log_verification(payment, ctx, VerificationAction.APPROVED, notes)
                confirm_payment(order, ctx)
                ctx.emit(order, EventType.PAYMENT_VERIFIED, buyer_id=order.buyer_id,
                         method=payment.method, amount=payment.amount)
            else:
                payment.status = PaymentStatus.FAILED.value
                payment.rejection_reason = rejection_reason
                _log_verification(payment, ctx, VerificationAction.REJECTED, rejection_reason)
                ctx.emit(order, EventType.PAYMENT_REJECTED, buyer_id=order.buyer_id,
                         reason=rejection_reason)

            logger.info(f"Receipt for {order.order_number} {decision.value} by {actor.id}")
            return VerificationOutcome(order=order)

        return await self.store.transact(order_number, fn, actor)

    async def request_receipt_reupload(self, order_number: str, notes: str, actor: Actor) -> Order:
        """Ask the buyer for a clearer or corrected receipt. The payment stays under review."""
        PermissionChecker(actor).require_role(ActorRole.ADMIN, action="request receipt re-uploads")
        notes = _validate_notes(notes)
        if not notes:
            raise ValidationError("Notes are required", details={"field": "notes"})

        def fn(order: Order, ctx: UpdateContext) -> Order:
            payment = _require_bank_transfer(order)
            if payment.status != PaymentStatus.PROCESSING.value or payment.decision is not None:
                raise PreconditionError(
                    "Only receipts awaiting verification can be sent back",
                    details={"order_number": order.order_number, "payment_status": payment.status},
                )
            if payment.reupload_requested and payment.verification_notes == notes:
                return order

            payment.reupload_requested = True
            payment.verification_notes = notes
            _log_verification(payment, ctx, VerificationAction.REUPLOAD_REQUESTED, notes)
            ctx.emit(order, EventType.RECEIPT_REUPLOAD_REQUESTED, buyer_id=order.buyer_id, notes=notes)
            return order

        return await self.store.transact(order_number, fn, actor)

    # ==================== INSTANT METHODS ====================

    async def record_gateway_result(self, payload: GatewayWebhookPayload, actor: Actor) -> Order:
        """
        Record a gateway-reported status for an instant payment method.

        Duplicate deliveries of the same transaction and status are no-ops.
        """
        PermissionChecker(actor).require_role(
            ActorRole.SYSTEM, ActorRole.ADMIN, action="record gateway results"
        )
        reported = PaymentStatus(payload.status)

        def fn(order: Order, ctx: UpdateContext) -> Order:
            payment = order.payment
            if not payment.is_instant:
                raise PreconditionError(
                    "Bank transfers are verified manually",
                    details={"order_number": order.order_number, "payment_method": payment.method},
                )
            if payment.method != payload.method.value:
                raise ValidationError(
                    "Reported payment method does not match the order",
                    details={"order_number": order.order_number, "reported_method": payload.method.value},
                )

            current = PaymentStatus(payment.status)
            if current == reported and payment.transaction_id == payload.transaction_id:
                return order
            if reported not in GATEWAY_TRANSITIONS[current]:
                raise PreconditionError(
                    f"Cannot move payment from '{current.value}' to '{reported.value}'",
                    details={
                        "order_number": order.order_number,
                        "current_status": current.value,
                        "reported_status": reported.value,
                    },
                )

            payment.status = reported.value
            payment.transaction_id = payload.transaction_id
            if payload.gateway:
                payment.gateway = payload.gateway
            _log_verification(payment, ctx, VerificationAction.GATEWAY_REPORTED,
                              notes=f"{payload.gateway or 'gateway'}: {reported.value}")

            if reported == PaymentStatus.COMPLETED:
                payment.paid_at = ctx.now
                confirm_payment(order, ctx)
                ctx.emit(order, EventType.PAYMENT_VERIFIED, buyer_id=order.buyer_id,
                         method=payment.method, amount=payment.amount,
                         transaction_id=payload.transaction_id)
            elif reported == PaymentStatus.FAILED:
                ctx.emit(order, EventType.PAYMENT_FAILED, buyer_id=order.buyer_id,
                         transaction_id=payload.transaction_id)

            logger.info(f"Gateway reported {reported.value} for {order.order_number} ({payload.transaction_id})")
            return order

        return await self.store.transact(payload.order_number, fn, actor)
