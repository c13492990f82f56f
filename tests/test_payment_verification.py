import hashlib
import hmac

import pytest

from orderflow.config import settings
from orderflow.core.exceptions import (
    NotFoundError,
    PaymentNotVerifiedError,
    PermissionDeniedError,
    PreconditionError,
    ValidationError,
)
from orderflow.core.permissions import SYSTEM_ACTOR
from orderflow.core.state_machine import SubOrderStatus
from orderflow.models import PaymentDecision, PaymentStatus
from orderflow.schemas.order import MarkShippedRequest
from orderflow.schemas.payment import GatewayWebhookPayload
from orderflow.services.events import EventType
from orderflow.services.payment_verification_service import verify_webhook_signature

from tests.conftest import ADMIN, BUYER, OTHER_BUYER, SELLER_A, make_checkout


RECEIPT = "https://evidence.example.com/receipts/abc.png"


def gateway(order, status="completed", method="credit-card", transaction_id="txn_1"):
    return GatewayWebhookPayload(
        order_number=order.order_number,
        transaction_id=transaction_id,
        status=status,
        method=method,
        gateway="stripe",
    )


# ==================== BANK TRANSFER ====================

class TestReceiptSubmission:
    async def test_submit_puts_payment_under_review(self, payments, placed_order):
        order = await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)

        assert order.payment.status == PaymentStatus.PROCESSING.value
        assert order.payment.receipt_url == RECEIPT
        assert order.payment.receipt_submitted_at is not None
        assert [v.action for v in order.payment.verifications] == ["RECEIPT_SUBMITTED"]

    async def test_resubmitting_same_receipt_is_noop(self, payments, placed_order):
        first = await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        again = await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)

        assert again.version == first.version

    async def test_different_receipt_while_under_review(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        with pytest.raises(PreconditionError):
            await payments.submit_receipt(placed_order.order_number, RECEIPT + "?v=2", BUYER)

    async def test_only_the_buyer_of_the_order(self, payments, placed_order):
        with pytest.raises(NotFoundError):
            await payments.submit_receipt(placed_order.order_number, RECEIPT, OTHER_BUYER)

    async def test_instant_methods_have_no_receipts(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="paypal"), BUYER)
        with pytest.raises(PreconditionError):
            await payments.submit_receipt(order.order_number, RECEIPT, BUYER)


class TestVerifyReceipt:
    async def test_approve_completes_payment_and_pays_sub_orders(self, payments, bus, placed_order):
        seen = []

        async def collect(event):
            seen.append(event.event_type)

        bus.subscribe(EventType.PAYMENT_VERIFIED, collect)
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)

        outcome = await payments.verify_receipt(placed_order.order_number, PaymentDecision.APPROVED, ADMIN)
        await bus.drain()

        assert not outcome.already_decided
        assert outcome.payment.status == PaymentStatus.COMPLETED.value
        assert outcome.payment.decided_by == ADMIN.id
        assert outcome.payment.paid_at is not None
        assert {so.status for so in outcome.order.sub_orders} == {SubOrderStatus.PAID.value}
        assert outcome.order.confirmed_at is not None
        assert seen == [EventType.PAYMENT_VERIFIED]

    async def test_verification_is_idempotent(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        first = await payments.verify_receipt(placed_order.order_number, "approved", ADMIN)
        second = await payments.verify_receipt(
            placed_order.order_number, "rejected", ADMIN, reason="Second thoughts"
        )

        assert second.already_decided
        assert second.payment.decision == PaymentDecision.APPROVED.value
        assert second.payment.status == PaymentStatus.COMPLETED.value
        assert second.payment.rejection_reason is None
        assert second.order.version == first.order.version

    async def test_reject_requires_reason(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)

        with pytest.raises(ValidationError):
            await payments.verify_receipt(placed_order.order_number, "rejected", ADMIN)

        fresh = await payments.store.get_by_number(placed_order.order_number)
        assert fresh.payment.status == PaymentStatus.PROCESSING.value
        assert fresh.payment.decision is None

    async def test_rejection_then_resubmission(self, payments, placed_order):
        number = placed_order.order_number
        await payments.submit_receipt(number, RECEIPT, BUYER)
        rejected = await payments.verify_receipt(number, "rejected", ADMIN, reason="Amount does not match")

        assert rejected.payment.status == PaymentStatus.FAILED.value
        assert rejected.payment.rejection_reason == "Amount does not match"
        assert {so.status for so in rejected.order.sub_orders} == {SubOrderStatus.PENDING.value}

        resubmitted = await payments.submit_receipt(number, RECEIPT + "?v=2", BUYER)
        assert resubmitted.payment.status == PaymentStatus.PROCESSING.value
        assert resubmitted.payment.decision is None

        approved = await payments.verify_receipt(number, "approved", ADMIN, notes="Matches statement")
        assert approved.payment.status == PaymentStatus.COMPLETED.value
        assert approved.payment.verification_notes == "Matches statement"

    async def test_nothing_to_verify(self, payments, placed_order):
        with pytest.raises(PreconditionError):
            await payments.verify_receipt(placed_order.order_number, "approved", ADMIN)

    async def test_admin_only(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        with pytest.raises(PermissionDeniedError):
            await payments.verify_receipt(placed_order.order_number, "approved", BUYER)

    async def test_notes_length_is_bounded(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        with pytest.raises(ValidationError):
            await payments.verify_receipt(placed_order.order_number, "approved", ADMIN, notes="n" * 1001)


class TestReupload:
    async def test_reupload_keeps_payment_under_review(self, orders, payments, placed_order):
        number = placed_order.order_number
        await payments.submit_receipt(number, RECEIPT, BUYER)
        order = await payments.request_receipt_reupload(number, "Receipt is blurry", ADMIN)

        assert order.payment.status == PaymentStatus.PROCESSING.value
        assert order.payment.reupload_requested
        assert order.payment.verification_notes == "Receipt is blurry"

        with pytest.raises(PaymentNotVerifiedError):
            await orders.mark_shipped(number, MarkShippedRequest(tracking_number="T", courier="DHL"), SELLER_A)

        order = await payments.submit_receipt(number, RECEIPT, BUYER)
        assert not order.payment.reupload_requested

    async def test_notes_are_required(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        with pytest.raises(ValidationError):
            await payments.request_receipt_reupload(placed_order.order_number, "  ", ADMIN)

    async def test_not_after_a_decision(self, payments, placed_order):
        await payments.submit_receipt(placed_order.order_number, RECEIPT, BUYER)
        await payments.verify_receipt(placed_order.order_number, "approved", ADMIN)
        with pytest.raises(PreconditionError):
            await payments.request_receipt_reupload(placed_order.order_number, "Too late", ADMIN)


# ==================== INSTANT METHODS ====================

class TestGatewayResult:
    async def test_completed_report_pays_sub_orders(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="credit-card"), BUYER)
        order = await payments.record_gateway_result(gateway(order), SYSTEM_ACTOR)

        assert order.payment.status == PaymentStatus.COMPLETED.value
        assert order.payment.transaction_id == "txn_1"
        assert order.payment.gateway == "stripe"
        assert {so.status for so in order.sub_orders} == {SubOrderStatus.PAID.value}

    async def test_duplicate_delivery_is_noop(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="credit-card"), BUYER)
        first = await payments.record_gateway_result(gateway(order), SYSTEM_ACTOR)
        again = await payments.record_gateway_result(gateway(order), SYSTEM_ACTOR)

        assert again.version == first.version

    async def test_failed_then_retried(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="wallet"), BUYER)
        failed = await payments.record_gateway_result(
            gateway(order, status="failed", method="wallet"), SYSTEM_ACTOR
        )
        assert failed.payment.status == PaymentStatus.FAILED.value
        assert {so.status for so in failed.sub_orders} == {SubOrderStatus.PENDING.value}

        completed = await payments.record_gateway_result(
            gateway(order, method="wallet", transaction_id="txn_2"), SYSTEM_ACTOR
        )
        assert completed.payment.status == PaymentStatus.COMPLETED.value

    async def test_completed_cannot_fail(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="crypto"), BUYER)
        await payments.record_gateway_result(gateway(order, method="crypto"), SYSTEM_ACTOR)

        with pytest.raises(PreconditionError):
            await payments.record_gateway_result(
                gateway(order, status="failed", method="crypto", transaction_id="txn_9"), SYSTEM_ACTOR
            )

    async def test_method_mismatch(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="credit-card"), BUYER)
        with pytest.raises(ValidationError):
            await payments.record_gateway_result(gateway(order, method="paypal"), SYSTEM_ACTOR)

    async def test_bank_transfers_are_not_gateway_confirmed(self, payments, placed_order):
        with pytest.raises(PreconditionError):
            await payments.record_gateway_result(
                gateway(placed_order, method="bank-transfer"), SYSTEM_ACTOR
            )

    async def test_buyers_cannot_report_results(self, orders, payments):
        order = await orders.place_order(make_checkout(payment_method="credit-card"), BUYER)
        with pytest.raises(PermissionDeniedError):
            await payments.record_gateway_result(gateway(order), BUYER)


class TestWebhookSignature:
    def test_unsigned_accepted_without_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", None)
        assert verify_webhook_signature(b"{}", None)

    def test_valid_signature(self, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec")
        body = b'{"order_number": "ORD-1"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()
        assert verify_webhook_signature(body, signature)

    def test_missing_or_wrong_signature(self, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec")
        assert not verify_webhook_signature(b"{}", None)
        assert not verify_webhook_signature(b"{}", "deadbeef")
