import hashlib
import hmac
import json
from datetime import timedelta

from orderflow.config import settings
from orderflow.core.security import create_access_token

from tests.conftest import (
    ADMIN,
    BUYER,
    OTHER_BUYER,
    OUTSIDER_SELLER,
    SELLER_A,
    bearer,
    checkout_payload,
)


async def place(client, **kwargs) -> dict:
    response = await client.post("/api/v1/orders", json=checkout_payload(**kwargs), headers=bearer(BUYER))
    assert response.status_code == 201, response.text
    return response.json()


# ==================== AUTH ====================

class TestAuth:
    async def test_invalid_token(self, client):
        response = await client.get("/api/v1/orders", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    async def test_expired_token(self, client):
        token = create_access_token(BUYER.id, "buyer", expires_delta=timedelta(minutes=-1))
        response = await client.get("/api/v1/orders", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_unknown_role(self, client):
        token = create_access_token("someone", "courier")
        response = await client.get("/api/v1/orders", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    async def test_seller_endpoints_need_seller_role(self, client):
        response = await client.get("/api/v1/sellers/me/payout-account", headers=bearer(BUYER))
        assert response.status_code == 403


# ==================== ORDERS ====================

class TestOrdersApi:
    async def test_place_and_read_back(self, client):
        order = await place(client)

        response = await client.get(f"/api/v1/orders/{order['order_number']}", headers=bearer(BUYER))

        assert response.status_code == 200
        body = response.json()
        assert body["payment"]["method"] == "bank-transfer"
        assert body["payment"]["status"] == "pending"
        assert body["sub_orders"][1]["total_amount"] == "50.00"

    async def test_mismatched_totals_rejected(self, client):
        payload = checkout_payload()
        payload["total_amount"] = "149.00"

        response = await client.post("/api/v1/orders", json=payload, headers=bearer(BUYER))

        assert response.status_code == 400
        assert response.json()["type"] == "ValidationError"

    async def test_sellers_cannot_place_orders(self, client):
        response = await client.post("/api/v1/orders", json=checkout_payload(), headers=bearer(SELLER_A))
        assert response.status_code == 403
        assert response.json()["type"] == "PermissionDeniedError"

    async def test_invisible_order_is_not_found(self, client):
        order = await place(client)
        for actor in (OTHER_BUYER, OUTSIDER_SELLER):
            response = await client.get(f"/api/v1/orders/{order['order_number']}", headers=bearer(actor))
            assert response.status_code == 404

    async def test_seller_view_is_redacted(self, client):
        order = await place(client)

        response = await client.get(f"/api/v1/orders/{order['order_number']}", headers=bearer(SELLER_A))

        body = response.json()
        assert body["sub_order"]["seller_id"] == "seller-a"
        assert "sub_orders" not in body
        assert "buyer_details" not in body

    async def test_list_with_filters(self, client):
        await place(client)
        await place(client, payment_method="credit-card")

        response = await client.get(
            "/api/v1/orders", params={"payment_method": "credit-card"}, headers=bearer(BUYER)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["payment"]["method"] == "credit-card"

    async def test_cancel_requires_reason(self, client):
        order = await place(client)
        response = await client.post(
            f"/api/v1/orders/{order['order_number']}/cancel", json={"reason": ""}, headers=bearer(BUYER)
        )
        assert response.status_code == 422

    async def test_buyer_cancels_unpaid_order(self, client):
        order = await place(client)

        response = await client.post(
            f"/api/v1/orders/{order['order_number']}/cancel",
            json={"reason": "Changed my mind"},
            headers=bearer(BUYER),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "cancelled"
        assert body["cancellation_reason"] == "Changed my mind"


# ==================== RECEIPTS AND ADMIN ====================

class TestReceiptApi:
    async def test_verification_queue_and_reupload(self, client):
        order = await place(client)
        number = order["order_number"]
        await client.post(
            f"/api/v1/orders/{number}/receipt",
            json={"receipt_url": "https://evidence.example.com/r/9.png"},
            headers=bearer(BUYER),
        )

        queue = (await client.get("/api/v1/admin/verification-queue", headers=bearer(ADMIN))).json()
        assert [item["order_number"] for item in queue["items"]] == [number]

        response = await client.post(
            f"/api/v1/admin/orders/{number}/request-reupload",
            json={"notes": "Please upload the full statement"},
            headers=bearer(ADMIN),
        )
        assert response.status_code == 200
        assert response.json()["payment"]["reupload_requested"] is True

    async def test_receipt_url_must_be_a_url(self, client):
        order = await place(client)
        response = await client.post(
            f"/api/v1/orders/{order['order_number']}/receipt",
            json={"receipt_url": "not a url"},
            headers=bearer(BUYER),
        )
        assert response.status_code == 422

    async def test_repeat_decision_is_flagged(self, client):
        order = await place(client)
        number = order["order_number"]
        await client.post(
            f"/api/v1/orders/{number}/receipt",
            json={"receipt_url": "https://evidence.example.com/r/9.png"},
            headers=bearer(BUYER),
        )
        url = f"/api/v1/admin/orders/{number}/verify-receipt"

        first = await client.post(url, json={"decision": "approved"}, headers=bearer(ADMIN))
        second = await client.post(url, json={"decision": "approved"}, headers=bearer(ADMIN))

        assert first.json()["already_decided"] is False
        assert second.status_code == 200
        assert second.json()["already_decided"] is True

    async def test_buyers_cannot_verify(self, client):
        order = await place(client)
        response = await client.post(
            f"/api/v1/admin/orders/{order['order_number']}/verify-receipt",
            json={"decision": "approved"},
            headers=bearer(BUYER),
        )
        assert response.status_code == 403

    async def test_summary_and_jobs_are_admin_only(self, client):
        await place(client)

        summary = await client.get("/api/v1/admin/summary", headers=bearer(ADMIN))
        assert summary.status_code == 200
        assert summary.json()["total_orders"] == 1

        jobs = await client.get("/api/v1/admin/jobs", headers=bearer(SELLER_A))
        assert jobs.status_code == 403


# ==================== WEBHOOK ====================

def signed(body: bytes, secret: str) -> dict:
    return {
        "X-Payment-Signature": hmac.new(secret.encode(), body, hashlib.sha256).hexdigest(),
        "Content-Type": "application/json",
    }


class TestWebhookApi:
    async def test_signed_result_completes_payment(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
        order = await place(client, payment_method="credit-card")
        body = json.dumps({
            "order_number": order["order_number"],
            "transaction_id": "ch_123",
            "status": "completed",
            "method": "credit-card",
            "gateway": "stripe",
        }).encode()

        response = await client.post(
            "/api/v1/payments/webhook", content=body, headers=signed(body, "whsec_test")
        )

        assert response.status_code == 200
        assert response.json()["payment_status"] == "completed"
        view = (await client.get(f"/api/v1/orders/{order['order_number']}", headers=bearer(BUYER))).json()
        assert view["status"] == "paid"

    async def test_bad_signature(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", "whsec_test")
        body = b'{"order_number": "ORD-20250101-0001"}'

        response = await client.post(
            "/api/v1/payments/webhook", content=body, headers=signed(body, "someone-else")
        )

        assert response.status_code == 401

    async def test_malformed_payload(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", None)

        response = await client.post(
            "/api/v1/payments/webhook",
            content=b'{"order_number": "ORD-1"}',
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 422

    async def test_unknown_order(self, client, monkeypatch):
        monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", None)
        body = json.dumps({
            "order_number": "ORD-20250101-0404",
            "transaction_id": "ch_404",
            "status": "completed",
            "method": "paypal",
        }).encode()

        response = await client.post("/api/v1/payments/webhook", content=body)

        assert response.status_code == 404


# ==================== SELLERS ====================

class TestPayoutAccountApi:
    async def test_not_configured(self, client):
        response = await client.get("/api/v1/sellers/me/payout-account", headers=bearer(SELLER_A))
        assert response.status_code == 404

    async def test_upsert_and_read(self, client):
        headers = bearer(SELLER_A)
        await client.put(
            "/api/v1/sellers/me/payout-account",
            json={"payment_method": "paypal", "details": {"email": "old@example.com"}},
            headers=headers,
        )
        response = await client.put(
            "/api/v1/sellers/me/payout-account",
            json={"payment_method": "wise", "details": {"account": "GB00 1234"}},
            headers=headers,
        )
        assert response.status_code == 200

        account = (await client.get("/api/v1/sellers/me/payout-account", headers=headers)).json()
        assert account["seller_id"] == "seller-a"
        assert account["payment_method"] == "wise"
        assert account["details"] == {"account": "GB00 1234"}
