"""
Two sellers, one bank-transfer checkout, end to end through the HTTP API.
"""

from tests.conftest import ADMIN, BUYER, SELLER_A, SELLER_B, bearer, checkout_payload


RECEIPT = "https://evidence.example.com/receipts/transfer.pdf"


async def test_two_seller_bank_transfer_lifecycle(client):
    buyer, admin = bearer(BUYER), bearer(ADMIN)
    seller_a, seller_b = bearer(SELLER_A), bearer(SELLER_B)

    # Seller A $100, seller B $50
    response = await client.post("/api/v1/orders", json=checkout_payload(), headers=buyer)
    assert response.status_code == 201
    order = response.json()
    number = order["order_number"]
    assert order["status"] == "pending"
    assert order["total_amount"] == "150.00"
    assert [so["status"] for so in order["sub_orders"]] == ["pending", "pending"]

    # First receipt is rejected
    response = await client.post(f"/api/v1/orders/{number}/receipt", json={"receipt_url": RECEIPT}, headers=buyer)
    assert response.status_code == 200
    response = await client.post(
        f"/api/v1/admin/orders/{number}/verify-receipt",
        json={"decision": "rejected", "reason": "Amount does not match the statement"},
        headers=admin,
    )
    assert response.status_code == 200
    assert response.json()["payment_status"] == "failed"

    order = (await client.get(f"/api/v1/orders/{number}", headers=buyer)).json()
    assert order["payment"]["status"] == "failed"
    assert [so["status"] for so in order["sub_orders"]] == ["pending", "pending"]

    response = await client.post(
        f"/api/v1/orders/{number}/ship",
        json={"tracking_number": "A-001", "courier": "DHL"},
        headers=seller_a,
    )
    assert response.status_code == 422
    assert response.json()["type"] == "PaymentNotVerifiedError"

    # Resubmitted receipt is approved
    response = await client.post(
        f"/api/v1/orders/{number}/receipt", json={"receipt_url": RECEIPT + "?v=2"}, headers=buyer
    )
    assert response.status_code == 200
    response = await client.post(
        f"/api/v1/admin/orders/{number}/verify-receipt", json={"decision": "approved"}, headers=admin
    )
    assert response.status_code == 200
    assert response.json()["payment_status"] == "completed"

    order = (await client.get(f"/api/v1/orders/{number}", headers=buyer)).json()
    assert order["status"] == "paid"
    assert [so["status"] for so in order["sub_orders"]] == ["paid", "paid"]

    # Seller A ships first; B is still paid so the order is too
    response = await client.post(
        f"/api/v1/orders/{number}/ship",
        json={"tracking_number": "A-001", "courier": "DHL"},
        headers=seller_a,
    )
    assert response.status_code == 200
    view = response.json()
    assert view["sub_order"]["status"] == "shipped"
    assert view["order_status"] == "paid"

    response = await client.post(
        f"/api/v1/orders/{number}/ship",
        json={"tracking_number": "B-001", "courier": "UPS"},
        headers=seller_b,
    )
    assert response.status_code == 200
    assert response.json()["order_status"] == "shipped"

    # Buyer confirms everything that shipped
    response = await client.post(f"/api/v1/orders/{number}/confirm-delivery", headers=buyer)
    assert response.status_code == 200
    order = response.json()
    assert order["status"] == "delivered"
    assert [so["status"] for so in order["sub_orders"]] == ["delivered", "delivered"]

    # Seller A settles once
    response = await client.put(
        "/api/v1/sellers/me/payout-account",
        json={"payment_method": "bank-transfer", "details": {"iban": "LK12 3456"}},
        headers=seller_a,
    )
    assert response.status_code == 200

    response = await client.post(
        f"/api/v1/admin/orders/{number}/transfer-profit", json={"seller_id": "seller-a"}, headers=admin
    )
    assert response.status_code == 200
    [payout] = response.json()["payouts"]
    assert payout["amount"] == "90.00"
    assert payout["commission"] == "10.00"

    response = await client.post(
        f"/api/v1/admin/orders/{number}/transfer-profit", json={"seller_id": "seller-a"}, headers=admin
    )
    assert response.status_code == 200
    assert response.json()["payouts"][0]["reference"] == payout["reference"]

    # Seller A now sees the payout on their sub-order
    view = (await client.get(f"/api/v1/orders/{number}", headers=seller_a)).json()
    assert view["sub_order"]["profit_transferred"] is True
    assert view["sub_order"]["payout"]["reference"] == payout["reference"]
