import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from fundledger.models import AuditLog, PaymentStatus, PaymentTransaction
from fundledger.services.deposits import new_payment_reference
from fundledger.services.ledger import credit_wallet, get_wallet


def test_payment_reference_format():
    reference = new_payment_reference(42)
    prefix, user_part, millis, suffix = reference.split("_")
    assert prefix == "FL"
    assert user_part == "000042"
    assert millis.isdigit()
    assert len(suffix) == 8
    assert new_payment_reference(42) != reference


@pytest.mark.anyio("asyncio")
async def test_create_deposit_opens_checkout(client, db_session, make_user, fake_gateway, service_headers):
    user = make_user()

    response = await client.post(
        "/deposits",
        json={"user_id": user.id, "amount": "2500.00", "redirect_url": "https://app.test/wallet"},
        headers=service_headers,
    )

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "PENDING"
    assert body["payment_reference"].startswith(f"FL_{user.id:06d}_")
    assert body["transaction_reference"] == f"MNFY|{body['payment_reference']}"
    assert body["checkout_url"].startswith("https://checkout.test/")
    assert body["expires_at"] is not None

    sent = json.loads(fake_gateway.requests[-1].content)
    assert sent["customerEmail"] == user.email
    assert sent["paymentReference"] == body["payment_reference"]

    payment = db_session.scalars(
        select(PaymentTransaction).where(PaymentTransaction.payment_reference == body["payment_reference"])
    ).one()
    assert payment.metadata_json["redirect_url"] == "https://app.test/wallet"
    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "DEPOSIT_INITIATED", AuditLog.entity_id == payment.id)
    ).one()
    assert audit.data_json["customer_email"].startswith("***@")


@pytest.mark.anyio("asyncio")
async def test_create_deposit_requires_service_key(client, make_user, fake_gateway):
    user = make_user()
    response = await client.post("/deposits", json={"user_id": user.id, "amount": "500.00"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "NO_API_KEY"

    response = await client.post(
        "/deposits",
        json={"user_id": user.id, "amount": "500.00"},
        headers={"Authorization": "Bearer wrong"},
    )
    assert response.status_code == 401
    assert fake_gateway.requests == []


@pytest.mark.anyio("asyncio")
@pytest.mark.parametrize("amount", ["50.00", "1000000.01", "-10"])
async def test_create_deposit_rejects_amount_outside_limits(client, make_user, fake_gateway, service_headers, amount):
    user = make_user()
    response = await client.post("/deposits", json={"user_id": user.id, "amount": amount}, headers=service_headers)
    assert response.status_code == 422
    assert fake_gateway.requests == []


@pytest.mark.anyio("asyncio")
async def test_create_deposit_for_unknown_or_inactive_user(client, make_user, fake_gateway, service_headers):
    response = await client.post("/deposits", json={"user_id": 999999, "amount": "500.00"}, headers=service_headers)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "USER_NOT_FOUND"

    inactive = make_user(is_active=False)
    response = await client.post("/deposits", json={"user_id": inactive.id, "amount": "500.00"}, headers=service_headers)
    assert response.status_code == 404


@pytest.mark.anyio("asyncio")
async def test_create_deposit_gateway_failure(client, db_session, make_user, fake_gateway, service_headers):
    user = make_user()
    fake_gateway.failures = [503] * 10

    response = await client.post("/deposits", json={"user_id": user.id, "amount": "500.00"}, headers=service_headers)

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "GATEWAY_UNAVAILABLE"
    assert db_session.scalars(select(PaymentTransaction).where(PaymentTransaction.user_id == user.id)).all() == []


@pytest.mark.anyio("asyncio")
async def test_get_deposit(client, make_payment, service_headers):
    payment = make_payment(amount="700.00")

    response = await client.get(f"/deposits/{payment.payment_reference}", headers=service_headers)
    assert response.status_code == 200
    assert Decimal(response.json()["amount"]) == Decimal("700.00")

    missing = await client.get("/deposits/FL_NOPE", headers=service_headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "PAYMENT_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_verify_paid_deposit_credits_once(client, db_session, make_payment, fake_gateway, service_headers):
    payment = make_payment(amount="900.00")
    fake_gateway.queries[payment.payment_reference] = {
        "transactionReference": payment.transaction_reference,
        "paymentReference": payment.payment_reference,
        "amountPaid": "900.00",
        "paymentStatus": "PAID",
        "paymentMethod": "CARD",
    }

    first = await client.post(f"/deposits/{payment.payment_reference}/verify", headers=service_headers)
    second = await client.post(f"/deposits/{payment.payment_reference}/verify", headers=service_headers)

    assert first.status_code == 200
    assert first.json()["outcome"] == "credited"
    assert first.json()["gateway_status"] == "PAID"
    assert first.json()["payment"]["status"] == "PAID"
    assert second.json()["outcome"] == "already_final"
    assert get_wallet(db_session, payment.user_id).balance == Decimal("900.00")


@pytest.mark.anyio("asyncio")
async def test_verify_failed_deposit(client, db_session, make_payment, fake_gateway, service_headers):
    payment = make_payment()
    fake_gateway.queries[payment.payment_reference] = {
        "transactionReference": payment.transaction_reference,
        "paymentStatus": "FAILED",
    }

    response = await client.post(f"/deposits/{payment.payment_reference}/verify", headers=service_headers)

    assert response.json()["outcome"] == "failed"
    assert response.json()["payment"]["status"] == "FAILED"
    assert get_wallet(db_session, payment.user_id) is None


@pytest.mark.anyio("asyncio")
async def test_verify_still_pending(client, make_payment, fake_gateway, service_headers):
    payment = make_payment()
    fake_gateway.queries[payment.payment_reference] = {"paymentStatus": "PENDING"}

    response = await client.post(f"/deposits/{payment.payment_reference}/verify", headers=service_headers)

    assert response.json()["outcome"] == "still_pending"
    assert response.json()["payment"]["status"] == PaymentStatus.PENDING.value


@pytest.mark.anyio("asyncio")
async def test_verify_gateway_unavailable(client, make_payment, fake_gateway, service_headers):
    payment = make_payment()

    response = await client.post(f"/deposits/{payment.payment_reference}/verify", headers=service_headers)

    assert response.status_code == 502


@pytest.mark.anyio("asyncio")
async def test_wallet_and_ledger_endpoints(client, make_user, db_session, service_headers):
    user = make_user()
    credit_wallet(db_session, user_id=user.id, amount=Decimal("100.00"), reference="A")
    credit_wallet(db_session, user_id=user.id, amount=Decimal("50.00"), reference="B")
    db_session.commit()

    wallet = await client.get(f"/wallets/{user.id}", headers=service_headers)
    assert wallet.status_code == 200
    body = wallet.json()
    assert Decimal(body["balance"]) == Decimal("150.00")
    assert Decimal(body["ledger_balance"]) == Decimal("150.00")
    assert body["deposit_count"] == 2
    assert body["consistent"] is True

    ledger = await client.get(f"/wallets/{user.id}/ledger", params={"limit": 1}, headers=service_headers)
    assert ledger.status_code == 200
    entries = ledger.json()
    assert len(entries) == 1
    assert entries[0]["reference"] == "B"


@pytest.mark.anyio("asyncio")
async def test_wallet_for_user_without_deposits(client, make_user, service_headers):
    user = make_user()
    body = (await client.get(f"/wallets/{user.id}", headers=service_headers)).json()
    assert Decimal(body["balance"]) == Decimal("0")
    assert body["deposit_count"] == 0

    missing = await client.get("/wallets/999999", headers=service_headers)
    assert missing.status_code == 404
