"""
Integration tests for the payments API.

Uses httpx's ASGI transport against the real app (minus lifespan). get_db
and get_claims are overridden in conftest; Authorization is
``Bearer <user-uuid>:<role>``.
"""
import json
from decimal import Decimal

import pytest

from tests.conftest import CLIENT_ID, OTHER_CLIENT_ID, MERCHANT_ID, fund, wallet_of


@pytest.fixture
def merchant(api):
    return api(MERCHANT_ID, "merchant")


@pytest.fixture
def client(api):
    return api(CLIENT_ID, "client")


async def issue(merchant, amount="25.00", description="lunch"):
    r = await merchant.post("/api/merchant/generate-payment", json={"amount": amount, "description": description})
    assert r.status_code == 201, r.text
    return r.json()


# ---------------------------------------------------------------------------
# issuance
# ---------------------------------------------------------------------------
class TestIssueEndpoints:
    async def test_merchant_generates_payment_request(self, merchant):
        body = await issue(merchant)
        assert body["status"] == "pending"
        assert Decimal(body["amount"]) == Decimal("25.00")
        assert body["description"] == "lunch"
        assert body["issuer_role"] == "merchant"
        assert len(body["code"]) == 32

    async def test_merchant_minimum_is_enforced(self, merchant):
        r = await merchant.post("/api/merchant/generate-payment", json={"amount": "4.00"})
        assert r.status_code == 400
        assert r.json()["detail"]["kind"] == "validation"

    async def test_non_positive_amount_is_422(self, client):
        r = await client.post("/api/client/qr-code/generate", json={"amount": "0"})
        assert r.status_code == 422

    async def test_client_generates_qr(self, client):
        r = await client.post("/api/client/qr-code/generate", json={"amount": "12.30"})
        assert r.status_code == 201
        assert r.json()["issuer_role"] == "client"

    async def test_role_is_checked(self, client):
        r = await client.post("/api/merchant/generate-payment", json={"amount": "25.00"})
        assert r.status_code == 403

    async def test_missing_auth_is_401(self, api):
        r = await api(None).post("/api/client/qr-code/generate", json={"amount": "1.00"})
        assert r.status_code == 401


# ---------------------------------------------------------------------------
# redemption
# ---------------------------------------------------------------------------
class TestRedeemEndpoints:
    async def test_pay_then_second_attempt_is_already_redeemed(self, merchant, client, session_maker):
        await fund(session_maker, CLIENT_ID, "100.00")
        token = await issue(merchant)

        r = await client.post("/api/client/pay-qrcode", json={"code": token["code"]})
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["code"] == token["code"]
        assert Decimal(body["merchant_receives"]) == Decimal("23.75")
        assert body["replayed"] is False

        again = await client.post("/api/client/pay-qrcode", json={"code": token["code"]})
        assert again.status_code == 409
        assert again.json()["detail"]["kind"] == "already_redeemed"

    async def test_retry_with_request_id_is_replayed(self, merchant, client, session_maker):
        await fund(session_maker, CLIENT_ID, "100.00")
        token = await issue(merchant)
        payload = {"code": token["code"], "request_id": "a1b2c3d4e5f6"}

        first = await client.post("/api/client/pay-qrcode", json=payload)
        second = await client.post("/api/client/pay-qrcode", json=payload)

        assert first.status_code == second.status_code == 200
        assert second.json()["id"] == first.json()["id"]
        assert second.json()["replayed"] is True
        assert (await wallet_of(session_maker, CLIENT_ID)).balance == Decimal("75.50")

    async def test_insufficient_funds_is_402(self, merchant, client, session_maker):
        await fund(session_maker, CLIENT_ID, "5.00")
        token = await issue(merchant)
        r = await client.post("/api/client/pay-qrcode", json={"code": token["code"]})
        assert r.status_code == 402
        assert r.json()["detail"]["kind"] == "insufficient_funds"

    async def test_unknown_code_is_404(self, client):
        r = await client.post("/api/client/pay-qrcode", json={"code": "0" * 32})
        assert r.status_code == 404
        assert r.json()["detail"]["kind"] == "invalid_token"

    @pytest.mark.parametrize("wrap", [
        lambda code: code,
        lambda code: json.dumps({"type": "payment_request", "code": code}),
        lambda code: json.dumps({"type": "payment_request", "qr_code_id": code}),
    ])
    async def test_merchant_processes_client_qr(self, client, merchant, session_maker, wrap):
        await fund(session_maker, CLIENT_ID, "50.00")
        r = await client.post("/api/client/qr-code/generate", json={"amount": "20.00"})
        code = r.json()["code"]

        r = await merchant.post("/api/merchant/process-qrcode", json={"qrData": wrap(code)})

        assert r.status_code == 200, r.text
        assert r.json()["payer_id"] == str(CLIENT_ID)
        assert (await wallet_of(session_maker, MERCHANT_ID)).balance == Decimal("19.00")

    async def test_process_rejects_unreadable_qr(self, merchant):
        r = await merchant.post("/api/merchant/process-qrcode", json={"qrData": "hello"})
        assert r.status_code == 400
        assert r.json()["detail"]["kind"] == "validation"


# ---------------------------------------------------------------------------
# lookup, image, cancel, wallet
# ---------------------------------------------------------------------------
class TestLookupAndManage:
    async def test_issuer_sees_outcome_but_bystander_does_not(self, merchant, client, api, session_maker):
        await fund(session_maker, CLIENT_ID, "100.00")
        token = await issue(merchant)
        await client.post("/api/client/pay-qrcode", json={"code": token["code"]})

        mine = (await merchant.get(f"/api/payment-qr/{token['code']}")).json()
        assert mine["token"]["status"] == "redeemed"
        assert mine["settlement"]["payer_id"] == str(CLIENT_ID)

        other = (await api(OTHER_CLIENT_ID, "client").get(f"/api/payment-qr/{token['code']}")).json()
        assert other["token"]["status"] == "redeemed"
        assert other["settlement"] is None

    async def test_qr_png_for_issuer_only(self, merchant, client):
        token = await issue(merchant)
        r = await merchant.get(f"/api/payment-qr/{token['code']}/qr.png")
        assert r.status_code == 200
        assert r.headers["content-type"] == "image/png"
        assert r.content.startswith(b"\x89PNG")

        r = await client.get(f"/api/payment-qr/{token['code']}/qr.png")
        assert r.status_code == 403

    async def test_cancel(self, merchant, client):
        token = await issue(merchant)
        r = await merchant.post(f"/api/payment-qr/{token['code']}/cancel")
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"

        r = await client.post("/api/client/pay-qrcode", json={"code": token["code"]})
        assert r.status_code == 404

    async def test_wallet_me(self, client, session_maker):
        await fund(session_maker, CLIENT_ID, "100.00")
        body = (await client.get("/api/wallets/me")).json()
        assert Decimal(body["balance"]) == Decimal("100.00")
        assert Decimal(body["bonus_available"]) == Decimal("30.00")

    async def test_health(self, api):
        r = await api(None).get("/health")
        assert r.json()["status"] == "ok"
