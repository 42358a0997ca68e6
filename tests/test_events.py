import json
from unittest.mock import AsyncMock

import pytest

from vale_cashback.core import nats as nats_core
from tests.conftest import CLIENT_ID, MERCHANT_ID, fund


class FakeNats:
    is_connected = True

    def __init__(self, publish=None):
        self.publish = publish or AsyncMock()


@pytest.fixture
def events(monkeypatch):
    fake = FakeNats()
    monkeypatch.setattr(nats_core._settings, "enable_nats_events", True)
    monkeypatch.setattr(nats_core, "_nats", fake)
    return fake


class TestSettlementEvents:
    async def test_settlement_is_published_once(self, events, api, session_maker):
        await fund(session_maker, CLIENT_ID, "100.00")
        merchant, client = api(MERCHANT_ID, "merchant"), api(CLIENT_ID, "client")
        token = (await merchant.post("/api/merchant/generate-payment", json={"amount": "25.00"})).json()
        payload = {"code": token["code"], "request_id": "retry-me-123"}

        await client.post("/api/client/pay-qrcode", json=payload)
        await client.post("/api/client/pay-qrcode", json=payload)

        events.publish.assert_awaited_once()
        subject, raw = events.publish.await_args.args
        evt = json.loads(raw)
        assert subject == "payments.settled"
        assert evt["code"] == token["code"]
        assert evt["amount"] == "25.00"
        assert evt["idempotency_key"] == f"settlement:{token['id']}"

    async def test_publish_failure_does_not_fail_payment(self, monkeypatch, api, session_maker, log_records):
        monkeypatch.setattr(nats_core._settings, "enable_nats_events", True)
        monkeypatch.setattr(nats_core, "_nats", FakeNats(AsyncMock(side_effect=ConnectionError("nats down"))))
        await fund(session_maker, CLIENT_ID, "100.00")
        token = (await api(MERCHANT_ID, "merchant").post(
            "/api/merchant/generate-payment", json={"amount": "25.00"})).json()

        r = await api(CLIENT_ID, "client").post("/api/client/pay-qrcode", json={"code": token["code"]})

        assert r.status_code == 200
        assert any(rec["message"] == "Settlement event not published" for rec in log_records)

    async def test_disabled_events_are_skipped(self, monkeypatch):
        fake = FakeNats()
        monkeypatch.setattr(nats_core._settings, "enable_nats_events", False)
        monkeypatch.setattr(nats_core, "_nats", fake)
        await nats_core.publish_settlement({"code": "x"})
        fake.publish.assert_not_awaited()
