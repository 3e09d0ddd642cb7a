"""
HTTP-level tests for the phone verification API.

The app runs in-process over ASGITransport; the lifespan does not run, so
app.state is populated with fakes and get_store is overridden with the
in-memory store.
"""
import secrets

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from phone_server.config import settings
from phone_server.main import _check_issuer_key, app
from phone_server.otp.rate_limit import CountryRateLimiter
from phone_server.otp.service import OtpService
from phone_server.payments.chain import session_id_digest
from phone_server.sessions.deps import get_store
from phone_server.store import PhoneRegistration, SessionStatus
from phone_server.tests.fakes import (
    ISSUER_KEY,
    REFUND_TO,
    FakeChainGateway,
    FakeFraudScorer,
    FakePayPal,
    FakePriceFeed,
    RecordingIssuer,
    RecordingSms,
)

PHONE = "+15551234567"
CHAIN = 10
FIVE_USD_IN_WEI = 2_500_000_000_000_000
ADMIN_KEY = "admin-secret"


class Api:
    def __init__(self, client: AsyncClient, store, chain, sms, otp, paypal) -> None:
        self.client = client
        self.store = store
        self.chain = chain
        self.sms = sms
        self.otp = otp
        self.paypal = paypal

    async def create(self, sig_digest: str = "abc") -> str:
        response = await self.client.post("/api/sessions", json={"sigDigest": sig_digest})
        assert response.status_code == 201
        return response.json()["id"]

    def tx_for(self, session_id: str, value: int = FIVE_USD_IN_WEI) -> str:
        tx_hash = "0x" + secrets.token_hex(32)
        self.chain.add_transaction(CHAIN, tx_hash, value, data=session_id_digest(session_id))
        return tx_hash

    async def paid(self) -> str:
        session_id = await self.create()
        response = await self.client.post(
            f"/api/sessions/{session_id}/payment",
            json={"chainId": CHAIN, "txHash": self.tx_for(session_id)},
        )
        assert response.status_code == 200, response.text
        return session_id

    async def send(self, session_id: str) -> str:
        response = await self.client.post(
            "/api/otp/send", json={"number": PHONE, "sessionId": session_id}
        )
        assert response.status_code == 200, response.text
        await self.otp.drain()
        return self.sms.last_code(PHONE)


@pytest_asyncio.fixture
async def api(redis, clock, store, monkeypatch):
    monkeypatch.setattr(settings, "tx_fetch_attempts", 1)
    monkeypatch.setattr(settings, "admin_api_key_low_privilege", ADMIN_KEY)
    monkeypatch.setattr(settings, "disable_sybil_resistance_for_testing", False)

    chain = FakeChainGateway()
    sms = RecordingSms()
    paypal = FakePayPal()
    otp = OtpService(redis, sms, CountryRateLimiter(redis, clock, 100, 1000))
    app.state.redis = redis
    app.state.clock = clock
    app.state.chain = chain
    app.state.prices = FakePriceFeed()
    app.state.paypal = paypal
    app.state.fraud = FakeFraudScorer(score=10)
    app.state.otp = otp
    app.state.issuer = RecordingIssuer()
    app.dependency_overrides[get_store] = lambda: store

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield Api(client, store, chain, sms, otp, paypal)

    await otp.drain()
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health(api: Api) -> None:
    response = await api.client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_create_session_shape(api: Api) -> None:
    response = await api.client.post("/api/sessions", json={"sigDigest": "abc"})
    assert response.status_code == 201
    body = response.json()
    assert body["sigDigest"] == "abc"
    assert body["sessionStatus"] == "NEEDS_PAYMENT"
    assert body["numAttempts"] == 0
    assert len(body["id"]) == 64


@pytest.mark.asyncio
async def test_create_session_requires_sig_digest(api: Api) -> None:
    response = await api.client.post("/api/sessions", json={})
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "BAD_REQUEST"
    assert error["message"] == "sigDigest is required"


@pytest.mark.asyncio
async def test_get_sessions_by_sig_digest(api: Api) -> None:
    await api.create("abc")
    await api.create("abc")
    response = await api.client.get("/api/sessions", params={"sigDigest": "abc"})
    assert response.status_code == 200
    assert len(response.json()) == 2

    response = await api.client.get("/api/sessions")
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_full_verification_flow(api: Api) -> None:
    session_id = await api.paid()
    code = await api.send(session_id)

    response = await api.client.post(
        "/api/credentials/v4",
        json={"number": PHONE, "code": code, "country": "US", "sessionId": session_id},
    )
    assert response.status_code == 200, response.text
    assert response.json()["credentials"]["phoneNumber"] == "15551234567"

    sessions = (await api.client.get("/api/sessions", params={"id": session_id})).json()
    assert sessions[0]["sessionStatus"] == "ISSUED"
    assert sessions[0]["numAttempts"] == 1


@pytest.mark.asyncio
async def test_wrong_code_then_refund(api: Api) -> None:
    session_id = await api.paid()
    code = await api.send(session_id)
    wrong = "000000" if code != "000000" else "111111"

    response = await api.client.post(
        "/api/credentials/v4",
        json={"number": PHONE, "code": wrong, "country": "US", "sessionId": session_id},
    )
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "OTP does not match"

    response = await api.client.post(f"/api/sessions/{session_id}/refund", json={"to": REFUND_TO})
    assert response.status_code == 200, response.text
    body = response.json()
    assert body["sessionId"] == session_id
    assert body["method"] == "onchain"
    assert body["txHash"].startswith("0x")

    response = await api.client.post(f"/api/sessions/{session_id}/refund", json={"to": REFUND_TO})
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ALREADY_REFUNDED"


@pytest.mark.asyncio
async def test_unsafe_number_keeps_session_open(api: Api) -> None:
    app.state.fraud.score = 90
    session_id = await api.paid()
    code = await api.send(session_id)

    response = await api.client.post(
        "/api/credentials/v4",
        json={"number": PHONE, "code": code, "country": "US", "sessionId": session_id},
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PHONE_NUMBER_UNSAFE"
    assert (await api.store.get_session(session_id)).status == SessionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_unknown_credentials_version(api: Api) -> None:
    session_id = await api.paid()
    response = await api.client.post(
        "/api/credentials/v9",
        json={"number": PHONE, "code": "123456", "country": "US", "sessionId": session_id},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_send_code_on_unpaid_session_conflicts(api: Api) -> None:
    session_id = await api.create()
    response = await api.client.post(
        "/api/otp/send", json={"number": PHONE, "sessionId": session_id}
    )
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "SESSION_STATE_CONFLICT"
    assert error["message"] == "Session status is 'NEEDS_PAYMENT'. Expected 'IN_PROGRESS'"


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_payment_rejections(api: Api) -> None:
    session_id = await api.create()

    response = await api.client.post(
        f"/api/sessions/{session_id}/payment", json={"chainId": 99999, "txHash": "0x01"}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "UNSUPPORTED_CHAIN"

    tx_hash = "0x" + secrets.token_hex(32)
    api.chain.add_transaction(CHAIN, tx_hash, FIVE_USD_IN_WEI, to="0x" + "12" * 20)
    response = await api.client.post(
        f"/api/sessions/{session_id}/payment", json={"chainId": CHAIN, "txHash": tx_hash}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TX_INVALID_RECIPIENT"
    assert (await api.store.get_session(session_id)).status == SessionStatus.NEEDS_PAYMENT


@pytest.mark.asyncio
async def test_paypal_payment_v2(api: Api) -> None:
    session_id = await api.create()
    response = await api.client.post(f"/api/sessions/{session_id}/paypal-order")
    assert response.status_code == 201
    order_id = response.json()["id"]
    api.paypal.complete(order_id)

    response = await api.client.post(
        f"/api/sessions/{session_id}/payment/v2", json={"orderId": order_id}
    )
    assert response.status_code == 200, response.text
    assert response.json() == {"success": True}
    assert (await api.store.get_session(session_id)).status == SessionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_admin_payment_requires_key_and_skips_calldata(api: Api) -> None:
    session_id = await api.create()
    tx_hash = "0x" + secrets.token_hex(32)
    api.chain.add_transaction(CHAIN, tx_hash, FIVE_USD_IN_WEI, data="0x")
    body = {"chainId": CHAIN, "txHash": tx_hash}

    response = await api.client.post(f"/api/sessions/{session_id}/payment/v3", json=body)
    assert response.status_code == 401

    response = await api.client.post(
        f"/api/sessions/{session_id}/payment/v3", json=body, headers={"x-api-key": ADMIN_KEY}
    )
    assert response.status_code == 200, response.text


# ---------------------------------------------------------------------------
# Vouchers
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_vouchers_generate_and_redeem(api: Api) -> None:
    tx_hash = "0x" + secrets.token_hex(32)
    api.chain.add_transaction(CHAIN, tx_hash, FIVE_USD_IN_WEI * 2)

    response = await api.client.post(
        "/api/vouchers", json={"chainId": CHAIN, "txHash": tx_hash, "numberOfVouchers": 2}
    )
    assert response.status_code == 201, response.text
    voucher_ids = response.json()["voucherIds"]
    assert len(voucher_ids) == 2

    response = await api.client.post(
        "/api/vouchers", json={"chainId": CHAIN, "txHash": tx_hash, "numberOfVouchers": 1}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "TX_ALREADY_USED"

    session_id = await api.create()
    response = await api.client.post(
        f"/api/sessions/{session_id}/redeem-voucher", json={"voucherId": voucher_ids[0]}
    )
    assert response.status_code == 200
    assert (await api.store.get_session(session_id)).status == SessionStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_vouchers_validate_count(api: Api) -> None:
    response = await api.client.post(
        "/api/vouchers", json={"chainId": CHAIN, "txHash": "0x01", "numberOfVouchers": 0}
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_admin_requires_api_key(api: Api) -> None:
    response = await api.client.get("/api/admin/user-sessions", params={"id": "x"})
    assert response.status_code == 401
    response = await api.client.get(
        "/api/admin/user-sessions", params={"id": "x"}, headers={"x-api-key": "wrong"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_user_sessions_and_fail(api: Api) -> None:
    headers = {"x-api-key": ADMIN_KEY}
    session_id = await api.paid()
    await api.create("abc")

    response = await api.client.get(
        "/api/admin/user-sessions", params={"id": session_id}, headers=headers
    )
    assert response.status_code == 200
    assert len(response.json()) == 2

    response = await api.client.post(f"/api/admin/sessions/{session_id}/fail", headers=headers)
    assert response.status_code == 200
    session = await api.store.get_session(session_id)
    assert session.status == SessionStatus.VERIFICATION_FAILED
    assert session.failure_reason == "Unknown"


@pytest.mark.asyncio
async def test_admin_delete_phone_number(api: Api) -> None:
    headers = {"x-api-key": ADMIN_KEY}
    response = await api.client.delete(f"/api/admin/phone-numbers/{PHONE}", headers=headers)
    assert response.status_code == 404

    await api.store.put_registration(PhoneRegistration(phone_number=PHONE, inserted_at=1))
    response = await api.client.delete(f"/api/admin/phone-numbers/{PHONE}", headers=headers)
    assert response.status_code == 200
    assert await api.store.get_registration(PHONE) is None


@pytest.mark.parametrize("key", ["", "not-hex", "11" * 16])
def test_startup_rejects_issuer_key_that_cannot_sign(key) -> None:
    with pytest.raises(RuntimeError):
        _check_issuer_key(key)


def test_startup_accepts_ed25519_seed() -> None:
    _check_issuer_key(ISSUER_KEY)
    _check_issuer_key("0x" + ISSUER_KEY)
