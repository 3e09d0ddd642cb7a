"""
In-memory stand-ins for the store and the outbound gateways.

InMemoryStore follows the same conditional-update contract as SqlStore:
a write whose expected status does not match raises and changes nothing.
"""
import itertools
from decimal import Decimal
from typing import Optional

from phone_server.errors import (
    MaxAttemptsReached,
    SessionNotFound,
    SessionStateConflict,
    TransactionAlreadyUsed,
    VoucherAlreadyRedeemed,
    VoucherNotFound,
)
from phone_server.payments.chain import ChainTransaction, TxReceipt
from phone_server.store import (
    ExpectedStatus,
    NullifierRecord,
    PhoneRegistration,
    Session,
    SessionPatch,
    SessionStatus,
    Voucher,
    _expected_set,
)

PAYMENT_ADDRESS = "0xdca2e9ae8423d7b0f94d7f9fc09e698a45f3c851"
REFUND_TO = "0x" + "ab" * 20
ISSUER_KEY = "11" * 32


class FakeClock:
    def __init__(self, start: float) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class InMemoryStore:
    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}
        self.vouchers: dict[str, Voucher] = {}
        self.nullifiers: dict[str, NullifierRecord] = {}
        self.registrations: dict[str, PhoneRegistration] = {}

    async def create_session(self, session: Session) -> Session:
        self.sessions[session.id] = session
        return session

    async def get_session(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    async def get_session_by_tx_hash(self, tx_hash: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.tx_hash == tx_hash:
                return session
        return None

    async def get_sessions_by_sig_digest(self, sig_digest: str) -> list[Session]:
        return [s for s in self.sessions.values() if s.sig_digest == sig_digest]

    async def update_session(
        self, session_id: str, expected_status: ExpectedStatus, patch: SessionPatch
    ) -> Session:
        current = self.sessions.get(session_id)
        if current is None:
            raise SessionNotFound()
        expected = _expected_set(expected_status)
        if current.status not in expected:
            raise SessionStateConflict(current.status.value, sorted(s.value for s in expected))
        tx_hash = patch.values().get("tx_hash")
        if tx_hash and any(
            s.tx_hash == tx_hash for s in self.sessions.values() if s.id != session_id
        ):
            raise TransactionAlreadyUsed()
        updated = patch.apply(current)
        self.sessions[session_id] = updated
        return updated

    async def increment_attempts(self, session_id: str, max_attempts: int) -> Session:
        current = self.sessions.get(session_id)
        if current is None:
            raise SessionNotFound()
        if current.status != SessionStatus.IN_PROGRESS:
            raise SessionStateConflict(current.status.value, SessionStatus.IN_PROGRESS.value)
        if current.num_attempts >= max_attempts:
            raise MaxAttemptsReached()
        updated = current.model_copy(update={"num_attempts": current.num_attempts + 1})
        self.sessions[session_id] = updated
        return updated

    async def add_vouchers(self, vouchers: list[Voucher]) -> None:
        for voucher in vouchers:
            self.vouchers[voucher.id] = voucher

    async def get_voucher(self, voucher_id: str) -> Optional[Voucher]:
        return self.vouchers.get(voucher_id)

    async def voucher_tx_hash_used(self, tx_hash: str) -> bool:
        return any(v.tx_hash == tx_hash for v in self.vouchers.values())

    async def redeem_voucher(self, voucher_id: str, session_id: str) -> Session:
        voucher = self.vouchers.get(voucher_id)
        if voucher is None:
            raise VoucherNotFound()
        if voucher.is_redeemed:
            raise VoucherAlreadyRedeemed()
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound()
        if session.status != SessionStatus.NEEDS_PAYMENT:
            raise SessionStateConflict(session.status.value, SessionStatus.NEEDS_PAYMENT.value)
        self.vouchers[voucher_id] = voucher.model_copy(
            update={"is_redeemed": True, "session_id": session_id}
        )
        updated = session.model_copy(update={"status": SessionStatus.IN_PROGRESS})
        self.sessions[session_id] = updated
        return updated

    async def get_nullifier(self, nullifier: str) -> Optional[NullifierRecord]:
        return self.nullifiers.get(nullifier)

    async def put_nullifier(self, record: NullifierRecord) -> None:
        self.nullifiers[record.issuance_nullifier] = record

    async def get_registration(self, phone_number: str) -> Optional[PhoneRegistration]:
        return self.registrations.get(phone_number)

    async def put_registration(self, registration: PhoneRegistration) -> None:
        self.registrations[registration.phone_number] = registration

    async def delete_registration(self, phone_number: str) -> bool:
        return self.registrations.pop(phone_number, None) is not None


class FakeChainGateway:
    def __init__(self, refund_balance: int = 10**20, refund_status: int = 1) -> None:
        self.transactions: dict[tuple[int, str], ChainTransaction] = {}
        self.refund_balance = refund_balance
        self.refund_status = refund_status
        self.refunds: list[tuple[int, str, int]] = []
        self.lookups = 0
        self.fail_lookups = 0

    def add_transaction(
        self,
        chain_id: int,
        tx_hash: str,
        value: int,
        data: str = "0x",
        to: str = PAYMENT_ADDRESS,
        confirmations: int = 3,
    ) -> ChainTransaction:
        tx = ChainTransaction(
            hash=tx_hash,
            to=to,
            value=value,
            data=data,
            block_hash="0x" + "cd" * 32 if confirmations else None,
            confirmations=confirmations,
        )
        self.transactions[(chain_id, tx_hash)] = tx
        return tx

    async def get_transaction(self, chain_id: int, tx_hash: str) -> Optional[ChainTransaction]:
        self.lookups += 1
        if self.fail_lookups > 0:
            self.fail_lookups -= 1
            raise ConnectionError("rpc unavailable")
        return self.transactions.get((chain_id, tx_hash))

    async def get_refund_balance(self, chain_id: int) -> int:
        return self.refund_balance

    async def send_refund(self, chain_id: int, to: str, value: int) -> TxReceipt:
        self.refunds.append((chain_id, to, value))
        return TxReceipt(
            chain_id=chain_id,
            transaction_hash="0x" + f"{len(self.refunds):064x}",
            block_number=100 + len(self.refunds),
            status=self.refund_status,
        )


class FakePriceFeed:
    """Fixed USD prices; same wei conversion as PriceFeed.usd_to_wei."""

    def __init__(self, prices: Optional[dict[str, float]] = None) -> None:
        self.prices = prices or {"ETH": 2000.0, "FTM": 0.5, "AVAX": 25.0}

    async def usd_price(self, symbol: str) -> float:
        return self.prices[symbol]

    async def usd_to_wei(self, usd_amount: float, symbol: str) -> int:
        ether = Decimal(str(usd_amount)) / Decimal(str(self.prices[symbol]))
        return int(ether * Decimal(10) ** 18)


class FakePayPal:
    def __init__(self) -> None:
        self.orders: dict[str, dict] = {}
        self.refunds: list[tuple[str, str, str]] = []
        self.refund_status = "COMPLETED"
        self._ids = itertools.count(1)

    def complete(self, order_id: str, amount: str = "5.00") -> None:
        self.orders[order_id] = {
            "id": order_id,
            "status": "COMPLETED",
            "purchase_units": [
                {
                    "payments": {
                        "captures": [
                            {"id": f"CAP-{order_id}", "status": "COMPLETED",
                             "amount": {"currency_code": "USD", "value": amount}}
                        ]
                    }
                }
            ],
        }

    async def create_order(self, usd_amount: str) -> dict:
        order_id = f"ORDER-{next(self._ids)}"
        self.orders[order_id] = {"id": order_id, "status": "CREATED", "amount": usd_amount}
        return self.orders[order_id]

    async def get_order(self, order_id: str) -> dict:
        return self.orders[order_id]

    async def capture_order(self, order_id: str) -> dict:
        return self.orders[order_id]

    async def refund_capture(self, capture_id: str, usd_amount: str, note: str) -> dict:
        self.refunds.append((capture_id, usd_amount, note))
        return {"id": f"REFUND-{len(self.refunds)}", "status": self.refund_status}


class FakeFraudScorer:
    def __init__(self, score: float = 10) -> None:
        self.score = score
        self.calls: list[tuple[str, str]] = []

    async def fraud_score(self, phone_number: str, country: str) -> float:
        self.calls.append((phone_number, country))
        return self.score


class RecordingSms:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    async def send(self, phone_number: str, message: str) -> None:
        self.messages.append((phone_number, message))

    def last_code(self, phone_number: str) -> str:
        for number, message in reversed(self.messages):
            if number == phone_number:
                return message.split(" ", 1)[0]
        raise AssertionError(f"no SMS sent to {phone_number}")


class RecordingIssuer:
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []

    def issue(self, private_key: str, phone_number: str, extra: str) -> dict:
        self.calls.append((private_key, phone_number, extra))
        return {
            "credentials": {"phoneNumber": phone_number, "nullifier": extra},
            "signature": "0xsig",
        }
