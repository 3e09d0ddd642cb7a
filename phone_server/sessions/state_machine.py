"""
sessions/state_machine.py — Session lifecycle coordinator.

    NEEDS_PAYMENT ──pay / paypal / voucher──▶ IN_PROGRESS ──verify──▶ ISSUED
                                                   │
                                                   └──fail──▶ VERIFICATION_FAILED ──refund──▶ REFUNDED

Every status change is store.update_session(id, expected, patch): the write
only lands if the row is still in the expected status, otherwise it raises
SessionStateConflict and nothing changes. Concurrent requests are decided
there, not by in-process ordering.

Verify & issue order:
    OTP check → eligibility gate → consume OTP → sign credential →
    claim ISSUED → record registration + nullifier
Consuming the code is the single winner across every session racing for it;
the credential is signed before the claim so an ISSUED session always has
one. Errors raised before the claim fail the session or not according to
sessions/policy.py.
"""
import logging
import secrets
from typing import Optional

from phone_server.cache import mask_phone
from phone_server.clock import Clock, now_ms
from phone_server.credentials.issuer import CredentialIssuer
from phone_server.eligibility.gate import DAY_MS, EligibilityGate
from phone_server.errors import (
    AlreadyRegistered,
    InvalidInput,
    InvalidNullifier,
    MaxAttemptsReached,
    NullifierBoundToOtherNumber,
    PhoneNumberUnsafe,
    SessionAlreadyPaid,
    SessionNotFound,
    SessionStateConflict,
)
from phone_server.otp.rate_limit import IpRateLimiter
from phone_server.otp.service import OtpService, country_for_number
from phone_server.payments.chain import require_supported_chain
from phone_server.payments.paypal import PayPalClient
from phone_server.payments.validator import PaymentValidator
from phone_server.sessions.policy import (
    VerificationPolicy,
    failure_reason,
    session_fails_on,
)
from phone_server.store import (
    NullifierRecord,
    Session,
    SessionPatch,
    SessionStatus,
    SessionStore,
)

logger = logging.getLogger(__name__)

ADMIN_FAILURE_REASON = "Unknown"


def new_session_id() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def parse_nullifier(nullifier: Optional[str]) -> Optional[str]:
    """Normalized decimal string; hex input (0x...) is accepted."""
    if nullifier is None or nullifier == "":
        return None
    try:
        value = int(nullifier, 0) if nullifier.lower().startswith("0x") else int(nullifier)
    except ValueError as exc:
        raise InvalidNullifier() from exc
    if value < 0:
        raise InvalidNullifier()
    return str(value)


class SessionStateMachine:
    def __init__(
        self,
        store: SessionStore,
        clock: Clock,
        otp: Optional[OtpService] = None,
        gate: Optional[EligibilityGate] = None,
        issuer: Optional[CredentialIssuer] = None,
        issuer_key: str = "",
        validator: Optional[PaymentValidator] = None,
        paypal: Optional[PayPalClient] = None,
        ip_limiter: Optional[IpRateLimiter] = None,
        environment: str = "development",
        max_attempts: int = 3,
        session_price_usd: float = 5.0,
    ) -> None:
        self.store = store
        self.clock = clock
        self.otp = otp
        self.gate = gate
        self.issuer = issuer
        self.issuer_key = issuer_key
        self.validator = validator
        self.paypal = paypal
        self.ip_limiter = ip_limiter
        self.environment = environment
        self.max_attempts = max_attempts
        self.session_price_usd = session_price_usd

    async def _require(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound()
        return session

    @staticmethod
    def _expect(session: Session, *expected: SessionStatus) -> None:
        if session.status not in expected:
            raise SessionStateConflict(
                session.status.value,
                [s.value for s in expected] if len(expected) > 1 else expected[0].value,
            )

    # -----------------------------------------------------------------------
    # Create / lookup
    # -----------------------------------------------------------------------

    async def create(self, sig_digest: str) -> Session:
        if not sig_digest:
            raise InvalidInput("sigDigest is required")
        session = Session(
            id=new_session_id(),
            sig_digest=sig_digest,
            status=SessionStatus.NEEDS_PAYMENT,
            num_attempts=0,
        )
        return await self.store.create_session(session)

    async def lookup(
        self, session_id: Optional[str] = None, sig_digest: Optional[str] = None
    ) -> list[Session]:
        if session_id:
            session = await self.store.get_session(session_id)
            return [session] if session is not None else []
        if sig_digest:
            return await self.store.get_sessions_by_sig_digest(sig_digest)
        raise InvalidInput("sigDigest or id is required")

    # -----------------------------------------------------------------------
    # Payment: NEEDS_PAYMENT → IN_PROGRESS
    # -----------------------------------------------------------------------

    async def pay_onchain(
        self,
        session_id: str,
        chain_id: Optional[int],
        tx_hash: Optional[str],
        desired_usd: Optional[float] = None,
        check_data: bool = True,
    ) -> Session:
        chain_id = require_supported_chain(chain_id, self.environment)
        if not tx_hash:
            raise InvalidInput("txHash is required")

        session = await self._require(session_id)
        if session.tx_hash:
            raise SessionAlreadyPaid()
        self._expect(session, SessionStatus.NEEDS_PAYMENT)

        await self.validator.validate_session_payment(
            session,
            chain_id,
            tx_hash,
            desired_usd if desired_usd is not None else self.session_price_usd,
            check_data=check_data,
        )
        return await self.store.update_session(
            session_id,
            SessionStatus.NEEDS_PAYMENT,
            SessionPatch(status=SessionStatus.IN_PROGRESS, chain_id=chain_id, tx_hash=tx_hash),
        )

    async def create_paypal_order(self, session_id: str) -> dict:
        session = await self._require(session_id)
        self._expect(session, SessionStatus.NEEDS_PAYMENT)

        order = await self.paypal.create_order(f"{self.session_price_usd:.2f}")
        orders = session.paypal_orders + [
            {"id": order["id"], "createdAt": str(now_ms(self.clock))}
        ]
        await self.store.update_session(
            session_id,
            SessionStatus.NEEDS_PAYMENT,
            SessionPatch(pay_pal={**(session.pay_pal or {}), "orders": orders}),
        )
        logger.info("Attached PayPal order session_id=%s order_id=%s", session_id, order["id"])
        return order

    async def pay_paypal(self, session_id: str, order_id: Optional[str]) -> Session:
        if not order_id:
            raise InvalidInput("orderId is required")
        session = await self._require(session_id)
        self._expect(session, SessionStatus.NEEDS_PAYMENT)

        await self.validator.validate_paypal_order(session, order_id, self.session_price_usd)
        return await self.store.update_session(
            session_id,
            SessionStatus.NEEDS_PAYMENT,
            SessionPatch(status=SessionStatus.IN_PROGRESS),
        )

    async def redeem_voucher(self, session_id: str, voucher_id: Optional[str]) -> Session:
        if not voucher_id:
            raise InvalidInput("voucherId is required")
        await self._require(session_id)
        return await self.store.redeem_voucher(voucher_id, session_id)

    # -----------------------------------------------------------------------
    # Send code
    # -----------------------------------------------------------------------

    async def send_code(
        self, session_id: str, phone_number: str, client_ip: Optional[str] = None
    ) -> Session:
        if not phone_number:
            raise InvalidInput("Missing number")
        session = await self._require(session_id)
        self._expect(session, SessionStatus.IN_PROGRESS)
        if session.num_attempts >= self.max_attempts:
            raise MaxAttemptsReached()

        country = country_for_number(phone_number)
        if self.ip_limiter is not None and client_ip:
            await self.ip_limiter.hit(client_ip)

        logger.info("Sending code session_id=%s phone=%s", session_id, mask_phone(phone_number))
        await self.otp.begin(phone_number, country)
        return await self.store.increment_attempts(session_id, self.max_attempts)

    # -----------------------------------------------------------------------
    # Verify & issue: IN_PROGRESS → ISSUED | VERIFICATION_FAILED
    # -----------------------------------------------------------------------

    async def verify_and_issue(
        self,
        session_id: str,
        phone_number: str,
        code: str,
        country: str,
        policy: VerificationPolicy,
        nullifier: Optional[str] = None,
    ) -> dict:
        if not phone_number or not country:
            raise InvalidInput("number and country are required")
        nullifier = parse_nullifier(nullifier)
        if policy.require_nullifier and nullifier is None:
            raise InvalidInput("nullifier is required")

        session = await self._require(session_id)

        if nullifier is not None and policy.nullifier_grace_days > 0:
            credential = await self._refetch(session, phone_number, nullifier, policy)
            if credential is not None:
                return credential

        if not code:
            raise InvalidInput("code is required")
        self._expect(session, SessionStatus.IN_PROGRESS)

        try:
            await self.otp.check(phone_number, code, owner=session_id)
            eligibility = await self.gate.check_eligibility(phone_number, country, policy)
            if eligibility.is_registered:
                logger.info(
                    "Number has been registered already phone=%s session_id=%s",
                    mask_phone(phone_number),
                    session_id,
                )
                raise AlreadyRegistered()
            if not eligibility.is_safe:
                logger.info(
                    "Phone number could not be determined to belong to a unique human phone=%s",
                    mask_phone(phone_number),
                )
                raise PhoneNumberUnsafe(
                    f"Phone number could not be determined to belong to a unique human. sessionId: {session_id}"
                )

            # Losers of a concurrent verify, for this or any other session, stop here
            await self.otp.consume(phone_number, code, owner=session_id)
            credential = self._issue(phone_number, nullifier)
        except Exception as exc:
            if session_fails_on(exc):
                await self._fail(session_id, exc)
            raise

        await self.store.update_session(
            session_id,
            SessionStatus.IN_PROGRESS,
            SessionPatch(status=SessionStatus.ISSUED),
        )

        issued_at = now_ms(self.clock)
        if policy.sybil_resistance_enabled:
            await self.gate.register(phone_number, at_ms=issued_at)
        if nullifier is not None:
            await self.store.put_nullifier(
                NullifierRecord(
                    issuance_nullifier=nullifier,
                    phone_number=phone_number,
                    created_at=issued_at,
                )
            )

        logger.info("Issued credential session_id=%s policy=%s", session_id, policy.name)
        return credential

    async def _refetch(
        self,
        session: Session,
        phone_number: str,
        nullifier: str,
        policy: VerificationPolicy,
    ) -> Optional[dict]:
        """
        Re-issue without an OTP when the nullifier was bound to this same number
        within the grace window. Returns None when the normal flow should run.
        """
        record = await self.store.get_nullifier(nullifier)
        if record is None:
            return None
        if now_ms(self.clock) - record.created_at > policy.nullifier_grace_days * DAY_MS:
            return None
        if record.phone_number != phone_number:
            logger.warning(
                "Nullifier bound to a different number session_id=%s", session.id
            )
            raise NullifierBoundToOtherNumber()

        registration = await self.store.get_registration(phone_number)
        if registration is not None and registration.inserted_at > record.created_at:
            return None

        if session.status != SessionStatus.IN_PROGRESS:
            self._expect(session, SessionStatus.ISSUED)

        credential = self._issue(phone_number, nullifier)
        if session.status == SessionStatus.IN_PROGRESS:
            await self.store.update_session(
                session.id,
                SessionStatus.IN_PROGRESS,
                SessionPatch(status=SessionStatus.ISSUED),
            )
        logger.info("Re-issuing credential from nullifier session_id=%s", session.id)
        return credential

    def _issue(self, phone_number: str, nullifier: Optional[str]) -> dict:
        return self.issuer.issue(
            self.issuer_key,
            phone_number.lstrip("+"),
            nullifier if nullifier is not None else "0",
        )

    async def _fail(self, session_id: str, exc: BaseException) -> None:
        reason = failure_reason(exc)
        try:
            await self.store.update_session(
                session_id,
                SessionStatus.IN_PROGRESS,
                SessionPatch(status=SessionStatus.VERIFICATION_FAILED, failure_reason=reason),
            )
        except SessionStateConflict as conflict:
            # Another request already moved the session on; the triggering error still propagates
            logger.warning(
                "Could not record failure session_id=%s actual=%s", session_id, conflict.actual
            )
            return
        logger.info("Session failed session_id=%s reason=%s", session_id, reason)

    # -----------------------------------------------------------------------
    # Admin
    # -----------------------------------------------------------------------

    async def force_fail(self, session_id: str) -> Session:
        await self._require(session_id)
        return await self.store.update_session(
            session_id,
            SessionStatus.IN_PROGRESS,
            SessionPatch(
                status=SessionStatus.VERIFICATION_FAILED,
                failure_reason=ADMIN_FAILURE_REASON,
            ),
        )
