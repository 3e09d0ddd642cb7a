"""
store.py — Data access facade for phone_server.

Provides a consistent, high-level API for persisting and retrieving sessions,
vouchers, nullifier records and phone number registrations. The state machine,
the refund coordinator and the routes use this API: nothing else touches
SQLAlchemy directly.

Design principles:
  - SqlStore wraps one AsyncSession; FastAPI builds one per request (sessions/deps.py)
  - Every write commits: a conditional status transition is a durable point,
    so a failure recorded before an error is re-raised survives the request
  - Status changes go through update_session(id, expected_status, patch) only;
    a mismatch raises SessionStateConflict and changes nothing
  - Returns domain Pydantic objects (not ORM instances) so callers are persistence-agnostic
  - Logs only session ids and masked phone numbers
"""
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Collection, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from phone_server.cache import mask_phone
from phone_server.errors import (
    MaxAttemptsReached,
    SessionNotFound,
    SessionStateConflict,
    TransactionAlreadyUsed,
    VoucherAlreadyRedeemed,
    VoucherNotFound,
)
from phone_server.models.nullifier import NullifierORM
from phone_server.models.phone_number import PhoneNumberORM
from phone_server.models.session import SessionORM
from phone_server.models.voucher import VoucherORM

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Domain types
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    NEEDS_PAYMENT = "NEEDS_PAYMENT"
    IN_PROGRESS = "IN_PROGRESS"
    ISSUED = "ISSUED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    REFUNDED = "REFUNDED"


class Session(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sig_digest: str
    status: SessionStatus
    chain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    num_attempts: int = 0
    refund_tx_hash: Optional[str] = None
    pay_pal: Optional[dict] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def paypal_orders(self) -> list[dict]:
        return list((self.pay_pal or {}).get("orders", []))


class SessionPatch(BaseModel):
    """
    Partial update applied together with a conditional status check.
    Only fields explicitly set are written.
    """
    status: Optional[SessionStatus] = None
    chain_id: Optional[int] = None
    tx_hash: Optional[str] = None
    num_attempts: Optional[int] = None
    refund_tx_hash: Optional[str] = None
    pay_pal: Optional[dict] = None
    failure_reason: Optional[str] = None

    def values(self) -> dict[str, Any]:
        data = self.model_dump(exclude_unset=True)
        if "status" in data and data["status"] is not None:
            data["status"] = SessionStatus(data["status"]).value
        return data

    def apply(self, session: Session) -> Session:
        return session.model_copy(update=self.model_dump(exclude_unset=True))


class Voucher(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    is_redeemed: bool = False
    session_id: Optional[str] = None
    tx_hash: str


class NullifierRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    issuance_nullifier: str
    phone_number: str
    created_at: int  # epoch millis


class PhoneRegistration(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    phone_number: str
    inserted_at: int  # epoch millis


ExpectedStatus = Union[SessionStatus, Collection[SessionStatus]]


def _expected_set(expected: ExpectedStatus) -> frozenset[SessionStatus]:
    if isinstance(expected, str):
        return frozenset({SessionStatus(expected)})
    return frozenset(SessionStatus(e) for e in expected)


class SessionStore(Protocol):
    """Contract shared by SqlStore and the in-memory test store."""

    async def create_session(self, session: Session) -> Session: ...
    async def get_session(self, session_id: str) -> Optional[Session]: ...
    async def get_session_by_tx_hash(self, tx_hash: str) -> Optional[Session]: ...
    async def get_sessions_by_sig_digest(self, sig_digest: str) -> list[Session]: ...
    async def update_session(
        self, session_id: str, expected_status: ExpectedStatus, patch: SessionPatch
    ) -> Session: ...
    async def increment_attempts(self, session_id: str, max_attempts: int) -> Session: ...
    async def add_vouchers(self, vouchers: list[Voucher]) -> None: ...
    async def get_voucher(self, voucher_id: str) -> Optional[Voucher]: ...
    async def voucher_tx_hash_used(self, tx_hash: str) -> bool: ...
    async def redeem_voucher(self, voucher_id: str, session_id: str) -> Session: ...
    async def get_nullifier(self, nullifier: str) -> Optional[NullifierRecord]: ...
    async def put_nullifier(self, record: NullifierRecord) -> None: ...
    async def get_registration(self, phone_number: str) -> Optional[PhoneRegistration]: ...
    async def put_registration(self, registration: PhoneRegistration) -> None: ...
    async def delete_registration(self, phone_number: str) -> bool: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------

class SqlStore:
    """SessionStore backed by PostgreSQL (SQLite in tests)."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    # --- Sessions ---------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        orm = SessionORM(
            id=session.id,
            sig_digest=session.sig_digest,
            status=session.status.value,
            chain_id=session.chain_id,
            tx_hash=session.tx_hash,
            num_attempts=session.num_attempts,
            pay_pal=session.pay_pal,
        )
        self.db.add(orm)
        await self.db.commit()
        logger.info("Created session session_id=%s", session.id)
        return Session.model_validate(orm)

    async def get_session(self, session_id: str) -> Optional[Session]:
        result = await self.db.execute(
            select(SessionORM)
            .where(SessionORM.id == session_id)
            .execution_options(populate_existing=True)
        )
        orm = result.scalar_one_or_none()
        return Session.model_validate(orm) if orm is not None else None

    async def get_session_by_tx_hash(self, tx_hash: str) -> Optional[Session]:
        result = await self.db.execute(
            select(SessionORM)
            .where(SessionORM.tx_hash == tx_hash)
            .execution_options(populate_existing=True)
        )
        orm = result.scalar_one_or_none()
        return Session.model_validate(orm) if orm is not None else None

    async def get_sessions_by_sig_digest(self, sig_digest: str) -> list[Session]:
        result = await self.db.execute(
            select(SessionORM)
            .where(SessionORM.sig_digest == sig_digest)
            .order_by(SessionORM.created_at.asc())
            .execution_options(populate_existing=True)
        )
        return [Session.model_validate(orm) for orm in result.scalars().all()]

    async def update_session(
        self,
        session_id: str,
        expected_status: ExpectedStatus,
        patch: SessionPatch,
    ) -> Session:
        """
        UPDATE ... WHERE id = :id AND status IN (:expected).

        Zero rows matched → re-read and raise SessionNotFound or
        SessionStateConflict(actual, expected). A duplicate tx_hash hits the
        unique index and surfaces as TransactionAlreadyUsed.
        """
        expected = _expected_set(expected_status)
        values = patch.values()
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(SessionORM)
            .where(
                SessionORM.id == session_id,
                SessionORM.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
        except IntegrityError:
            await self.db.rollback()
            logger.warning("tx_hash collision on update session_id=%s", session_id)
            raise TransactionAlreadyUsed()

        if result.rowcount == 0:
            await self.db.rollback()
            current = await self.get_session(session_id)
            if current is None:
                raise SessionNotFound()
            raise SessionStateConflict(
                current.status.value, sorted(s.value for s in expected)
            )

        await self.db.commit()
        updated = await self.get_session(session_id)
        logger.info(
            "Updated session session_id=%s fields=%s",
            session_id,
            ",".join(sorted(patch.values())),
        )
        return updated

    async def increment_attempts(self, session_id: str, max_attempts: int) -> Session:
        """Atomic num_attempts += 1, only while IN_PROGRESS and below the cap."""
        stmt = (
            update(SessionORM)
            .where(
                SessionORM.id == session_id,
                SessionORM.status == SessionStatus.IN_PROGRESS.value,
                SessionORM.num_attempts < max_attempts,
            )
            .values(
                num_attempts=SessionORM.num_attempts + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 0:
            await self.db.rollback()
            current = await self.get_session(session_id)
            if current is None:
                raise SessionNotFound()
            if current.status != SessionStatus.IN_PROGRESS:
                raise SessionStateConflict(
                    current.status.value, SessionStatus.IN_PROGRESS.value
                )
            raise MaxAttemptsReached()
        await self.db.commit()
        return await self.get_session(session_id)

    # --- Vouchers ---------------------------------------------------------

    async def add_vouchers(self, vouchers: list[Voucher]) -> None:
        for voucher in vouchers:
            self.db.add(
                VoucherORM(
                    id=voucher.id,
                    is_redeemed=voucher.is_redeemed,
                    session_id=voucher.session_id,
                    tx_hash=voucher.tx_hash,
                )
            )
        await self.db.commit()
        logger.info("Created vouchers count=%d", len(vouchers))

    async def get_voucher(self, voucher_id: str) -> Optional[Voucher]:
        result = await self.db.execute(
            select(VoucherORM)
            .where(VoucherORM.id == voucher_id)
            .execution_options(populate_existing=True)
        )
        orm = result.scalar_one_or_none()
        return Voucher.model_validate(orm) if orm is not None else None

    async def voucher_tx_hash_used(self, tx_hash: str) -> bool:
        result = await self.db.execute(
            select(VoucherORM.id).where(VoucherORM.tx_hash == tx_hash).limit(1)
        )
        return result.first() is not None

    async def redeem_voucher(self, voucher_id: str, session_id: str) -> Session:
        """
        Mark the voucher redeemed and move the session NEEDS_PAYMENT → IN_PROGRESS
        in one transaction: either both happen or neither does.
        """
        voucher_stmt = (
            update(VoucherORM)
            .where(VoucherORM.id == voucher_id, VoucherORM.is_redeemed.is_(False))
            .values(is_redeemed=True, session_id=session_id)
            .execution_options(synchronize_session=False)
        )
        session_stmt = (
            update(SessionORM)
            .where(
                SessionORM.id == session_id,
                SessionORM.status == SessionStatus.NEEDS_PAYMENT.value,
            )
            .values(
                status=SessionStatus.IN_PROGRESS.value,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )

        voucher_result = await self.db.execute(voucher_stmt)
        if voucher_result.rowcount == 0:
            await self.db.rollback()
            if await self.get_voucher(voucher_id) is None:
                raise VoucherNotFound()
            raise VoucherAlreadyRedeemed()

        session_result = await self.db.execute(session_stmt)
        if session_result.rowcount == 0:
            await self.db.rollback()
            current = await self.get_session(session_id)
            if current is None:
                raise SessionNotFound()
            raise SessionStateConflict(
                current.status.value, SessionStatus.NEEDS_PAYMENT.value
            )

        await self.db.commit()
        logger.info("Redeemed voucher session_id=%s", session_id)
        return await self.get_session(session_id)

    # --- Nullifiers -------------------------------------------------------

    async def get_nullifier(self, nullifier: str) -> Optional[NullifierRecord]:
        result = await self.db.execute(
            select(NullifierORM).where(NullifierORM.issuance_nullifier == nullifier)
        )
        orm = result.scalar_one_or_none()
        return NullifierRecord.model_validate(orm) if orm is not None else None

    async def put_nullifier(self, record: NullifierRecord) -> None:
        orm = await self.db.get(NullifierORM, record.issuance_nullifier)
        if orm is None:
            self.db.add(
                NullifierORM(
                    issuance_nullifier=record.issuance_nullifier,
                    phone_number=record.phone_number,
                    created_at=record.created_at,
                )
            )
        else:
            orm.phone_number = record.phone_number
            orm.created_at = record.created_at
        await self.db.commit()

    # --- Registrations ----------------------------------------------------

    async def get_registration(self, phone_number: str) -> Optional[PhoneRegistration]:
        result = await self.db.execute(
            select(PhoneNumberORM)
            .where(PhoneNumberORM.phone_number == phone_number)
            .execution_options(populate_existing=True)
        )
        orm = result.scalar_one_or_none()
        return PhoneRegistration.model_validate(orm) if orm is not None else None

    async def put_registration(self, registration: PhoneRegistration) -> None:
        """Upsert: re-registering an expired number refreshes inserted_at."""
        orm = await self.db.get(PhoneNumberORM, registration.phone_number)
        if orm is None:
            self.db.add(
                PhoneNumberORM(
                    phone_number=registration.phone_number,
                    inserted_at=registration.inserted_at,
                )
            )
        else:
            orm.inserted_at = registration.inserted_at
        await self.db.commit()
        logger.info("Registered phone=%s", mask_phone(registration.phone_number))

    async def delete_registration(self, phone_number: str) -> bool:
        result = await self.db.execute(
            delete(PhoneNumberORM).where(PhoneNumberORM.phone_number == phone_number)
        )
        await self.db.commit()
        deleted = result.rowcount > 0
        logger.info("Deleted registration phone=%s deleted=%s", mask_phone(phone_number), deleted)
        return deleted
