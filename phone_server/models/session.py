"""
models/session.py — SQLAlchemy ORM model for phone verification sessions.

Table: phone_sessions

One row per verification attempt a user pays for. `status` moves only along
NEEDS_PAYMENT → IN_PROGRESS → {ISSUED, VERIFICATION_FAILED} → REFUNDED and is
written exclusively through the conditional `SqlStore.update_session`.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from phone_server.database import Base, JSONType


class SessionORM(Base):
    """
    ORM model for a phone verification session.

    sig_digest: caller-supplied correlation key; not unique, not secret.
    tx_hash:    unique: one on-chain payment can fund at most one session.
    pay_pal:    {"orders": [{"id": ..., "createdAt": ...}]}
    """
    __tablename__ = "phone_sessions"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="32 random bytes, hex encoded",
    )
    sig_digest: Mapped[str] = mapped_column(
        String(128),
        nullable=False,
        index=True,
        comment="Correlation key used to look up a user's own sessions",
    )
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        comment="NEEDS_PAYMENT | IN_PROGRESS | ISSUED | VERIFICATION_FAILED | REFUNDED",
    )
    chain_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    tx_hash: Mapped[Optional[str]] = mapped_column(
        String(66),
        nullable=True,
        unique=True,
        index=True,
        comment="Payment transaction hash: set once, never reused",
    )
    num_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    refund_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    pay_pal: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
