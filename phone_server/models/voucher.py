"""
models/voucher.py — SQLAlchemy ORM for pre-paid session vouchers.

Table: vouchers
Created in batches from one on-chain payment (tx_hash); each is redeemed at most once.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Boolean, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from phone_server.database import Base


class VoucherORM(Base):
    __tablename__ = "vouchers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    is_redeemed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    tx_hash: Mapped[str] = mapped_column(
        String(66),
        nullable=False,
        index=True,
        comment="Batch payment transaction funding this voucher",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
