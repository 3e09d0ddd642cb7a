"""
models/nullifier.py — Issuance nullifier → phone number bindings.

Table: phone_nullifier_and_creds
Lets a client re-fetch the credential for the same nullifier within the grace window.
"""
from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from phone_server.database import Base


class NullifierORM(Base):
    __tablename__ = "phone_nullifier_and_creds"

    issuance_nullifier: Mapped[str] = mapped_column(String(128), primary_key=True)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Epoch millis",
    )
