"""
models/phone_number.py — Phone number registrations (Sybil resistance).

Table: phone_numbers
inserted_at is epoch milliseconds, compared against the registration recency window.
"""
from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from phone_server.database import Base


class PhoneNumberORM(Base):
    __tablename__ = "phone_numbers"

    phone_number: Mapped[str] = mapped_column(String(32), primary_key=True)
    inserted_at: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="Epoch millis of the registration",
    )
