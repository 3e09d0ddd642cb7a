"""
models/__init__.py — imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from phone_server.models.session import SessionORM
from phone_server.models.voucher import VoucherORM
from phone_server.models.phone_number import PhoneNumberORM
from phone_server.models.nullifier import NullifierORM

__all__ = ["SessionORM", "VoucherORM", "PhoneNumberORM", "NullifierORM"]
