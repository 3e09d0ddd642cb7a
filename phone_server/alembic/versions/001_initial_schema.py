"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000 UTC

Creates the four tables the verification service owns:
  phone_sessions            : paid verification sessions and their status
  vouchers                  : pre-paid session vouchers, minted in batches
  phone_numbers             : registrations used for Sybil resistance
  phone_nullifier_and_creds : issuance nullifier → phone number bindings
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "phone_sessions",
        sa.Column("id", sa.String(64), nullable=False, comment="32 random bytes, hex encoded"),
        sa.Column(
            "sig_digest",
            sa.String(128),
            nullable=False,
            comment="Correlation key used to look up a user's own sessions",
        ),
        sa.Column(
            "status",
            sa.String(32),
            nullable=False,
            comment="NEEDS_PAYMENT | IN_PROGRESS | ISSUED | VERIFICATION_FAILED | REFUNDED",
        ),
        sa.Column("chain_id", sa.BigInteger(), nullable=True),
        sa.Column(
            "tx_hash",
            sa.String(66),
            nullable=True,
            comment="Payment transaction hash: set once, never reused",
        ),
        sa.Column("num_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("refund_tx_hash", sa.String(66), nullable=True),
        sa.Column("pay_pal", postgresql.JSONB(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_phone_sessions_sig_digest", "phone_sessions", ["sig_digest"])
    op.create_index("ix_phone_sessions_tx_hash", "phone_sessions", ["tx_hash"], unique=True)

    op.create_table(
        "vouchers",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("is_redeemed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("session_id", sa.String(64), nullable=True),
        sa.Column(
            "tx_hash",
            sa.String(66),
            nullable=False,
            comment="Batch payment transaction funding this voucher",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_vouchers_tx_hash", "vouchers", ["tx_hash"])

    op.create_table(
        "phone_numbers",
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column(
            "inserted_at",
            sa.BigInteger(),
            nullable=False,
            comment="Epoch millis of the registration",
        ),
        sa.PrimaryKeyConstraint("phone_number"),
    )

    op.create_table(
        "phone_nullifier_and_creds",
        sa.Column("issuance_nullifier", sa.String(128), nullable=False),
        sa.Column("phone_number", sa.String(32), nullable=False),
        sa.Column("created_at", sa.BigInteger(), nullable=False, comment="Epoch millis"),
        sa.PrimaryKeyConstraint("issuance_nullifier"),
    )


def downgrade() -> None:
    op.drop_table("phone_nullifier_and_creds")
    op.drop_table("phone_numbers")
    op.drop_index("ix_vouchers_tx_hash", table_name="vouchers")
    op.drop_table("vouchers")
    op.drop_index("ix_phone_sessions_tx_hash", table_name="phone_sessions")
    op.drop_index("ix_phone_sessions_sig_digest", table_name="phone_sessions")
    op.drop_table("phone_sessions")
