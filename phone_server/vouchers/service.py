"""
vouchers/service.py — Voucher batch minting.

One on-chain payment buys numberOfVouchers vouchers at VOUCHER_PRICE_USD each.
The payment goes through the same recipient/amount/confirmation checks as a
session payment; the tx hash may fund at most one batch.
"""
import logging
import secrets
from typing import Optional

from phone_server.errors import InvalidInput
from phone_server.payments.chain import require_supported_chain
from phone_server.payments.validator import PaymentValidator
from phone_server.store import SessionStore, Voucher

logger = logging.getLogger(__name__)


def new_voucher_id() -> str:
    return secrets.token_hex(32)


class VoucherMinter:
    def __init__(
        self,
        validator: PaymentValidator,
        store: SessionStore,
        unit_price_usd: float,
        environment: str = "development",
    ) -> None:
        self.validator = validator
        self.store = store
        self.unit_price_usd = unit_price_usd
        self.environment = environment

    async def mint(
        self, chain_id: Optional[int], tx_hash: Optional[str], count: int
    ) -> list[str]:
        chain_id = require_supported_chain(chain_id, self.environment)
        if not tx_hash:
            raise InvalidInput("txHash is required")
        if count < 1:
            raise InvalidInput("numberOfVouchers must be a positive integer")

        await self.validator.validate_voucher_payment(
            chain_id, tx_hash, self.unit_price_usd * count
        )
        vouchers = [Voucher(id=new_voucher_id(), tx_hash=tx_hash) for _ in range(count)]
        await self.store.add_vouchers(vouchers)
        logger.info("Minted vouchers chain_id=%s tx_hash=%s count=%d", chain_id, tx_hash, count)
        return [v.id for v in vouchers]
