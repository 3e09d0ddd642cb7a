"""
refunds/coordinator.py — Partial refunds for failed verifications.

The only path that moves money out, so it runs under the Redis mutex
sessionRefundMutexLock:{id} (SET NX EX 60) and re-reads the session inside it:
  - status REFUNDED or refund_tx_hash set  → AlreadyRefunded
  - status != VERIFICATION_FAILED          → SessionStateConflict
  - lock held by another request           → RefundInProgress

On-chain (`to` given): refund value * 691 / 1000 of the original payment from
the payments wallet, wait for the receipt, record refund_tx_hash.
PayPal (`to` absent): refund a fixed USD amount against the first COMPLETED
capture of the first COMPLETED order attached to the session.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Optional

import redis.asyncio as aioredis

from phone_server.cache import refund_lock
from phone_server.errors import (
    AlreadyRefunded,
    InvalidInput,
    NotFound,
    RefundFailed,
    RefundWalletUnderfunded,
    SessionNotFound,
    SessionStateConflict,
    TransactionNotFound,
)
from phone_server.payments.chain import ChainGateway
from phone_server.payments.paypal import PayPalClient, first_completed_capture
from phone_server.store import Session, SessionPatch, SessionStatus, SessionStore

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
PAYPAL_REFUND_NOTE = "Failed verification"


@dataclass
class RefundReceipt:
    session_id: str
    method: str                       # "onchain" | "paypal"
    amount: str                       # wei for on-chain, USD for PayPal
    tx_hash: Optional[str] = None
    details: dict = field(default_factory=dict)


class RefundCoordinator:
    def __init__(
        self,
        store: SessionStore,
        redis: aioredis.Redis,
        chain: Optional[ChainGateway] = None,
        paypal: Optional[PayPalClient] = None,
        refund_numerator: int = 691,
        refund_denominator: int = 1000,
        paypal_refund_usd: str = "2.53",
        lock_ttl_seconds: int = 60,
    ) -> None:
        self.store = store
        self.redis = redis
        self.chain = chain
        self.paypal = paypal
        self.refund_numerator = refund_numerator
        self.refund_denominator = refund_denominator
        self.paypal_refund_usd = paypal_refund_usd
        self.lock_ttl_seconds = lock_ttl_seconds

    async def refund(self, session_id: str, to: Optional[str] = None) -> RefundReceipt:
        if to is not None and not _ADDRESS_RE.match(to):
            raise InvalidInput(
                "to is required and must be a 42-character hexstring (including 0x)"
            )
        if await self.store.get_session(session_id) is None:
            raise SessionNotFound()

        async with refund_lock(self.redis, session_id, self.lock_ttl_seconds):
            session = await self.store.get_session(session_id)
            if session.status == SessionStatus.REFUNDED or session.refund_tx_hash:
                raise AlreadyRefunded()
            if session.status != SessionStatus.VERIFICATION_FAILED:
                raise SessionStateConflict(
                    session.status.value, SessionStatus.VERIFICATION_FAILED.value
                )

            if to is not None:
                return await self._refund_onchain(session, to)
            return await self._refund_paypal(session)

    async def _refund_onchain(self, session: Session, to: str) -> RefundReceipt:
        if not session.tx_hash or not session.chain_id:
            raise InvalidInput("Session was not paid with an on-chain transaction")

        tx = await self.chain.get_transaction(session.chain_id, session.tx_hash)
        if tx is None:
            raise TransactionNotFound("Could not find transaction with given txHash")

        amount = tx.value * self.refund_numerator // self.refund_denominator
        balance = await self.chain.get_refund_balance(session.chain_id)
        if balance < amount:
            logger.error(
                "Refund wallet underfunded chain_id=%s balance=%s needed=%s",
                session.chain_id,
                balance,
                amount,
            )
            raise RefundWalletUnderfunded()

        receipt = await self.chain.send_refund(session.chain_id, to, amount)
        if receipt.status != 1:
            logger.error(
                "Refund tx reverted session_id=%s tx_hash=%s",
                session.id,
                receipt.transaction_hash,
            )
            raise RefundFailed()

        await self.store.update_session(
            session.id,
            SessionStatus.VERIFICATION_FAILED,
            SessionPatch(status=SessionStatus.REFUNDED, refund_tx_hash=receipt.transaction_hash),
        )
        logger.info(
            "Refunded on-chain session_id=%s chain_id=%s tx_hash=%s amount=%s",
            session.id,
            session.chain_id,
            receipt.transaction_hash,
            amount,
        )
        return RefundReceipt(
            session_id=session.id,
            method="onchain",
            amount=str(amount),
            tx_hash=receipt.transaction_hash,
            details={
                "chainId": receipt.chain_id,
                "transactionHash": receipt.transaction_hash,
                "blockNumber": receipt.block_number,
                "status": receipt.status,
            },
        )

    async def _refund_paypal(self, session: Session) -> RefundReceipt:
        orders = session.paypal_orders
        if not orders:
            raise NotFound("No PayPal orders found for session")

        completed = None
        for entry in orders:
            order = await self.paypal.get_order(entry["id"])
            if order.get("status") == "COMPLETED":
                completed = order
                break
        if completed is None:
            raise NotFound("No successful PayPal orders found for session")

        capture = first_completed_capture(completed)
        if capture is None:
            raise NotFound("No successful PayPal payment captures found for session")

        refund = await self.paypal.refund_capture(
            capture["id"], self.paypal_refund_usd, PAYPAL_REFUND_NOTE
        )
        if refund.get("status") != "COMPLETED":
            logger.error(
                "PayPal refund not completed session_id=%s status=%s",
                session.id,
                refund.get("status"),
            )
            raise RefundFailed()

        await self.store.update_session(
            session.id,
            SessionStatus.VERIFICATION_FAILED,
            SessionPatch(status=SessionStatus.REFUNDED),
        )
        logger.info("Refunded via PayPal session_id=%s capture_id=%s", session.id, capture["id"])
        return RefundReceipt(
            session_id=session.id,
            method="paypal",
            amount=self.paypal_refund_usd,
            details={"refundId": refund.get("id"), "status": refund.get("status")},
        )
