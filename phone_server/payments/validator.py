"""
payments/validator.py — Payment checks for sessions and voucher batches.

On-chain checks run in a fixed order and stop at the first failure:
  1. transaction exists (fetched with retry)
  2. recipient is the payment address
  3. value >= (desired USD * (1 - slippage)) in the chain's native token
  4. transaction is mined and confirmed
  5. tx hash not already used (by a session, or by a voucher batch)
  6. calldata == keccak256(session id bytes)            [sessions only]

PayPal: order must be attached to the session, and capturing it must yield a
COMPLETED order with a COMPLETED capture of at least the expected amount.
"""
import logging
from typing import Awaitable, Callable, Optional

from phone_server.errors import (
    ChainRpcError,
    InsufficientPayment,
    InvalidRecipient,
    InvalidTransactionData,
    OrderNotAttached,
    PayPalOrderNotCompleted,
    TransactionAlreadyUsed,
    TransactionNotConfirmed,
    TransactionNotFound,
)
from phone_server.payments.chain import (
    NATIVE_TOKEN,
    ChainGateway,
    ChainTransaction,
    retry_async,
    session_id_digest,
)
from phone_server.payments.paypal import PayPalClient, first_completed_capture
from phone_server.payments.prices import PriceFeed
from phone_server.store import Session, SessionStore

logger = logging.getLogger(__name__)


class _NotYetVisible(Exception):
    pass


class PaymentValidator:
    def __init__(
        self,
        chain: ChainGateway,
        prices: PriceFeed,
        store: SessionStore,
        paypal: Optional[PayPalClient],
        payment_address: str,
        slippage: float = 0.02,
        fetch_attempts: int = 5,
        fetch_base_delay: float = 5.0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self.chain = chain
        self.prices = prices
        self.store = store
        self.paypal = paypal
        self.payment_address = payment_address.lower()
        self.slippage = slippage
        self.fetch_attempts = fetch_attempts
        self.fetch_base_delay = fetch_base_delay
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # On-chain
    # -----------------------------------------------------------------------

    async def _fetch(self, chain_id: int, tx_hash: str) -> Optional[ChainTransaction]:
        """A tx not yet visible to the node is retried like an RPC failure."""
        async def attempt() -> ChainTransaction:
            tx = await self.chain.get_transaction(chain_id, tx_hash)
            if tx is None:
                raise _NotYetVisible()
            return tx

        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        try:
            return await retry_async(
                attempt,
                attempts=self.fetch_attempts,
                base_delay=self.fetch_base_delay,
                give_up_on=(ChainRpcError,),
                **kwargs,
            )
        except _NotYetVisible:
            return None
        except ChainRpcError:
            raise
        except Exception as exc:
            logger.error("Chain RPC failed chain_id=%s tx_hash=%s error=%s", chain_id, tx_hash, exc)
            raise ChainRpcError(f"Could not fetch transaction on chain {chain_id}") from exc

    async def _check_transfer(
        self, chain_id: int, tx_hash: str, desired_usd: float
    ) -> ChainTransaction:
        """Steps 1-4: existence, recipient, amount, confirmation."""
        tx = await self._fetch(chain_id, tx_hash)
        if tx is None:
            raise TransactionNotFound(
                f"Could not find transaction with txHash {tx_hash} on chain {chain_id}"
            )

        if (tx.to or "").lower() != self.payment_address:
            raise InvalidRecipient(
                f"Invalid transaction recipient. Recipient must be {self.payment_address}"
            )

        expected_usd = desired_usd * (1 - self.slippage)
        expected_wei = await self.prices.usd_to_wei(expected_usd, NATIVE_TOKEN[chain_id])
        if tx.value < expected_wei:
            raise InsufficientPayment(
                f"Invalid transaction amount. Amount must be greater than {expected_wei} on chain {chain_id}"
            )

        if not tx.block_hash or tx.confirmations == 0:
            raise TransactionNotConfirmed()

        return tx

    async def validate_session_payment(
        self,
        session: Session,
        chain_id: int,
        tx_hash: str,
        desired_usd: float,
        check_data: bool = True,
    ) -> ChainTransaction:
        tx = await self._check_transfer(chain_id, tx_hash, desired_usd)

        if await self.store.get_session_by_tx_hash(tx_hash) is not None:
            raise TransactionAlreadyUsed()

        if check_data and tx.data.lower() != session_id_digest(session.id).lower():
            raise InvalidTransactionData()

        logger.info(
            "Validated session payment session_id=%s chain_id=%s tx_hash=%s",
            session.id,
            chain_id,
            tx_hash,
        )
        return tx

    async def validate_voucher_payment(
        self, chain_id: int, tx_hash: str, desired_usd: float
    ) -> ChainTransaction:
        tx = await self._check_transfer(chain_id, tx_hash, desired_usd)
        if await self.store.voucher_tx_hash_used(tx_hash):
            raise TransactionAlreadyUsed("Transaction has already been used to generate voucher")
        logger.info("Validated voucher payment chain_id=%s tx_hash=%s", chain_id, tx_hash)
        return tx

    # -----------------------------------------------------------------------
    # PayPal
    # -----------------------------------------------------------------------

    async def validate_paypal_order(
        self, session: Session, order_id: str, expected_usd: float
    ) -> dict:
        if not any(order.get("id") == order_id for order in session.paypal_orders):
            raise OrderNotAttached(
                f"Order {order_id} is not associated with session {session.id}"
            )

        order = await self.paypal.capture_order(order_id)
        status = order.get("status")
        if status != "COMPLETED":
            raise PayPalOrderNotCompleted(
                f"Order {order_id} has status {status}. Must be COMPLETED"
            )

        capture = first_completed_capture(order)
        if capture is None or float(capture["amount"]["value"]) < expected_usd:
            raise PayPalOrderNotCompleted(
                f"Order {order_id} does not have a successful payment capture with amount >= {expected_usd:g}"
            )

        logger.info("Validated PayPal order session_id=%s order_id=%s", session.id, order_id)
        return order
