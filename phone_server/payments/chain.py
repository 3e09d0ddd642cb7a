"""
payments/chain.py — Multi-chain RPC access through web3.

One AsyncWeb3 instance per chain id, built lazily from settings.rpc_url_for().
The gateway returns plain ChainTransaction / TxReceipt values so the validator
and the refund coordinator never touch web3 types directly; tests substitute
an in-memory gateway with the same methods.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping, Optional, Protocol, TypeVar

from web3 import AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound as Web3TransactionNotFound

from phone_server.errors import ChainRpcError, UnsupportedChain

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Supported chains
# ---------------------------------------------------------------------------
ETHEREUM = 1
OPTIMISM = 10
FANTOM = 250
BASE = 8453
AVALANCHE = 43114
AURORA = 1313161554
OPTIMISM_GOERLI = 420

PRODUCTION_CHAIN_IDS = [ETHEREUM, OPTIMISM, FANTOM, BASE, AVALANCHE, AURORA]

# Native token each chain is paid in
NATIVE_TOKEN = {
    ETHEREUM: "ETH",
    OPTIMISM: "ETH",
    BASE: "ETH",
    AURORA: "ETH",
    OPTIMISM_GOERLI: "ETH",
    FANTOM: "FTM",
    AVALANCHE: "AVAX",
}


def supported_chain_ids(environment: str) -> list[int]:
    """Optimism Goerli is accepted in development only."""
    if environment == "development":
        return PRODUCTION_CHAIN_IDS + [OPTIMISM_GOERLI]
    return list(PRODUCTION_CHAIN_IDS)


def require_supported_chain(chain_id: Optional[int], environment: str) -> int:
    supported = supported_chain_ids(environment)
    if not chain_id or chain_id not in supported:
        raise UnsupportedChain(chain_id, supported)
    return chain_id


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChainTransaction:
    hash: str
    to: Optional[str]
    value: int              # wei
    data: str               # 0x-prefixed calldata
    block_hash: Optional[str]
    confirmations: int


@dataclass(frozen=True)
class TxReceipt:
    chain_id: int
    transaction_hash: str
    block_number: int
    status: int


@dataclass(frozen=True)
class FeePolicy:
    """Multipliers applied to the node's EIP-1559 fee suggestion before signing."""
    max_fee_multiplier: int = 1
    priority_fee_multiplier: int = 1

    def apply(self, max_fee: int, priority_fee: int) -> tuple[int, int]:
        max_fee = max_fee * self.max_fee_multiplier
        priority_fee = priority_fee * self.priority_fee_multiplier
        return max_fee, min(priority_fee, max_fee)


# Fantom gas estimates run low; without the bump refunds fail as "underpriced"
DEFAULT_FEE_POLICIES: dict[int, FeePolicy] = {
    FANTOM: FeePolicy(max_fee_multiplier=2, priority_fee_multiplier=14),
}


class ChainGateway(Protocol):
    async def get_transaction(self, chain_id: int, tx_hash: str) -> Optional[ChainTransaction]: ...
    async def get_refund_balance(self, chain_id: int) -> int: ...
    async def send_refund(self, chain_id: int, to: str, value: int) -> TxReceipt: ...


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------

async def retry_async(
    fn: Callable[[], Awaitable[T]],
    attempts: int,
    base_delay: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    give_up_on: tuple[type[BaseException], ...] = (),
) -> T:
    """
    Call fn until it succeeds, at most `attempts` times.
    Delay doubles after every failure: base, 2*base, 4*base, ...
    Exceptions in give_up_on and the last exception propagate immediately.
    """
    for attempt in range(attempts):
        try:
            return await fn()
        except give_up_on:
            raise
        except Exception as exc:
            if attempt == attempts - 1:
                raise
            delay = base_delay * (2 ** attempt)
            logger.info(
                "Retrying after error attempt=%d/%d delay=%.1fs error=%s",
                attempt + 1,
                attempts,
                delay,
                exc,
            )
            await sleep(delay)
    raise RuntimeError("retry_async called with attempts < 1")


def session_id_digest(session_id: str) -> str:
    """keccak256 over the raw bytes of the hex session id: the expected tx calldata."""
    return Web3.to_hex(Web3.keccak(hexstr=session_id))


# ---------------------------------------------------------------------------
# web3 implementation
# ---------------------------------------------------------------------------

class Web3ChainGateway:
    def __init__(
        self,
        rpc_urls: Mapping[int, str],
        private_key: str = "",
        timeout: float = 10.0,
        fee_policies: Optional[Mapping[int, FeePolicy]] = None,
        receipt_timeout: float = 120.0,
    ) -> None:
        self._rpc_urls = dict(rpc_urls)
        self._private_key = private_key
        self._timeout = timeout
        self._fee_policies = dict(DEFAULT_FEE_POLICIES if fee_policies is None else fee_policies)
        self._receipt_timeout = receipt_timeout
        self._clients: dict[int, AsyncWeb3] = {}

    def _w3(self, chain_id: int) -> AsyncWeb3:
        if chain_id not in self._clients:
            url = self._rpc_urls.get(chain_id)
            if not url:
                raise ChainRpcError(f"No RPC endpoint configured for chain {chain_id}")
            self._clients[chain_id] = AsyncWeb3(
                AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self._timeout})
            )
        return self._clients[chain_id]

    async def get_transaction(self, chain_id: int, tx_hash: str) -> Optional[ChainTransaction]:
        w3 = self._w3(chain_id)
        try:
            tx = await w3.eth.get_transaction(tx_hash)
        except Web3TransactionNotFound:
            return None

        block_number = tx.get("blockNumber")
        confirmations = 0
        if block_number is not None:
            head = await w3.eth.block_number
            confirmations = max(head - block_number + 1, 0)

        block_hash = tx.get("blockHash")
        return ChainTransaction(
            hash=Web3.to_hex(tx["hash"]),
            to=tx.get("to"),
            value=int(tx["value"]),
            data=Web3.to_hex(tx.get("input", b"")),
            block_hash=Web3.to_hex(block_hash) if block_hash else None,
            confirmations=confirmations,
        )

    async def get_refund_balance(self, chain_id: int) -> int:
        w3 = self._w3(chain_id)
        account = w3.eth.account.from_key(self._private_key)
        return await w3.eth.get_balance(account.address)

    async def send_refund(self, chain_id: int, to: str, value: int) -> TxReceipt:
        """Sign and send a plain value transfer from the payments wallet, then wait for the receipt."""
        w3 = self._w3(chain_id)
        account = w3.eth.account.from_key(self._private_key)

        tx = {
            "from": account.address,
            "to": Web3.to_checksum_address(to),
            "value": value,
            "chainId": chain_id,
            "nonce": await w3.eth.get_transaction_count(account.address, "pending"),
        }
        tx["gas"] = await w3.eth.estimate_gas(tx)

        latest = await w3.eth.get_block("latest")
        priority_fee = await w3.eth.max_priority_fee
        max_fee = int(latest["baseFeePerGas"]) * 2 + priority_fee
        policy = self._fee_policies.get(chain_id)
        if policy is not None:
            max_fee, priority_fee = policy.apply(max_fee, priority_fee)
        tx["maxFeePerGas"] = max_fee
        tx["maxPriorityFeePerGas"] = priority_fee

        signed = account.sign_transaction(tx)
        sent_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info("Refund tx sent chain_id=%s tx_hash=%s", chain_id, Web3.to_hex(sent_hash))

        receipt = await w3.eth.wait_for_transaction_receipt(
            sent_hash, timeout=self._receipt_timeout
        )
        return TxReceipt(
            chain_id=chain_id,
            transaction_hash=Web3.to_hex(receipt["transactionHash"]),
            block_number=int(receipt["blockNumber"]),
            status=int(receipt["status"]),
        )
