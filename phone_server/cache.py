"""
cache.py — Redis layer for phone_server.

Namespace conventions:
  OTP:{phone_number}                              → pending code             TTL 300s
  OTP_CLAIM:{phone_number}:{code}                 → request that consumed it TTL 300s
  country_requests_minutes:minute:{cc}:{bucket}   → per-country send counter TTL 60s
  country_requests_minutes:hour:{cc}:{bucket}     → per-country send counter TTL 3600s
  ip_requests:hour:{ip}:{bucket}                  → per-IP send counter      TTL 3600s
  sessionRefundMutexLock:{session_id}             → refund mutex token       TTL 60s
  price:{symbol}                                  → USD spot price           TTL 30s
  number_deletions:day:global:{bucket}            → admin deletions counter  TTL 86400s

Design:
  - Uses redis.asyncio (async client, part of redis-py 5.x)
  - Pool created once in lifespan, stored on app.state.redis
  - Helper functions take the client as a param: no module-level global state
  - Phone numbers are masked before they reach a log line
"""
import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as aioredis

from phone_server.config import settings
from phone_server.errors import RefundInProgress

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Key prefix constants
# ---------------------------------------------------------------------------
OTP_PREFIX = "OTP"
OTP_CLAIM_PREFIX = "OTP_CLAIM"
COUNTRY_MINUTE_PREFIX = "country_requests_minutes:minute"
COUNTRY_HOUR_PREFIX = "country_requests_minutes:hour"
IP_HOUR_PREFIX = "ip_requests:hour"
REFUND_LOCK_PREFIX = "sessionRefundMutexLock"
PRICE_PREFIX = "price"
DELETIONS_DAY_PREFIX = "number_deletions:day"


def mask_phone(phone_number: str) -> str:
    """Keep only the last 4 digits for logging."""
    if len(phone_number) <= 4:
        return "****"
    return "*" * (len(phone_number) - 4) + phone_number[-4:]


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def make_otp_key(phone_number: str) -> str:
    return f"{OTP_PREFIX}:{phone_number}"


def make_otp_claim_key(phone_number: str, code: str) -> str:
    return f"{OTP_CLAIM_PREFIX}:{phone_number}:{code}"


def make_window_key(prefix: str, identifier: str, bucket: int) -> str:
    """Fixed-window counter key; bucket is int(now) // window_seconds."""
    return f"{prefix}:{identifier}:{bucket}"


def make_refund_lock_key(session_id: str) -> str:
    return f"{REFUND_LOCK_PREFIX}:{session_id}"


def make_price_key(symbol: str) -> str:
    return f"{PRICE_PREFIX}:{symbol.upper()}"


# ---------------------------------------------------------------------------
# Pool factory: called once in lifespan
# ---------------------------------------------------------------------------

async def create_redis_pool() -> aioredis.Redis:
    """
    Create and return an async Redis connection pool.
    Called once in FastAPI lifespan startup: stored on app.state.redis.
    Verifies connectivity with PING before returning.
    """
    client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
    )
    await client.ping()
    logger.info("Redis connection pool established")
    return client


# ---------------------------------------------------------------------------
# OTP helpers
# ---------------------------------------------------------------------------

async def set_otp(client: aioredis.Redis, phone_number: str, code: str, ttl: int) -> None:
    """Store a pending code; a new send overwrites the previous code and resets the TTL."""
    await client.delete(make_otp_claim_key(phone_number, code))
    await client.set(make_otp_key(phone_number), code, ex=ttl)
    logger.info("OTP stored phone=%s ttl=%ds", mask_phone(phone_number), ttl)


async def get_otp(client: aioredis.Redis, phone_number: str) -> Optional[str]:
    return await client.get(make_otp_key(phone_number))


async def consume_otp(
    client: aioredis.Redis, phone_number: str, code: str, owner: str, ttl: int
) -> bool:
    """
    Claim the code for `owner` (SET NX on its claim key), then drop the pending code.
    Returns False when another request already holds the claim.
    The claim key outlives the code so a late caller can see who consumed it.
    """
    claimed = await client.set(make_otp_claim_key(phone_number, code), owner, nx=True, ex=ttl)
    if not claimed:
        return False
    await client.delete(make_otp_key(phone_number))
    return True


async def get_otp_claim(client: aioredis.Redis, phone_number: str, code: str) -> Optional[str]:
    return await client.get(make_otp_claim_key(phone_number, code))


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

async def increment_window(client: aioredis.Redis, key: str, ttl: int) -> int:
    """
    Atomically INCR a fixed-window counter and set its expiry on first use.
    The expiry is re-applied when a key somehow lost it.
    """
    count = await client.incr(key)
    if count == 1 or await client.ttl(key) < 0:
        await client.expire(key, ttl)
    return count


# ---------------------------------------------------------------------------
# Refund mutex
# ---------------------------------------------------------------------------

@asynccontextmanager
async def refund_lock(
    client: aioredis.Redis, session_id: str, ttl: Optional[int] = None
) -> AsyncIterator[str]:
    """
    Hold sessionRefundMutexLock:{session_id} for the duration of the block.

    Raises RefundInProgress if another request holds it. The lock is released
    on every exit path, but only if this request still owns it (the TTL may
    have expired and a second refund may have taken over).
    """
    key = make_refund_lock_key(session_id)
    token = secrets.token_hex(16)
    acquired = await client.set(
        key, token, nx=True, ex=ttl or settings.refund_lock_ttl_seconds
    )
    if not acquired:
        logger.warning("Refund lock busy session_id=%s", session_id)
        raise RefundInProgress()
    try:
        yield token
    finally:
        if await client.get(key) == token:
            await client.delete(key)
            logger.info("Refund lock released session_id=%s", session_id)


# ---------------------------------------------------------------------------
# Price cache
# ---------------------------------------------------------------------------

async def get_cached_price(client: aioredis.Redis, symbol: str) -> Optional[float]:
    raw = await client.get(make_price_key(symbol))
    if raw is None:
        return None
    logger.debug("Price cache hit symbol=%s", symbol)
    return float(raw)


async def set_cached_price(
    client: aioredis.Redis, symbol: str, price: float, ttl: int
) -> None:
    await client.setex(make_price_key(symbol), ttl, repr(price))
    logger.info("Price cached symbol=%s ttl=%ds", symbol, ttl)
