"""
otp/rate_limit.py — Fixed-window request counters backed by Redis.

A counter key carries its window bucket (int(now) // window), so a fresh
window always starts at zero even if a previous key has not expired yet.
The clock is injected; tests advance a fake clock across a window boundary.
"""
import logging

import redis.asyncio as aioredis

from phone_server.cache import (
    COUNTRY_HOUR_PREFIX,
    COUNTRY_MINUTE_PREFIX,
    DELETIONS_DAY_PREFIX,
    IP_HOUR_PREFIX,
    increment_window,
    make_window_key,
)
from phone_server.clock import Clock
from phone_server.errors import (
    DeletionRateLimited,
    IpRateLimited,
    TooManyAttemptsForCountry,
)

logger = logging.getLogger(__name__)


class FixedWindowCounter:
    """
    INCR-then-compare: the limit-th request in a window is allowed,
    the (limit + 1)-th is not.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Clock,
        prefix: str,
        limit: int,
        window_seconds: int,
    ) -> None:
        self.redis = redis
        self.clock = clock
        self.prefix = prefix
        self.limit = limit
        self.window_seconds = window_seconds

    def _key(self, identifier: str) -> str:
        bucket = int(self.clock.now()) // self.window_seconds
        return make_window_key(self.prefix, identifier, bucket)

    async def hit(self, identifier: str) -> bool:
        """Count one request; returns False once the window's limit is exceeded."""
        count = await increment_window(
            self.redis, self._key(identifier), self.window_seconds
        )
        return count <= self.limit


class CountryRateLimiter:
    """Per-country OTP sends: two windows (minute and hour), both must pass."""

    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Clock,
        per_minute: int,
        per_hour: int,
    ) -> None:
        self.minute = FixedWindowCounter(redis, clock, COUNTRY_MINUTE_PREFIX, per_minute, 60)
        self.hour = FixedWindowCounter(redis, clock, COUNTRY_HOUR_PREFIX, per_hour, 3600)

    async def hit(self, country_code: str) -> None:
        # Both counters are incremented even when the first one already failed
        minute_ok = await self.minute.hit(country_code)
        hour_ok = await self.hour.hit(country_code)
        if not (minute_ok and hour_ok):
            logger.warning("Country rate limit exceeded country=%s", country_code)
            raise TooManyAttemptsForCountry(country_code)


class IpRateLimiter:
    def __init__(self, redis: aioredis.Redis, clock: Clock, per_hour: int) -> None:
        self.counter = FixedWindowCounter(redis, clock, IP_HOUR_PREFIX, per_hour, 3600)

    async def hit(self, ip: str) -> None:
        if not await self.counter.hit(ip):
            logger.warning("IP rate limit exceeded ip=%s", ip)
            raise IpRateLimited()


class DeletionRateLimiter:
    """Global cap on admin phone number deletions per 24 hours."""

    def __init__(self, redis: aioredis.Redis, clock: Clock, per_day: int) -> None:
        self.counter = FixedWindowCounter(redis, clock, DELETIONS_DAY_PREFIX, per_day, 86400)

    async def hit(self) -> None:
        if not await self.counter.hit("global"):
            logger.warning("Phone number deletion cap reached")
            raise DeletionRateLimited()
