"""
otp/service.py — One-time code lifecycle.

  begin(phone, country)  → rate-limit by country, store OTP:{phone} (300s), send SMS
  verify(phone, code)    → compare, then delete; a code verifies at most once

verify() is check() followed by consume(). The state machine calls the two
halves separately: check() before the eligibility gate, consume() right before
the session claim. consume() is a SET NX on OTP_CLAIM:{phone}:{code}, so one
code backs at most one issued session, whichever sessions race for it.

SMS delivery is fire-and-forget: the request returns once the code is stored,
and a delivery failure is logged but never reaches the caller.
"""
import asyncio
import logging
import secrets
from typing import Optional

import phonenumbers
import redis.asyncio as aioredis

from phone_server.cache import consume_otp, get_otp, get_otp_claim, mask_phone, set_otp
from phone_server.errors import InvalidInput, OtpAlreadyConsumed, OtpMismatch, OtpNotFound
from phone_server.otp.rate_limit import CountryRateLimiter
from phone_server.otp.sms import SmsSender

logger = logging.getLogger(__name__)

MESSAGE_TEMPLATE = "{code} is your verification code"


def generate_code() -> str:
    """Uniform 6-digit code, zero-padded."""
    return f"{secrets.randbelow(1_000_000):06d}"


def country_for_number(phone_number: str) -> str:
    """ISO 3166 alpha-2 region of an E.164 number, e.g. '+13109273149' → 'US'."""
    try:
        parsed = phonenumbers.parse(phone_number, None)
    except phonenumbers.NumberParseException as exc:
        raise InvalidInput("Invalid phone number. Expected E.164 format, e.g. +13109273149") from exc
    # Numbers outside the numbering plan still resolve through their calling code
    region = phonenumbers.region_code_for_number(parsed) or phonenumbers.region_code_for_country_code(
        parsed.country_code
    )
    if not region or region == "ZZ":
        raise InvalidInput("Could not determine country for phone number")
    return region


class OtpService:
    def __init__(
        self,
        redis: aioredis.Redis,
        sms: SmsSender,
        country_limiter: CountryRateLimiter,
        ttl_seconds: int = 300,
    ) -> None:
        self.redis = redis
        self.sms = sms
        self.country_limiter = country_limiter
        self.ttl_seconds = ttl_seconds
        self._deliveries: set[asyncio.Task] = set()

    async def begin(self, phone_number: str, country_code: str) -> None:
        """Raises TooManyAttemptsForCountry before any code is stored."""
        code = generate_code()
        await self.country_limiter.hit(country_code)
        await set_otp(self.redis, phone_number, code, self.ttl_seconds)
        self._dispatch(phone_number, MESSAGE_TEMPLATE.format(code=code))

    async def check(self, phone_number: str, code: str, owner: Optional[str] = None) -> None:
        """
        Raises OtpNotFound / OtpMismatch. When the code is gone because `owner`
        itself consumed it (a concurrent request for the same session), raises
        OtpAlreadyConsumed instead, which does not fail the session.
        """
        cached: Optional[str] = await get_otp(self.redis, phone_number)
        if cached is None:
            if owner is not None and await get_otp_claim(self.redis, phone_number, code) == owner:
                raise OtpAlreadyConsumed()
            raise OtpNotFound()
        if not secrets.compare_digest(cached.encode(), code.encode()):
            logger.info("OTP mismatch phone=%s", mask_phone(phone_number))
            raise OtpMismatch()

    async def consume(self, phone_number: str, code: str, owner: str) -> None:
        """
        The checked delete: only one caller can consume a given code.
        The losers of a race get OtpAlreadyConsumed, which does not fail a session.
        """
        if not await consume_otp(self.redis, phone_number, code, owner, self.ttl_seconds):
            raise OtpAlreadyConsumed()
        logger.info("OTP consumed phone=%s", mask_phone(phone_number))

    async def verify(self, phone_number: str, code: str) -> bool:
        await self.check(phone_number, code)
        try:
            await self.consume(phone_number, code, owner=secrets.token_hex(8))
        except OtpAlreadyConsumed as exc:
            raise OtpNotFound() from exc
        return True

    def _dispatch(self, phone_number: str, message: str) -> None:
        task = asyncio.create_task(self.sms.send(phone_number, message))
        self._deliveries.add(task)
        task.add_done_callback(self._on_delivered)

    def _on_delivered(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("SMS delivery failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
