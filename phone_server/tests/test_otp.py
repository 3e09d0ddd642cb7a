"""
OTP issue / check / consume and the Redis fixed-window rate limiters.

Runs against fakeredis with a fake clock; no SMS provider is contacted.
"""
import pytest

from phone_server.cache import get_otp, make_otp_key
from phone_server.errors import (
    DeletionRateLimited,
    InvalidInput,
    IpRateLimited,
    OtpAlreadyConsumed,
    OtpMismatch,
    OtpNotFound,
    TooManyAttemptsForCountry,
)
from phone_server.otp.rate_limit import (
    CountryRateLimiter,
    DeletionRateLimiter,
    FixedWindowCounter,
    IpRateLimiter,
)
from phone_server.otp.service import OtpService, country_for_number, generate_code
from phone_server.tests.fakes import RecordingSms

PHONE = "+15551234567"


def _service(redis, clock, sms, per_minute=10, per_hour=300) -> OtpService:
    return OtpService(
        redis, sms, CountryRateLimiter(redis, clock, per_minute, per_hour), ttl_seconds=300
    )


# ---------------------------------------------------------------------------
# Codes
# ---------------------------------------------------------------------------

def test_generate_code_is_six_digits() -> None:
    for _ in range(200):
        code = generate_code()
        assert len(code) == 6
        assert code.isdigit()


@pytest.mark.parametrize(
    "number, country",
    [("+15551234567", "US"), ("+447911123456", "GB"), ("+4915112345678", "DE")],
)
def test_country_for_number(number: str, country: str) -> None:
    assert country_for_number(number) == country


def test_country_for_number_rejects_garbage() -> None:
    with pytest.raises(InvalidInput):
        country_for_number("not-a-number")


# ---------------------------------------------------------------------------
# OtpService
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_begin_stores_code_with_ttl_and_sends_sms(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)

    await otp.begin(PHONE, "US")
    await otp.drain()

    code = sms.last_code(PHONE)
    assert sms.messages == [(PHONE, f"{code} is your verification code")]
    assert await get_otp(redis, PHONE) == code
    assert 0 < await redis.ttl(make_otp_key(PHONE)) <= 300


@pytest.mark.asyncio
async def test_code_is_single_use(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)
    await otp.begin(PHONE, "US")
    await otp.drain()
    code = sms.last_code(PHONE)

    assert await otp.verify(PHONE, code) is True
    with pytest.raises(OtpNotFound):
        await otp.verify(PHONE, code)


@pytest.mark.asyncio
async def test_wrong_code_does_not_consume(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)
    await otp.begin(PHONE, "US")
    await otp.drain()
    code = sms.last_code(PHONE)
    wrong = "000000" if code != "000000" else "111111"

    with pytest.raises(OtpMismatch) as exc_info:
        await otp.check(PHONE, wrong)
    assert exc_info.value.message == "OTP does not match"
    await otp.check(PHONE, code)


@pytest.mark.asyncio
async def test_check_without_code_raises_not_found(redis, clock) -> None:
    otp = _service(redis, clock, RecordingSms())
    with pytest.raises(OtpNotFound):
        await otp.check(PHONE, "123456")


@pytest.mark.asyncio
async def test_consume_twice_only_first_wins(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)
    await otp.begin(PHONE, "US")
    await otp.drain()
    code = sms.last_code(PHONE)

    await otp.consume(PHONE, code, owner="session-a")
    with pytest.raises(OtpAlreadyConsumed):
        await otp.consume(PHONE, code, owner="session-b")
    assert await get_otp(redis, PHONE) is None


@pytest.mark.asyncio
async def test_check_after_consume_depends_on_who_consumed(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)
    await otp.begin(PHONE, "US")
    await otp.drain()
    code = sms.last_code(PHONE)
    await otp.consume(PHONE, code, owner="session-a")

    # Same owner arriving late: a lost race, not a wrong code
    with pytest.raises(OtpAlreadyConsumed):
        await otp.check(PHONE, code, owner="session-a")
    with pytest.raises(OtpNotFound):
        await otp.check(PHONE, code, owner="session-b")
    with pytest.raises(OtpNotFound):
        await otp.verify(PHONE, code)


@pytest.mark.asyncio
async def test_new_code_is_consumable_after_previous_one(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)
    await otp.begin(PHONE, "US")
    await otp.drain()
    assert await otp.verify(PHONE, sms.last_code(PHONE)) is True

    await otp.begin(PHONE, "US")
    await otp.drain()
    assert await otp.verify(PHONE, sms.last_code(PHONE)) is True


@pytest.mark.asyncio
async def test_resend_replaces_previous_code(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms)
    await otp.begin(PHONE, "US")
    await otp.begin(PHONE, "US")
    await otp.drain()

    assert len(sms.messages) == 2
    assert await get_otp(redis, PHONE) == sms.last_code(PHONE)


@pytest.mark.asyncio
async def test_sms_failure_is_not_raised_to_caller(redis, clock) -> None:
    class BrokenSms:
        async def send(self, phone_number: str, message: str) -> None:
            raise RuntimeError("provider down")

    otp = _service(redis, clock, BrokenSms())
    await otp.begin(PHONE, "US")
    await otp.drain()
    assert await get_otp(redis, PHONE) is not None


# ---------------------------------------------------------------------------
# Country rate limit
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_country_limit_allows_n_and_rejects_n_plus_one(redis, clock) -> None:
    otp = _service(redis, clock, RecordingSms(), per_minute=3, per_hour=300)
    for _ in range(3):
        await otp.begin(PHONE, "US")

    with pytest.raises(TooManyAttemptsForCountry) as exc_info:
        await otp.begin(PHONE, "US")
    assert exc_info.value.status_code == 429
    await otp.drain()


@pytest.mark.asyncio
async def test_rejected_send_stores_no_new_code(redis, clock) -> None:
    sms = RecordingSms()
    otp = _service(redis, clock, sms, per_minute=1)
    await otp.begin(PHONE, "US")
    await otp.drain()
    first = await get_otp(redis, PHONE)

    with pytest.raises(TooManyAttemptsForCountry):
        await otp.begin(PHONE, "US")
    await otp.drain()
    assert await get_otp(redis, PHONE) == first
    assert len(sms.messages) == 1


@pytest.mark.asyncio
async def test_country_limit_resets_next_minute(redis, clock) -> None:
    otp = _service(redis, clock, RecordingSms(), per_minute=2, per_hour=300)
    await otp.begin(PHONE, "US")
    await otp.begin(PHONE, "US")
    with pytest.raises(TooManyAttemptsForCountry):
        await otp.begin(PHONE, "US")

    clock.advance(60)
    await otp.begin(PHONE, "US")
    await otp.drain()


@pytest.mark.asyncio
async def test_country_limits_are_per_country(redis, clock) -> None:
    limiter = CountryRateLimiter(redis, clock, per_minute=1, per_hour=300)
    await limiter.hit("US")
    await limiter.hit("GB")
    with pytest.raises(TooManyAttemptsForCountry):
        await limiter.hit("US")


@pytest.mark.asyncio
async def test_hour_window_applies_when_minute_window_resets(redis, clock) -> None:
    limiter = CountryRateLimiter(redis, clock, per_minute=10, per_hour=2)
    await limiter.hit("US")
    clock.advance(60)
    await limiter.hit("US")
    clock.advance(60)
    with pytest.raises(TooManyAttemptsForCountry):
        await limiter.hit("US")


@pytest.mark.asyncio
async def test_window_counter_sets_expiry(redis, clock) -> None:
    counter = FixedWindowCounter(redis, clock, "test", limit=5, window_seconds=60)
    assert await counter.hit("x") is True
    keys = await redis.keys("test:*")
    assert len(keys) == 1
    assert 0 < await redis.ttl(keys[0]) <= 60


@pytest.mark.asyncio
async def test_ip_and_deletion_limiters(redis, clock) -> None:
    ip = IpRateLimiter(redis, clock, per_hour=1)
    await ip.hit("203.0.113.7")
    await ip.hit("203.0.113.8")
    with pytest.raises(IpRateLimited):
        await ip.hit("203.0.113.7")

    deletions = DeletionRateLimiter(redis, clock, per_day=2)
    await deletions.hit()
    await deletions.hit()
    with pytest.raises(DeletionRateLimited):
        await deletions.hit()
    clock.advance(86_400)
    await deletions.hit()
