"""
eligibility/gate.py — Fraud score + registration history.

check_eligibility() is read-only. register() is called by the state machine
only after the whole verify pipeline has succeeded, so a number is never
recorded for a verification that then fails.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from phone_server.cache import mask_phone
from phone_server.clock import Clock, now_ms
from phone_server.eligibility.fraud import FraudScorer
from phone_server.sessions.policy import VerificationPolicy
from phone_server.store import PhoneRegistration, SessionStore

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True)
class Eligibility:
    is_safe: bool
    is_registered: bool
    fraud_score: float


def months_ago_ms(now_millis: int, months: int) -> int:
    """Same day-of-month `months` calendar months earlier, clamped to month end."""
    now = datetime.fromtimestamp(now_millis / 1000, tz=timezone.utc)
    month_index = now.year * 12 + (now.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(now.day, calendar.monthrange(year, month)[1])
    return int(now.replace(year=year, month=month, day=day).timestamp() * 1000)


class EligibilityGate:
    def __init__(
        self,
        fraud: FraudScorer,
        store: SessionStore,
        clock: Clock,
        max_fraud_score: float = 75,
    ) -> None:
        self.fraud = fraud
        self.store = store
        self.clock = clock
        self.max_fraud_score = max_fraud_score

    async def is_registered(self, phone_number: str, policy: VerificationPolicy) -> bool:
        if not policy.sybil_resistance_enabled:
            return False

        registration = await self.store.get_registration(phone_number)
        if registration is None:
            return False

        now = now_ms(self.clock)
        if policy.registration_recency_months is not None:
            cutoff = months_ago_ms(now, policy.registration_recency_months)
            if registration.inserted_at < cutoff:
                return False

        if policy.exclude_grace_window_registrations and policy.nullifier_grace_days > 0:
            # Registered inside the grace window: the same user may re-verify
            if registration.inserted_at >= now - policy.nullifier_grace_days * DAY_MS:
                return False

        return True

    async def check_eligibility(
        self, phone_number: str, country: str, policy: VerificationPolicy
    ) -> Eligibility:
        score = await self.fraud.fraud_score(phone_number, country)
        registered = await self.is_registered(phone_number, policy)
        result = Eligibility(
            is_safe=score <= self.max_fraud_score,
            is_registered=registered,
            fraud_score=score,
        )
        logger.info(
            "Eligibility phone=%s safe=%s registered=%s",
            mask_phone(phone_number),
            result.is_safe,
            result.is_registered,
        )
        return result

    async def register(self, phone_number: str, at_ms: Optional[int] = None) -> None:
        await self.store.put_registration(
            PhoneRegistration(
                phone_number=phone_number,
                inserted_at=at_ms if at_ms is not None else now_ms(self.clock),
            )
        )
