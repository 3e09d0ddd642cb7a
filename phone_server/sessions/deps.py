"""
sessions/deps.py — FastAPI dependencies that assemble per-request services.

Long-lived clients (Redis pool, httpx client, chain gateway, SMS sender, OTP
service, issuer, clock) live on app.state and are created in main.py lifespan.
The store is per request because it wraps that request's AsyncSession.
Tests override get_store and set app.state attributes to in-memory fakes.
"""
from typing import Optional

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from phone_server.config import settings
from phone_server.database import get_db
from phone_server.eligibility.gate import EligibilityGate
from phone_server.errors import Unauthorized
from phone_server.otp.rate_limit import DeletionRateLimiter, IpRateLimiter
from phone_server.payments.validator import PaymentValidator
from phone_server.refunds.coordinator import RefundCoordinator
from phone_server.sessions.state_machine import SessionStateMachine
from phone_server.store import SessionStore, SqlStore


async def get_store(db: AsyncSession = Depends(get_db)) -> SessionStore:
    return SqlStore(db)


def get_payment_validator(
    request: Request, store: SessionStore = Depends(get_store)
) -> PaymentValidator:
    state = request.app.state
    return PaymentValidator(
        chain=state.chain,
        prices=state.prices,
        store=store,
        paypal=state.paypal,
        payment_address=settings.payment_address,
        slippage=settings.payment_slippage,
        fetch_attempts=settings.tx_fetch_attempts,
        fetch_base_delay=settings.tx_fetch_base_delay_seconds,
    )


def get_state_machine(
    request: Request,
    store: SessionStore = Depends(get_store),
    validator: PaymentValidator = Depends(get_payment_validator),
) -> SessionStateMachine:
    state = request.app.state
    return SessionStateMachine(
        store=store,
        clock=state.clock,
        otp=state.otp,
        gate=EligibilityGate(
            fraud=state.fraud,
            store=store,
            clock=state.clock,
            max_fraud_score=settings.max_fraud_score,
        ),
        issuer=state.issuer,
        issuer_key=settings.issuer_private_key,
        validator=validator,
        paypal=state.paypal,
        ip_limiter=IpRateLimiter(state.redis, state.clock, settings.max_ip_sends_per_hour),
        environment=settings.environment,
        max_attempts=settings.max_attempts_per_session,
        session_price_usd=settings.session_price_usd,
    )


def get_refund_coordinator(
    request: Request, store: SessionStore = Depends(get_store)
) -> RefundCoordinator:
    state = request.app.state
    return RefundCoordinator(
        store=store,
        redis=state.redis,
        chain=state.chain,
        paypal=state.paypal,
        refund_numerator=settings.refund_numerator,
        refund_denominator=settings.refund_denominator,
        paypal_refund_usd=settings.paypal_refund_usd,
        lock_ttl_seconds=settings.refund_lock_ttl_seconds,
    )


def get_deletion_limiter(request: Request) -> DeletionRateLimiter:
    state = request.app.state
    return DeletionRateLimiter(state.redis, state.clock, settings.max_number_deletions_per_day)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def require_admin_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    """x-api-key must equal ADMIN_API_KEY_LOW_PRIVILEGE; an unset key locks the endpoints."""
    if not settings.admin_api_key_low_privilege or x_api_key != settings.admin_api_key_low_privilege:
        raise Unauthorized()
