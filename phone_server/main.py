"""
main.py — Phone verification service FastAPI entry point.

Start with: uvicorn phone_server.main:app --reload --port 8000
(run from the repository root, next to alembic.ini)
"""
import logging
import os
import subprocess
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from phone_server.config import settings
from phone_server.credentials.issuer import load_private_key
from phone_server.errors import PhoneServerError

# ---------------------------------------------------------------------------
# Logging: configured before anything else
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _check_issuer_key(private_key: str) -> None:
    """Refuse to start with a key that cannot sign; issuance would fail per request."""
    try:
        load_private_key(private_key)
    except ValueError as exc:
        logger.error("Invalid ISSUER_PRIVATE_KEY: %s", exc)
        raise RuntimeError("ISSUER_PRIVATE_KEY must be the hex of a 32-byte Ed25519 seed") from exc


def _run_migrations() -> None:
    root_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    result = subprocess.run(
        [sys.executable, "-m", "alembic", "upgrade", "head"],
        capture_output=True,
        text=True,
        cwd=root_dir,
    )
    if result.returncode != 0:
        logger.error("Alembic migration failed:\n%s", result.stderr)
        raise RuntimeError(f"Alembic migration failed: {result.stderr}")
    logger.info("Alembic: %s", result.stdout.strip() or "No pending migrations")


# ---------------------------------------------------------------------------
# Lifespan: startup & shutdown hooks
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
      0. Check the issuer key can sign
      1. Run Alembic migrations (RUN_MIGRATIONS_ON_STARTUP)
      2. Redis pool and the shared httpx client
      3. Outbound gateways: chain RPC, SMS, prices, PayPal, fraud scoring
      4. OTP service and credential issuer
    Shutdown:
      wait for in-flight SMS deliveries, then close httpx and Redis
    """
    from phone_server.cache import create_redis_pool
    from phone_server.clock import SystemClock
    from phone_server.credentials.issuer import Ed25519CredentialIssuer
    from phone_server.eligibility.fraud import IpqsFraudScorer
    from phone_server.otp.rate_limit import CountryRateLimiter
    from phone_server.otp.service import OtpService
    from phone_server.otp.sms import TwilioSmsSender
    from phone_server.payments.chain import Web3ChainGateway, supported_chain_ids
    from phone_server.payments.paypal import PayPalClient
    from phone_server.payments.prices import PriceFeed

    _check_issuer_key(settings.issuer_private_key)

    # --- 1. Database ---
    if settings.run_migrations_on_startup:
        _run_migrations()

    # --- 2. Shared connections ---
    app.state.redis = await create_redis_pool()
    app.state.http = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.clock = SystemClock()

    # --- 3. Gateways ---
    rpc_urls = {}
    for chain_id in supported_chain_ids(settings.environment):
        url = settings.rpc_url_for(chain_id)
        if url:
            rpc_urls[chain_id] = url
        else:
            logger.warning("No RPC endpoint configured chain_id=%s", chain_id)
    app.state.chain = Web3ChainGateway(
        rpc_urls,
        private_key=settings.payments_private_key,
        timeout=settings.rpc_timeout_seconds,
    )
    app.state.prices = PriceFeed(
        app.state.http,
        app.state.redis,
        api_key=settings.cmc_api_key,
        base_url=settings.cmc_base_url,
        ttl_seconds=settings.price_cache_ttl_seconds,
    )
    app.state.paypal = PayPalClient(
        app.state.http,
        client_id=settings.paypal_client_id,
        secret=settings.paypal_secret,
        base_url=settings.paypal_api_base_url,
    )
    app.state.fraud = IpqsFraudScorer(
        app.state.http,
        api_key=settings.ipqualityscore_apikey,
        base_url=settings.ipqualityscore_base_url,
    )

    # --- 4. OTP + issuer ---
    sms = TwilioSmsSender(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.twilio_phone_number or settings.otp_sender_name,
    )
    app.state.otp = OtpService(
        app.state.redis,
        sms,
        CountryRateLimiter(
            app.state.redis,
            app.state.clock,
            per_minute=settings.max_country_attempts_per_minute,
            per_hour=settings.max_country_attempts_per_hour,
        ),
        ttl_seconds=settings.otp_ttl_seconds,
    )
    app.state.issuer = Ed25519CredentialIssuer()

    logger.info(
        "Phone verification service v%s starting up environment=%s",
        settings.app_version,
        settings.environment,
    )
    yield

    # --- Shutdown ---
    await app.state.otp.drain()
    await app.state.http.aclose()
    await app.state.redis.aclose()
    logger.info("Phone verification service shutting down")


# ---------------------------------------------------------------------------
# FastAPI application instance
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Phone Verification API",
    version=settings.app_version,
    description=(
        "Paid phone-number verification: OTP delivery, Sybil-resistant "
        "eligibility checks and signed phone-number credentials."
    ),
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error response helper
# ---------------------------------------------------------------------------
def _make_error_response(
    code: str,
    message: str,
    details: list[dict[str, Any]] | None = None,
    status_code: int = 500,
) -> JSONResponse:
    """Build a standard {error: {code, message, details}} response."""
    body = {
        "error": {
            "code": code,
            "message": message,
            "details": details or [],
        }
    }
    return JSONResponse(status_code=status_code, content=body)


# ---------------------------------------------------------------------------
# Global exception handlers: registered BEFORE routers
# ---------------------------------------------------------------------------
@app.exception_handler(PhoneServerError)
async def phone_server_error_handler(
    request: Request, exc: PhoneServerError
) -> JSONResponse:
    """Domain errors carry their own status and code (see errors.py)."""
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message
        )
    details = [{"field": key, "issue": value} for key, value in exc.details.items()]
    return _make_error_response(
        code=exc.code,
        message=exc.message,
        details=details,
        status_code=exc.status_code,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Returns ALL field violations in one response."""
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field or None, "issue": error["msg"]})
    return _make_error_response(
        code="VALIDATION_ERROR",
        message="Request validation failed",
        details=details,
        status_code=422,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        429: "RATE_LIMITED",
    }
    code = code_map.get(exc.status_code, f"HTTP_{exc.status_code}")
    return _make_error_response(
        code=code,
        message=str(exc.detail),
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """
    DEBUG=true  → includes exception type & message in details (dev only).
    DEBUG=false → generic message; full traceback logged server-side only.
    """
    logger.error(
        "Unhandled exception on %s %s",
        request.method,
        request.url.path,
        exc_info=True,
    )
    if settings.debug:
        details = [{"issue": f"{type(exc).__name__}: {exc}"}]
        message = "An unexpected error occurred (debug details included)"
    else:
        details = []
        message = "An unexpected error occurred"
    return _make_error_response(
        code="INTERNAL_ERROR",
        message=message,
        details=details,
        status_code=500,
    )


# ---------------------------------------------------------------------------
# Health endpoint (no auth required)
# ---------------------------------------------------------------------------
@app.get("/api/health", tags=["System"])
async def health_check() -> dict:
    return {
        "status": "ok",
        "version": settings.app_version,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from phone_server.admin.routes import router as admin_router
from phone_server.credentials.routes import router as credentials_router
from phone_server.otp.routes import router as otp_router
from phone_server.sessions.routes import router as sessions_router
from phone_server.vouchers.routes import router as vouchers_router

app.include_router(sessions_router)
app.include_router(otp_router)
app.include_router(credentials_router)
app.include_router(vouchers_router)
app.include_router(admin_router)
