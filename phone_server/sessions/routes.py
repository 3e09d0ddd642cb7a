"""
sessions/routes.py — Session lifecycle endpoints.

Flow:
  POST /api/sessions                          → NEEDS_PAYMENT session
  POST /api/sessions/{id}/payment             → on-chain payment     → IN_PROGRESS
  POST /api/sessions/{id}/payment/v2          → PayPal or on-chain   → IN_PROGRESS
  POST /api/sessions/{id}/payment/v3          → admin, no calldata check
  POST /api/sessions/{id}/paypal-order        → attach a new PayPal order
  POST /api/sessions/{id}/redeem-voucher      → voucher              → IN_PROGRESS
  POST /api/sessions/{id}/refund              → VERIFICATION_FAILED  → REFUNDED
  GET  /api/sessions?id=...|sigDigest=...     → matching sessions
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from phone_server.config import settings
from phone_server.refunds.coordinator import RefundCoordinator
from phone_server.sessions.deps import (
    get_refund_coordinator,
    get_state_machine,
    require_admin_key,
)
from phone_server.sessions.schemas import (
    CreateSessionRequest,
    OnChainPaymentRequest,
    PaymentV2Request,
    RedeemVoucherRequest,
    RefundRequest,
    RefundResponse,
    SessionResponse,
    SuccessResponse,
)
from phone_server.sessions.state_machine import SessionStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["Sessions"])


@router.post("", status_code=201, response_model=SessionResponse, response_model_by_alias=True)
async def create_session(
    body: CreateSessionRequest,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SessionResponse:
    session = await machine.create(body.sig_digest)
    logger.info("Created session session_id=%s", session.id)
    return SessionResponse.from_session(session)


@router.get("", response_model=List[SessionResponse], response_model_by_alias=True)
async def get_sessions(
    id: Optional[str] = Query(default=None),
    sig_digest: Optional[str] = Query(default=None, alias="sigDigest"),
    machine: SessionStateMachine = Depends(get_state_machine),
) -> List[SessionResponse]:
    sessions = await machine.lookup(session_id=id, sig_digest=sig_digest)
    return [SessionResponse.from_session(s) for s in sessions]


@router.post("/{session_id}/payment", response_model=SuccessResponse)
async def pay_onchain(
    session_id: str,
    body: OnChainPaymentRequest,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SuccessResponse:
    await machine.pay_onchain(session_id, body.chain_id, body.tx_hash)
    return SuccessResponse()


@router.post("/{session_id}/payment/v2", response_model=SuccessResponse)
async def pay_v2(
    session_id: str,
    body: PaymentV2Request,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SuccessResponse:
    """orderId takes precedence; otherwise chainId + txHash."""
    if body.order_id:
        await machine.pay_paypal(session_id, body.order_id)
    else:
        await machine.pay_onchain(session_id, body.chain_id, body.tx_hash)
    return SuccessResponse()


@router.post(
    "/{session_id}/payment/v3",
    response_model=SuccessResponse,
    dependencies=[Depends(require_admin_key)],
)
async def pay_admin(
    session_id: str,
    body: OnChainPaymentRequest,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SuccessResponse:
    await machine.pay_onchain(
        session_id,
        body.chain_id,
        body.tx_hash,
        desired_usd=settings.admin_session_price_usd,
        check_data=False,
    )
    logger.info("Admin payment accepted session_id=%s tx_hash=%s", session_id, body.tx_hash)
    return SuccessResponse()


@router.post("/{session_id}/paypal-order", status_code=201)
async def create_paypal_order(
    session_id: str,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> dict:
    return await machine.create_paypal_order(session_id)


@router.post("/{session_id}/redeem-voucher", response_model=SuccessResponse)
async def redeem_voucher(
    session_id: str,
    body: RedeemVoucherRequest,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SuccessResponse:
    await machine.redeem_voucher(session_id, body.voucher_id)
    logger.info("Voucher redeemed session_id=%s", session_id)
    return SuccessResponse()


@router.post("/{session_id}/refund", response_model=RefundResponse, response_model_by_alias=True)
async def refund(
    session_id: str,
    body: RefundRequest,
    coordinator: RefundCoordinator = Depends(get_refund_coordinator),
) -> RefundResponse:
    receipt = await coordinator.refund(session_id, body.to)
    return RefundResponse(
        session_id=receipt.session_id,
        method=receipt.method,
        amount=receipt.amount,
        tx_hash=receipt.tx_hash,
        details=receipt.details,
    )
