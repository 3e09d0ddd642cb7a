"""
vouchers/routes.py — POST /api/vouchers

Body: {chainId, txHash, numberOfVouchers}. Returns 201 {voucherIds: [...]}.
"""
import logging

from fastapi import APIRouter, Depends

from phone_server.config import settings
from phone_server.payments.validator import PaymentValidator
from phone_server.sessions.deps import get_payment_validator, get_store
from phone_server.store import SessionStore
from phone_server.vouchers.schemas import GenerateVouchersRequest, GenerateVouchersResponse
from phone_server.vouchers.service import VoucherMinter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/vouchers", tags=["Vouchers"])


@router.post(
    "",
    status_code=201,
    response_model=GenerateVouchersResponse,
    response_model_by_alias=True,
)
async def generate_vouchers(
    body: GenerateVouchersRequest,
    validator: PaymentValidator = Depends(get_payment_validator),
    store: SessionStore = Depends(get_store),
) -> GenerateVouchersResponse:
    minter = VoucherMinter(
        validator, store, settings.voucher_price_usd, environment=settings.environment
    )
    voucher_ids = await minter.mint(body.chain_id, body.tx_hash, body.number_of_vouchers)
    return GenerateVouchersResponse(voucher_ids=voucher_ids)
