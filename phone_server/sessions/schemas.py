"""
schemas.py — Session endpoint request/response contracts (Pydantic v2).

Wire format is camelCase (sigDigest, txHash, ...) to stay compatible with the
existing frontend; Python attributes are snake_case via aliases.
Missing-but-required business fields are Optional here and rejected by the
state machine with a 400 and a field-specific message.
"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from phone_server.store import Session


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CreateSessionRequest(_CamelModel):
    sig_digest: Optional[str] = Field(default=None, alias="sigDigest", max_length=128)


class OnChainPaymentRequest(_CamelModel):
    chain_id: Optional[int] = Field(default=None, alias="chainId")
    tx_hash: Optional[str] = Field(default=None, alias="txHash", max_length=66)


class PaymentV2Request(OnChainPaymentRequest):
    """PayPal orderId, or chainId + txHash for an on-chain payment."""
    order_id: Optional[str] = Field(default=None, alias="orderId")


class RedeemVoucherRequest(_CamelModel):
    voucher_id: Optional[str] = Field(default=None, alias="voucherId")


class RefundRequest(_CamelModel):
    to: Optional[str] = Field(
        default=None,
        description="Refund recipient (on-chain). Omit to refund a PayPal payment.",
    )


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class SessionResponse(_CamelModel):
    id: str
    sig_digest: str = Field(alias="sigDigest")
    session_status: str = Field(alias="sessionStatus")
    chain_id: Optional[int] = Field(default=None, alias="chainId")
    tx_hash: Optional[str] = Field(default=None, alias="txHash")
    num_attempts: int = Field(alias="numAttempts")
    refund_tx_hash: Optional[str] = Field(default=None, alias="refundTxHash")
    pay_pal: Optional[dict] = Field(default=None, alias="payPal")
    failure_reason: Optional[str] = Field(default=None, alias="failureReason")

    @classmethod
    def from_session(cls, session: Session) -> "SessionResponse":
        return cls(
            id=session.id,
            sig_digest=session.sig_digest,
            session_status=session.status.value,
            chain_id=session.chain_id,
            tx_hash=session.tx_hash,
            num_attempts=session.num_attempts,
            refund_tx_hash=session.refund_tx_hash,
            pay_pal=session.pay_pal,
            failure_reason=session.failure_reason,
        )


class SuccessResponse(BaseModel):
    success: bool = True


class RefundResponse(BaseModel):
    session_id: str = Field(serialization_alias="sessionId")
    method: str
    amount: str
    tx_hash: Optional[str] = Field(default=None, serialization_alias="txHash")
    details: dict[str, Any] = Field(default_factory=dict)
