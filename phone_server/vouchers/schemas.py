"""vouchers/schemas.py — Voucher batch purchase contracts."""
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class GenerateVouchersRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    chain_id: Optional[int] = Field(default=None, alias="chainId")
    tx_hash: Optional[str] = Field(default=None, alias="txHash", max_length=66)
    number_of_vouchers: int = Field(
        ..., alias="numberOfVouchers", gt=0, le=1000,
        description="Vouchers to mint; the tx must pay for all of them",
    )


class GenerateVouchersResponse(BaseModel):
    voucher_ids: List[str] = Field(serialization_alias="voucherIds")
