"""credentials/schemas.py — Verify-and-issue request contract."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class GetCredentialsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: Optional[str] = Field(default=None, max_length=20)
    code: Optional[str] = Field(default=None, max_length=12)
    country: Optional[str] = Field(default=None, max_length=2, description="ISO 3166-1 alpha-2")
    session_id: str = Field(..., alias="sessionId")
    nullifier: Optional[str] = Field(
        default=None,
        description="Issuance nullifier, decimal or 0x-prefixed hex. Required for v5/v6.",
    )
