"""otp/schemas.py — Send-code request contract."""
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SendCodeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    number: Optional[str] = Field(
        default=None, max_length=20, description="E.164 phone number, e.g. +14155550123"
    )
    session_id: str = Field(..., alias="sessionId")


class SendCodeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sent: bool = True
    num_attempts: int = Field(serialization_alias="numAttempts")
