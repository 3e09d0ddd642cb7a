"""
credentials/routes.py — POST /api/credentials/{version}

version selects the verification policy (v4, v5, v6). Returns the signed
credential: {"credentials": {...}, "signature": "0x..."}.
"""
import logging

from fastapi import APIRouter, Depends

from phone_server.config import settings
from phone_server.credentials.schemas import GetCredentialsRequest
from phone_server.errors import NotFound
from phone_server.sessions.deps import get_state_machine
from phone_server.sessions.policy import policy_for
from phone_server.sessions.state_machine import SessionStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/credentials", tags=["Credentials"])


@router.post("/{version}")
async def get_credentials(
    version: str,
    body: GetCredentialsRequest,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> dict:
    policy = policy_for(
        version,
        sybil_resistance_enabled=not settings.disable_sybil_resistance_for_testing,
        registration_recency_months=settings.registration_recency_months,
    )
    if policy is None:
        raise NotFound(f"Unknown credentials version '{version}'")

    return await machine.verify_and_issue(
        body.session_id,
        body.number,
        body.code,
        body.country,
        policy,
        nullifier=body.nullifier,
    )
