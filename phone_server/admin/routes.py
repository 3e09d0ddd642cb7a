"""
admin/routes.py — Support endpoints, all behind the x-api-key header.

  GET    /api/admin/user-sessions?id=...|txHash=...  → every session sharing the sigDigest
  POST   /api/admin/sessions/{id}/fail               → IN_PROGRESS → VERIFICATION_FAILED
  DELETE /api/admin/phone-numbers/{number}           → forget a registration (daily cap)
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from phone_server.cache import mask_phone
from phone_server.errors import InvalidInput, PhoneNumberNotFound, SessionNotFound
from phone_server.otp.rate_limit import DeletionRateLimiter
from phone_server.sessions.deps import (
    get_deletion_limiter,
    get_state_machine,
    get_store,
    require_admin_key,
)
from phone_server.sessions.schemas import SessionResponse, SuccessResponse
from phone_server.sessions.state_machine import SessionStateMachine
from phone_server.store import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin_key)],
)


@router.get("/user-sessions", response_model=List[SessionResponse], response_model_by_alias=True)
async def user_sessions(
    id: Optional[str] = Query(default=None),
    tx_hash: Optional[str] = Query(default=None, alias="txHash"),
    store: SessionStore = Depends(get_store),
) -> List[SessionResponse]:
    """Find one session by id or payment tx, then return all sessions of that user."""
    if id:
        session = await store.get_session(id)
    elif tx_hash:
        session = await store.get_session_by_tx_hash(tx_hash)
    else:
        raise InvalidInput("id or txHash is required")
    if session is None:
        raise SessionNotFound()

    sessions = await store.get_sessions_by_sig_digest(session.sig_digest)
    return [SessionResponse.from_session(s) for s in sessions]


@router.post("/sessions/{session_id}/fail", response_model=SuccessResponse)
async def fail_session(
    session_id: str,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SuccessResponse:
    await machine.force_fail(session_id)
    logger.info("Admin failed session session_id=%s", session_id)
    return SuccessResponse()


@router.delete("/phone-numbers/{number}", response_model=SuccessResponse)
async def delete_phone_number(
    number: str,
    store: SessionStore = Depends(get_store),
    limiter: DeletionRateLimiter = Depends(get_deletion_limiter),
) -> SuccessResponse:
    await limiter.hit()
    if not await store.delete_registration(number):
        raise PhoneNumberNotFound()
    logger.info("Admin deleted phone number phone=%s", mask_phone(number))
    return SuccessResponse()
