"""
otp/routes.py — POST /api/otp/send

Session must be IN_PROGRESS and under its attempt cap. The country and client
IP rate limits are checked before a code is stored; delivery runs in the
background so a slow SMS provider does not hold the request open.
"""
import logging

from fastapi import APIRouter, Depends, Request

from phone_server.otp.schemas import SendCodeRequest, SendCodeResponse
from phone_server.sessions.deps import client_ip, get_state_machine
from phone_server.sessions.state_machine import SessionStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/otp", tags=["OTP"])


@router.post("/send", response_model=SendCodeResponse, response_model_by_alias=True)
async def send_code(
    request: Request,
    body: SendCodeRequest,
    machine: SessionStateMachine = Depends(get_state_machine),
) -> SendCodeResponse:
    session = await machine.send_code(body.session_id, body.number, client_ip(request))
    return SendCodeResponse(num_attempts=session.num_attempts)
