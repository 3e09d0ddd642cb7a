"""
otp/sms.py — SMS delivery.

TwilioSmsSender wraps the synchronous twilio REST client; calls run in a worker
thread so the event loop never blocks on the provider.
"""
import asyncio
import logging
from typing import Protocol

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from phone_server.cache import mask_phone

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    async def send(self, phone_number: str, message: str) -> None: ...


class TwilioSmsSender:
    def __init__(self, account_sid: str, auth_token: str, from_number: str) -> None:
        self._client = Client(account_sid, auth_token)
        self._from_number = from_number

    async def send(self, phone_number: str, message: str) -> None:
        try:
            result = await asyncio.to_thread(
                self._client.messages.create,
                body=message,
                from_=self._from_number,
                to=phone_number,
            )
        except TwilioRestException as exc:
            logger.error(
                "Twilio send failed phone=%s status=%s code=%s",
                mask_phone(phone_number),
                exc.status,
                exc.code,
            )
            raise
        logger.info(
            "SMS sent phone=%s sid=%s status=%s",
            mask_phone(phone_number),
            result.sid,
            result.status,
        )
