"""
eligibility/fraud.py — ipqualityscore.com phone reputation lookup.
"""
import logging
from typing import Protocol
from urllib.parse import quote

import httpx

from phone_server.cache import mask_phone
from phone_server.errors import FraudProviderError

logger = logging.getLogger(__name__)


class FraudScorer(Protocol):
    async def fraud_score(self, phone_number: str, country: str) -> float: ...


class IpqsFraudScorer:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_key: str,
        base_url: str = "https://ipqualityscore.com/api/json",
    ) -> None:
        self.http = http
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    async def fraud_score(self, phone_number: str, country: str) -> float:
        url = f"{self.base_url}/phone/{self.api_key}/{quote(phone_number)}"
        try:
            response = await self.http.get(url, params={"country[]": country})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            logger.error("IPQS request failed phone=%s error=%s", mask_phone(phone_number), exc)
            raise FraudProviderError() from exc
        except ValueError as exc:
            logger.error("IPQS returned non-JSON body phone=%s", mask_phone(phone_number))
            raise FraudProviderError() from exc

        score = data.get("fraud_score") if isinstance(data, dict) else None
        # bool is an int subclass; IPQS never sends one for fraud_score
        if isinstance(score, bool) or not isinstance(score, (int, float)):
            logger.error("IPQS response missing fraud_score phone=%s", mask_phone(phone_number))
            raise FraudProviderError()

        logger.info("IPQS fraud_score=%s phone=%s", score, mask_phone(phone_number))
        return float(score)
