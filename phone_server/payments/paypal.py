"""
payments/paypal.py — Thin PayPal REST client (orders v2 + payments v2).

Each call fetches a fresh client-credentials token; volumes are low and
tokens are never cached across requests.
"""
import logging
from typing import Any, Optional

import httpx

from phone_server.errors import PayPalError

logger = logging.getLogger(__name__)


def first_completed_capture(order: dict) -> Optional[dict]:
    """First capture with status COMPLETED across all purchase units, if any."""
    for unit in order.get("purchase_units") or []:
        for capture in (unit.get("payments") or {}).get("captures") or []:
            if capture.get("status") == "COMPLETED":
                return capture
    return None


class PayPalClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        client_id: str,
        secret: str,
        base_url: str,
    ) -> None:
        self.http = http
        self.client_id = client_id
        self.secret = secret
        self.base_url = base_url.rstrip("/")

    async def _access_token(self) -> str:
        data = await self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.secret),
            op="access_token",
        )
        token = data.get("access_token")
        if not token:
            raise PayPalError("PayPal did not return an access token")
        return token

    async def _request(self, method: str, path: str, op: str, **kwargs: Any) -> dict:
        try:
            response = await self.http.request(method, f"{self.base_url}{path}", **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            logger.error(
                "PayPal request failed op=%s status=%s body=%s",
                op,
                exc.response.status_code,
                exc.response.text[:500],
            )
            raise PayPalError(f"PayPal {op} failed") from exc
        except httpx.HTTPError as exc:
            logger.error("PayPal request failed op=%s error=%s", op, exc)
            raise PayPalError(f"PayPal {op} failed") from exc

    async def _authed(self, method: str, path: str, op: str, json: Optional[dict] = None) -> dict:
        token = await self._access_token()
        return await self._request(
            method,
            path,
            op=op,
            json=json,
            headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
        )

    async def create_order(self, usd_amount: str) -> dict:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {"amount": {"currency_code": "USD", "value": usd_amount}},
            ],
        }
        return await self._authed("POST", "/v2/checkout/orders", op="create_order", json=body)

    async def get_order(self, order_id: str) -> dict:
        return await self._authed("GET", f"/v2/checkout/orders/{order_id}", op="get_order")

    async def capture_order(self, order_id: str) -> dict:
        return await self._authed(
            "POST", f"/v2/checkout/orders/{order_id}/capture", op="capture_order", json={}
        )

    async def refund_capture(self, capture_id: str, usd_amount: str, note: str) -> dict:
        body = {
            "amount": {"value": usd_amount, "currency_code": "USD"},
            "note_to_payer": note,
        }
        return await self._authed(
            "POST", f"/v2/payments/captures/{capture_id}/refund", op="refund_capture", json=body
        )
