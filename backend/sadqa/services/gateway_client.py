"""Razorpay REST client"""
import logging
from typing import Any, Dict, Optional

import httpx

from sadqa.core.config import settings, RAZORPAY_API_BASE
from sadqa.core.errors import GatewayError, GatewayTimeout, GatewayUnavailable

logger = logging.getLogger(__name__)


class RazorpayClient:
    """Thin async wrapper over the Razorpay REST API.

    Every call is bounded by the configured timeout. Failures surface as
    GatewayTimeout, GatewayUnavailable (transport errors and 5xx) or
    GatewayError (4xx and malformed bodies).
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.key_id = key_id if key_id is not None else settings.RAZORPAY_KEY_ID
        self.key_secret = key_secret if key_secret is not None else settings.RAZORPAY_KEY_SECRET
        self.base_url = (base_url or RAZORPAY_API_BASE).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.GATEWAY_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def _request(
        self,
        method: str,
        path: str,
        json_payload: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        if not self.configured:
            raise GatewayError("Razorpay credentials are not configured")

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.request(method.upper(), url, json=json_payload)
        except httpx.TimeoutException as exc:
            logger.warning(f"Razorpay {method.upper()} {path} timed out after {self.timeout}s")
            raise GatewayTimeout(f"Razorpay did not respond within {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.warning(f"Razorpay {method.upper()} {path} failed: {exc}")
            raise GatewayUnavailable(f"Failed to contact Razorpay: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 500:
            raise GatewayUnavailable(
                f"Razorpay returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            description = ""
            if isinstance(data, dict):
                description = (data.get("error") or {}).get("description") or ""
            raise GatewayError(
                description or f"Razorpay request failed with status {response.status_code}",
                status_code=response.status_code
            )
        if not isinstance(data, dict):
            raise GatewayError("Razorpay returned an unexpected response body")
        return data

    async def create_order(
        self,
        amount_paise: int,
        receipt: str,
        currency: str = "INR",
        notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        return await self._request("POST", "/orders", {
            "amount": amount_paise,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        })

    async def create_plan(
        self,
        period: str,
        interval: int,
        amount_paise: int,
        name: str,
        currency: str = "INR",
        notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        return await self._request("POST", "/plans", {
            "period": period,
            "interval": interval,
            "item": {"name": name, "amount": amount_paise, "currency": currency},
            "notes": notes or {},
        })

    async def create_subscription(
        self,
        plan_id: str,
        total_count: int,
        notes: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        return await self._request("POST", "/subscriptions", {
            "plan_id": plan_id,
            "total_count": total_count,
            "customer_notify": 1,
            "notes": notes or {},
        })

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/subscriptions/{subscription_id}")

    async def pause_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/subscriptions/{subscription_id}/pause", {"pause_at": "now"})

    async def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/subscriptions/{subscription_id}/resume", {"resume_at": "now"})

    async def cancel_subscription(self, subscription_id: str, at_cycle_end: bool = False) -> Dict[str, Any]:
        return await self._request(
            "POST", f"/subscriptions/{subscription_id}/cancel",
            {"cancel_at_cycle_end": 1 if at_cycle_end else 0}
        )

    async def refund_payment(self, payment_id: str, amount_paise: Optional[int] = None) -> Dict[str, Any]:
        payload = {"amount": amount_paise} if amount_paise else {}
        return await self._request("POST", f"/payments/{payment_id}/refund", payload)


def get_gateway_client() -> RazorpayClient:
    """Dependency for FastAPI endpoints"""
    return RazorpayClient()
