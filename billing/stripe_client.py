"""
Minimal async Stripe REST client over httpx.

Stripe takes form-encoded bodies with bracketed keys
(``line_items[0][price]``); ``encode_form`` flattens nested dicts and
lists into that shape.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config.settings import config
from utils.errors import ServiceError

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"
STRIPE_API_VERSION = "2024-06-20"


class StripeError(ServiceError):
    """A failed Stripe call; maps to HTTP 502."""

    status_code = 502

    def __init__(self, message: str, http_status: Optional[int] = None):
        super().__init__(message)
        self.http_status = http_status


class StripeNotConfiguredError(ServiceError):
    status_code = 503


def encode_form(data: Dict[str, Any], prefix: str = "") -> List[Tuple[str, str]]:
    pairs: List[Tuple[str, str]] = []
    for key, value in data.items():
        name = f"{prefix}[{key}]" if prefix else str(key)
        if value is None:
            continue
        if isinstance(value, dict):
            pairs.extend(encode_form(value, name))
        elif isinstance(value, (list, tuple)):
            for i, item in enumerate(value):
                item_name = f"{name}[{i}]"
                if isinstance(item, dict):
                    pairs.extend(encode_form(item, item_name))
                else:
                    pairs.append((item_name, _scalar(item)))
        else:
            pairs.append((name, _scalar(value)))
    return pairs


def _scalar(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class StripeClient:
    """Thin wrapper over the handful of Stripe endpoints billing needs."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self._secret_key = secret_key if secret_key is not None else config.stripe_secret_key
        self._transport = transport
        self._timeout = timeout

    def is_configured(self) -> bool:
        return bool(self._secret_key) and self._secret_key.startswith("sk_")

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.is_configured():
            raise StripeNotConfiguredError("Stripe is not configured")

        headers = {
            "Authorization": f"Bearer {self._secret_key}",
            "Stripe-Version": STRIPE_API_VERSION,
        }
        async with httpx.AsyncClient(
            base_url=STRIPE_API_BASE, transport=self._transport, timeout=self._timeout
        ) as client:
            try:
                resp = await client.request(
                    method,
                    path,
                    params=encode_form(params) if params else None,
                    data=dict(encode_form(data)) if data else None,
                    headers=headers,
                )
            except httpx.HTTPError as exc:
                raise StripeError(f"Stripe request failed: {exc}") from exc

        if resp.is_error:
            message = resp.text
            try:
                message = resp.json().get("error", {}).get("message") or message
            except ValueError:
                pass
            logger.error("Stripe %s %s -> %s: %s", method, path, resp.status_code, message)
            raise StripeError(f"Stripe error: {message}", http_status=resp.status_code)
        return resp.json()

    # ── Resources ───────────────────────────────────────────────────────

    async def create_checkout_session(self, **payload: Any) -> Dict[str, Any]:
        return await self.request("POST", "/checkout/sessions", data=payload)

    async def retrieve_checkout_session(self, session_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self.request("GET", f"/checkout/sessions/{session_id}", params={"expand": expand or []})

    async def retrieve_subscription(self, subscription_id: str, expand: Optional[List[str]] = None) -> Dict[str, Any]:
        return await self.request("GET", f"/subscriptions/{subscription_id}", params={"expand": expand or []})

    async def list_subscriptions(self, customer: str, status: str = "all", limit: int = 1) -> List[Dict[str, Any]]:
        body = await self.request(
            "GET", "/subscriptions", params={"customer": customer, "status": status, "limit": limit}
        )
        return body.get("data", [])

    async def update_subscription(self, subscription_id: str, **payload: Any) -> Dict[str, Any]:
        return await self.request("POST", f"/subscriptions/{subscription_id}", data=payload)

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self.request("DELETE", f"/subscriptions/{subscription_id}")

    async def list_prices(self, **params: Any) -> List[Dict[str, Any]]:
        body = await self.request("GET", "/prices", params=params)
        return body.get("data", [])

    async def list_products(self, **params: Any) -> List[Dict[str, Any]]:
        body = await self.request("GET", "/products", params=params)
        return body.get("data", [])

    async def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        return await self.request("GET", f"/products/{product_id}")

    async def list_portal_configurations(self) -> List[Dict[str, Any]]:
        body = await self.request("GET", "/billing_portal/configurations")
        return body.get("data", [])

    async def create_portal_configuration(self, **payload: Any) -> Dict[str, Any]:
        return await self.request("POST", "/billing_portal/configurations", data=payload)

    async def create_portal_session(self, **payload: Any) -> Dict[str, Any]:
        return await self.request("POST", "/billing_portal/sessions", data=payload)

    async def retrieve_account(self) -> Dict[str, Any]:
        return await self.request("GET", "/account")


stripe_client = StripeClient()
