"""
Transactional email via the Resend REST API.

Without ``RESEND_API_KEY`` the message is logged instead of sent, so local
development and tests never reach the network.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config.settings import config

logger = logging.getLogger(__name__)

_RESEND_URL = "https://api.resend.com/emails"


async def send_email(
    *,
    to: str,
    subject: str,
    html: str,
    text: Optional[str] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, Any]:
    """
    Send one email.

    Returns ``{"status": "success", "id": ...}`` or
    ``{"status": "error", "error": ...}``; never raises on delivery failure.
    """
    payload: Dict[str, Any] = {
        "from": config.email_from,
        "to": to,
        "subject": subject,
        "html": html,
    }
    if text:
        payload["text"] = text

    if not config.resend_api_key:
        logger.warning("RESEND_API_KEY not set — not sending email to %s (%s)", to, subject)
        logger.debug("Email body:\n%s", text or html)
        return {"status": "success", "id": "mocked"}

    try:
        async with httpx.AsyncClient(timeout=10.0, transport=transport) as client:
            resp = await client.post(
                _RESEND_URL,
                json=payload,
                headers={"Authorization": f"Bearer {config.resend_api_key}"},
            )
        if resp.status_code >= 400:
            logger.error("Email to %s failed: %s %s", to, resp.status_code, resp.text)
            return {"status": "error", "error": resp.text}
        return {"status": "success", "id": resp.json().get("id")}
    except httpx.HTTPError as exc:
        logger.error("Email to %s failed: %s", to, exc)
        return {"status": "error", "error": str(exc)}
