"""
Billing API routes.

Route prefix: /api/v1/billing
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth.dependencies import db_session, get_current_user_id
from billing import service as billing_service
from config.settings import config
from organizations.service import require_org_member
from utils.errors import ServiceError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    price_id: str
    source: Literal["checkout", "pricing"] = "checkout"


@router.get("/plans")
async def list_plans() -> Dict[str, Any]:
    return await billing_service.get_plans_and_prices()


@router.get("/{slug}/subscription")
async def get_subscription(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await require_org_member(session, slug, user_id)
    return billing_service.serialize_subscription(org)


@router.get("/{slug}/trial")
async def get_trial_status(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, Any]:
    org, _ = await require_org_member(session, slug, user_id)
    return await billing_service.get_trial_status(org)


@router.post("/{slug}/checkout")
async def start_checkout(
    slug: str,
    body: CheckoutRequest,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, str]:
    org, _ = await require_org_member(session, slug, user_id, min_role="admin")
    url = await billing_service.create_checkout_session(
        session, org, user_id, body.price_id, source=body.source
    )
    return {"url": url}


@router.post("/{slug}/portal")
async def open_portal(
    slug: str,
    user_id: str = Depends(get_current_user_id),
    session: AsyncSession = Depends(db_session),
) -> Dict[str, str]:
    org, _ = await require_org_member(session, slug, user_id, min_role="admin")
    url = await billing_service.create_customer_portal_session(org)
    return {"url": url or f"{config.app_base_url.rstrip('/')}/pricing"}


@router.get("/checkout/success")
async def checkout_success(
    session_id: str = Query(None),
    organization_id: str = Query(None, alias="organizationId"),
    session: AsyncSession = Depends(db_session),
) -> RedirectResponse:
    """Stripe redirects here after a completed checkout."""
    base = config.app_base_url.rstrip("/")
    if not session_id or not organization_id:
        return RedirectResponse(f"{base}/pricing", status_code=303)
    try:
        org = await billing_service.complete_checkout(session, session_id, organization_id)
    except ServiceError as exc:
        await session.rollback()
        logger.error("Error handling successful checkout: %s", exc)
        return RedirectResponse(f"{base}/error", status_code=303)
    return RedirectResponse(f"{base}/app/{org.slug}", status_code=303)


@router.post("/webhook")
async def stripe_webhook(request: Request, session: AsyncSession = Depends(db_session)):
    payload = await request.body()
    try:
        event = billing_service.construct_event(payload, request.headers.get("stripe-signature"))
    except billing_service.WebhookSignatureError as exc:
        logger.error("Webhook signature verification failed: %s", exc)
        return JSONResponse({"detail": exc.message}, status_code=400)

    try:
        handled = await billing_service.process_webhook_event(session, event)
    except Exception:
        await session.rollback()
        logger.exception("Error processing webhook %s", event.get("type"))
        return JSONResponse({"detail": "Webhook processing failed"}, status_code=500)
    return {"received": True, "handled": handled}
