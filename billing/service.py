"""
Subscription billing on top of Stripe.

Covers checkout (one seat per active member), the customer portal,
webhook verification and dispatch, trial status, the public plan/price
listing and seat-quantity sync after membership changes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from billing.stripe_client import StripeClient, StripeError, stripe_client
from config.settings import config
from database.helpers import get_organization, run_in_new_session, spawn_background, to_uuid
from database.models import Organization, User, UserOrganization
from integrations.security import validate_webhook_signature
from organizations.service import count_active_members
from utils.email import send_email
from utils.errors import NotFoundError, ServiceError

logger = logging.getLogger(__name__)

WEBHOOK_TOLERANCE_SECONDS = 300
SUBSCRIPTION_EVENTS = {
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "customer.subscription.paused",
    "customer.subscription.resumed",
}
_SECONDS_PER_DAY = 60 * 60 * 24


class WebhookSignatureError(ServiceError):
    pass


def _client(client: Optional[StripeClient]) -> StripeClient:
    return client or stripe_client


def _base_url() -> str:
    return config.app_base_url.rstrip("/")


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or the expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def is_manual_trial() -> bool:
    return config.credit_card_required_for_trial == "manual"


# ── Organization subscription state ─────────────────────────────────────


async def get_organization_by_stripe_customer_id(session: AsyncSession, customer_id: str) -> Optional[Organization]:
    result = await session.execute(select(Organization).where(Organization.stripe_customer_id == customer_id))
    return result.scalars().first()


async def update_organization_subscription(
    session: AsyncSession,
    organization: Organization,
    *,
    subscription_id: Optional[str],
    product_id: Optional[str],
    plan_name: Optional[str],
    status: str,
) -> None:
    organization.stripe_subscription_id = subscription_id
    organization.stripe_product_id = product_id
    organization.plan_name = plan_name
    organization.subscription_status = status
    organization.updated_at = datetime.now(timezone.utc)
    await session.flush()


def serialize_subscription(organization: Organization) -> Dict[str, Any]:
    return {
        "customerId": organization.stripe_customer_id,
        "subscriptionId": organization.stripe_subscription_id,
        "productId": organization.stripe_product_id,
        "planName": organization.plan_name,
        "status": organization.subscription_status,
    }


# ── Checkout & portal ───────────────────────────────────────────────────


async def create_checkout_session(
    session: AsyncSession,
    organization: Organization,
    user_id: str | uuid.UUID,
    price_id: str,
    *,
    source: str = "checkout",
    client: Optional[StripeClient] = None,
) -> str:
    """
    Start a subscription checkout and return the URL to send the user to.

    ``source`` is ``"checkout"`` (organization settings) or ``"pricing"``
    (the public pricing page).
    """
    if not price_id:
        raise ServiceError("priceId is required")
    if source == "pricing" and is_manual_trial():
        return f"{_base_url()}/signup"

    quantity = await count_active_members(session, organization.id)
    base = _base_url()
    cancel_url = f"{base}/app/{organization.slug}/settings" if source == "checkout" else f"{base}/pricing"

    payload: Dict[str, Any] = {
        "payment_method_types": ["card"],
        "line_items": [{"price": price_id, "quantity": quantity}],
        "mode": "subscription",
        "success_url": (
            f"{base}/api/v1/billing/checkout/success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&organizationId={organization.id}"
        ),
        "cancel_url": cancel_url,
        "customer": organization.stripe_customer_id,
        "client_reference_id": str(user_id),
        "allow_promotion_codes": True,
        "payment_method_collection": (
            "if_required" if config.credit_card_required_for_trial == "stripe" else "always"
        ),
    }
    if not is_manual_trial():
        payload["subscription_data"] = {"trial_period_days": config.trial_days}

    checkout = await _client(client).create_checkout_session(**payload)
    logger.info(
        "Created checkout session %s for organization %s (%d seats)",
        checkout.get("id"), organization.id, quantity,
    )
    return checkout["url"]


async def complete_checkout(
    session: AsyncSession,
    checkout_session_id: str,
    organization_id: str,
    *,
    client: Optional[StripeClient] = None,
) -> Organization:
    """Record the customer and subscription of a finished checkout."""
    stripe = _client(client)
    checkout = await stripe.retrieve_checkout_session(checkout_session_id, expand=["customer", "subscription"])

    customer = checkout.get("customer")
    if not isinstance(customer, dict):
        raise ServiceError("Invalid customer data from Stripe")
    subscription_id = _id_of(checkout.get("subscription"))
    if not subscription_id:
        raise ServiceError("No subscription found for this session")

    subscription = await stripe.retrieve_subscription(subscription_id, expand=["items.data.price.product"])
    items = subscription.get("items", {}).get("data", [])
    price = items[0].get("price") if items else None
    if not price:
        raise ServiceError("No plan found for this subscription")
    product = price.get("product")
    product_id = _id_of(product)
    if not product_id:
        raise ServiceError("No product ID found for this subscription")

    user_id = checkout.get("client_reference_id")
    if not user_id:
        raise ServiceError("No user ID found on the checkout session")
    try:
        organization = await get_organization(session, organization_id)
    except ValueError:
        organization = None
    if organization is None:
        raise NotFoundError("Organization not found")
    membership = await session.execute(
        select(UserOrganization).where(
            UserOrganization.user_id == to_uuid(user_id),
            UserOrganization.organization_id == organization.id,
        )
    )
    if membership.scalar_one_or_none() is None:
        raise ServiceError("User is not associated with this organization")

    organization.stripe_customer_id = customer["id"]
    await update_organization_subscription(
        session,
        organization,
        subscription_id=subscription_id,
        product_id=product_id,
        plan_name=product.get("name") if isinstance(product, dict) else None,
        status=subscription.get("status", "incomplete"),
    )
    logger.info("Organization %s subscribed (%s)", organization.slug, subscription_id)
    return organization


async def create_customer_portal_session(
    organization: Organization,
    *,
    client: Optional[StripeClient] = None,
) -> Optional[str]:
    """
    Return a billing portal URL, or None when the organization has never
    subscribed.
    """
    if not organization.stripe_customer_id or not organization.stripe_product_id:
        return None
    stripe = _client(client)

    configurations = await stripe.list_portal_configurations()
    if configurations:
        configuration_id = configurations[0]["id"]
    else:
        product = await stripe.retrieve_product(organization.stripe_product_id)
        if not product.get("active"):
            raise ServiceError("Organization's product is not active in Stripe")
        prices = await stripe.list_prices(product=product["id"], active=True)
        if not prices:
            raise ServiceError("No active prices found for the organization's product")
        configuration = await stripe.create_portal_configuration(
            business_profile={"headline": "Manage your subscription"},
            features={
                "subscription_update": {
                    "enabled": True,
                    "default_allowed_updates": ["price", "quantity", "promotion_code"],
                    "proration_behavior": "create_prorations",
                    "products": [{"product": product["id"], "prices": [p["id"] for p in prices]}],
                },
                "subscription_cancel": {
                    "enabled": True,
                    "mode": "at_period_end",
                    "cancellation_reason": {
                        "enabled": True,
                        "options": ["too_expensive", "missing_features", "switched_service", "unused", "other"],
                    },
                },
            },
        )
        configuration_id = configuration["id"]

    portal = await stripe.create_portal_session(
        customer=organization.stripe_customer_id,
        return_url=f"{_base_url()}/app/{organization.slug}/settings",
        configuration=configuration_id,
    )
    return portal["url"]


async def delete_subscription(subscription_id: str, *, client: Optional[StripeClient] = None) -> None:
    await _client(client).cancel_subscription(subscription_id)


# ── Webhook ─────────────────────────────────────────────────────────────


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """
    Check a ``Stripe-Signature`` header (``t=<ts>,v1=<hex>[,v1=...]``).

    The signed message is ``"{t}.{payload}"`` under HMAC-SHA256.
    """
    if not header:
        raise WebhookSignatureError("Missing signature")
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")

    timestamp: Optional[str] = None
    signatures: List[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Invalid signature header")
    try:
        ts = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Invalid signature timestamp")

    signed = f"{timestamp}.".encode() + payload
    if not any(validate_webhook_signature(signed, sig, secret) for sig in signatures):
        raise WebhookSignatureError("Invalid signature")
    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside the tolerance window")


def construct_event(payload: bytes, header: Optional[str], secret: Optional[str] = None) -> Dict[str, Any]:
    verify_webhook_signature(payload, header, secret if secret is not None else config.stripe_webhook_secret)
    try:
        event = json.loads(payload)
    except ValueError:
        raise WebhookSignatureError("Invalid webhook payload")
    if not isinstance(event, dict) or "type" not in event:
        raise WebhookSignatureError("Invalid webhook payload")
    return event


async def _plan_of(subscription: Dict[str, Any], client: Optional[StripeClient]) -> Dict[str, Optional[str]]:
    items = subscription.get("items", {}).get("data", [])
    plan = (items[0].get("plan") or items[0].get("price")) if items else None
    if not plan:
        return {"product_id": None, "plan_name": None}
    product = plan.get("product")
    if isinstance(product, dict):
        return {"product_id": product.get("id"), "plan_name": product.get("name")}
    plan_name = None
    if product:
        try:
            plan_name = (await _client(client).retrieve_product(product)).get("name")
        except ServiceError:
            logger.warning("Could not resolve product %s for plan name", product)
    return {"product_id": product, "plan_name": plan_name}


async def handle_subscription_change(
    session: AsyncSession,
    subscription: Dict[str, Any],
    *,
    client: Optional[StripeClient] = None,
) -> Optional[Organization]:
    customer_id = _id_of(subscription.get("customer"))
    status = subscription.get("status")
    organization = await get_organization_by_stripe_customer_id(session, customer_id) if customer_id else None
    if organization is None:
        logger.warning("No organization for Stripe customer %s", customer_id)
        return None

    if status in ("active", "trialing"):
        plan = await _plan_of(subscription, client)
        await update_organization_subscription(
            session,
            organization,
            subscription_id=subscription.get("id"),
            product_id=plan["product_id"],
            plan_name=plan["plan_name"],
            status=status,
        )
    elif status in ("canceled", "unpaid"):
        await update_organization_subscription(
            session, organization, subscription_id=None, product_id=None, plan_name=None, status=status
        )
    else:
        logger.info("Ignoring subscription status %s for organization %s", status, organization.slug)
        return organization

    logger.info("Organization %s subscription is now %s", organization.slug, status)
    return organization


def _trial_email(user_name: str, days_remaining: int, portal_url: str) -> Dict[str, str]:
    days = "day" if days_remaining == 1 else "days"
    html = (
        f"<h1>Your Trial Ends Soon, {user_name}</h1>"
        f"<p>Your {config.app_name} trial is ending in {days_remaining} {days}. "
        "To keep your notes and collaborations without interruption, please upgrade your account.</p>"
        f'<p><a href="{portal_url}">Upgrade now</a></p>'
    )
    text = (
        f"Your {config.app_name} trial is ending in {days_remaining} {days}. "
        f"Upgrade here: {portal_url}"
    )
    return {"html": html, "text": text}


async def handle_trial_end(session: AsyncSession, subscription: Dict[str, Any]) -> int:
    """Email every admin of the subscribed organization; returns the count sent."""
    customer_id = _id_of(subscription.get("customer"))
    organization = await get_organization_by_stripe_customer_id(session, customer_id) if customer_id else None
    if organization is None:
        logger.warning("Trial ending for unknown Stripe customer %s", customer_id)
        return 0

    result = await session.execute(
        select(UserOrganization)
        .options(selectinload(UserOrganization.user))
        .where(
            UserOrganization.organization_id == organization.id,
            UserOrganization.role == "admin",
            UserOrganization.active.is_(True),
        )
    )
    admins: List[User] = [m.user for m in result.scalars().all() if m.user is not None]

    days_remaining = 3
    trial_end = subscription.get("trial_end")
    if trial_end:
        days_remaining = max(0, math.ceil((trial_end - time.time()) / _SECONDS_PER_DAY))
    portal_url = config.stripe_portal_url or f"{_base_url()}/app/{organization.slug}/settings"

    async def _notify(user: User) -> None:
        body = _trial_email(user.name or user.username, days_remaining, portal_url)
        await send_email(to=user.email, subject="Trial Ending Soon", html=body["html"], text=body["text"])

    await asyncio.gather(*(_notify(u) for u in admins))
    logger.info("Sent trial-ending notice to %d admins of %s", len(admins), organization.slug)
    return len(admins)


async def process_webhook_event(
    session: AsyncSession,
    event: Dict[str, Any],
    *,
    client: Optional[StripeClient] = None,
) -> bool:
    """Dispatch one verified event; returns False for unhandled types."""
    event_type = event.get("type")
    obj = event.get("data", {}).get("object", {})
    logger.info("Received Stripe webhook: %s", event_type)

    if event_type in SUBSCRIPTION_EVENTS:
        await handle_subscription_change(session, obj, client=client)
    elif event_type == "customer.subscription.trial_will_end":
        await handle_trial_end(session, obj)
    elif event_type == "invoice.payment_succeeded":
        logger.info("Payment succeeded for invoice %s", obj.get("id"))
    elif event_type == "invoice.payment_failed":
        logger.warning("Payment failed for invoice %s", obj.get("id"))
    else:
        logger.info("Unhandled webhook event type: %s", event_type)
        return False
    return True


# ── Plans, prices, trial ────────────────────────────────────────────────


async def get_stripe_prices(*, client: Optional[StripeClient] = None) -> List[Dict[str, Any]]:
    stripe = _client(client)
    try:
        await asyncio.wait_for(stripe.retrieve_account(), timeout=5.0)
    except (asyncio.TimeoutError, ServiceError) as exc:
        raise StripeError(f"Invalid Stripe API key or connectivity issue: {exc}") from exc

    prices = await stripe.list_prices(expand=["data.product"], active=True, type="recurring", limit=10)
    return [
        {
            "id": price["id"],
            "productId": _id_of(price.get("product")),
            "unitAmount": price.get("unit_amount"),
            "currency": price.get("currency"),
            "interval": (price.get("recurring") or {}).get("interval"),
            "trialPeriodDays": (price.get("recurring") or {}).get("trial_period_days"),
        }
        for price in prices
    ]


async def get_stripe_products(*, client: Optional[StripeClient] = None) -> List[Dict[str, Any]]:
    products = await _client(client).list_products(active=True, expand=["data.default_price"], limit=10)
    return [
        {
            "id": product["id"],
            "name": product.get("name"),
            "description": product.get("description"),
            "defaultPriceId": _id_of(product.get("default_price")),
        }
        for product in products
    ]


async def get_plans_and_prices(*, client: Optional[StripeClient] = None) -> Dict[str, Any]:
    """Base and Plus plans with their prices; empty values when Stripe is unreachable."""
    try:
        prices = await get_stripe_prices(client=client)
        products = await get_stripe_products(client=client)
    except ServiceError as exc:
        logger.warning("Falling back to empty plans: %s", exc)
        return {"plans": {"base": None, "plus": None}, "prices": {"base": None, "plus": None}}

    base = next((p for p in products if p["name"] == "Base"), None)
    plus = next((p for p in products if p["name"] == "Plus"), None)

    def _price_for(plan: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if plan is None:
            return None
        return next((p for p in prices if p["productId"] == plan["id"]), None)

    return {
        "plans": {"base": base, "plus": plus},
        "prices": {"base": _price_for(base), "plus": _price_for(plus)},
    }


async def get_trial_status(
    organization: Organization,
    *,
    client: Optional[StripeClient] = None,
) -> Dict[str, Any]:
    if is_manual_trial():
        elapsed = 0
        if organization.created_at is not None:
            created = organization.created_at
            if created.tzinfo is None:
                created = created.replace(tzinfo=timezone.utc)
            seconds = (datetime.now(timezone.utc) - created).total_seconds()
            elapsed = math.ceil(seconds / _SECONDS_PER_DAY)
        return {"isActive": True, "daysRemaining": config.trial_days - elapsed + 1}

    if not organization.stripe_customer_id:
        return {"isActive": False, "daysRemaining": 0}

    try:
        subscriptions = await _client(client).list_subscriptions(organization.stripe_customer_id)
    except ServiceError as exc:
        raise StripeError("Failed to fetch subscription status") from exc
    if not subscriptions:
        return {"isActive": False, "daysRemaining": 0}

    subscription = subscriptions[0]
    if subscription.get("status") == "trialing" and subscription.get("trial_end"):
        days = math.ceil((subscription["trial_end"] - time.time()) / _SECONDS_PER_DAY)
        return {"isActive": True, "daysRemaining": days}
    if subscription.get("status") == "active":
        return {"isActive": True, "daysRemaining": 0}
    return {"isActive": False, "daysRemaining": 0}


# ── Seats ───────────────────────────────────────────────────────────────


async def update_seat_quantity(
    session: AsyncSession,
    organization_id: str | uuid.UUID,
    *,
    client: Optional[StripeClient] = None,
) -> Dict[str, Any]:
    """Set the subscription's quantity to the active member count."""
    organization = await get_organization(session, organization_id)
    if organization is None or not organization.stripe_subscription_id:
        raise ServiceError("Organization does not have a stripe subscription. Cannot add user.")

    quantity = await count_active_members(session, organization.id)
    stripe = _client(client)
    subscription = await stripe.retrieve_subscription(organization.stripe_subscription_id)
    items = subscription.get("items", {}).get("data", [])
    if len(items) != 1:
        raise ServiceError("Subscription does not have exactly 1 item")

    updated = await stripe.update_subscription(
        organization.stripe_subscription_id,
        items=[{"id": items[0]["id"], "quantity": quantity}],
    )
    logger.info("Synced %d seats for organization %s", quantity, organization.slug)
    return updated


def schedule_seat_sync(
    organization: Organization,
    *,
    session_factory: Optional[async_sessionmaker] = None,
) -> bool:
    """
    Sync seats in the background when the organization is subscribed.

    Returns whether a sync was scheduled.
    """
    if not organization.stripe_subscription_id:
        return False
    if session_factory is None:
        from database.session import async_session_factory as session_factory

    organization_id = organization.id

    async def _sync(session: AsyncSession) -> None:
        await update_seat_quantity(session, organization_id)

    spawn_background(run_in_new_session(session_factory, _sync), label=f"seat-sync:{organization_id}")
    return True
