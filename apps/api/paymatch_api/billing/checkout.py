"""Subscription billing actions: checkout, portal, plan updates, upcoming invoice.

Plan changes are absolute writes, so replayed webhooks converge on the same
state.
"""

import logging
from typing import Any, Optional

import httpx
import redis
from sqlalchemy.orm import Session

from paymatch_api.auth.cache import CacheService, invalidate_organization_members
from paymatch_api.billing.stripe_client import StripeClient, get_stripe_client
from paymatch_api.config.env import get_app_url
from paymatch_api.config.plans import BILLING_CYCLES, get_plan, get_stripe_price_id, is_paid_plan
from paymatch_api.db.models import Organization, UserProfile
from paymatch_api.results import ActionResult

logger = logging.getLogger(__name__)

MSG_NO_CUSTOMER = "No Stripe customer found for this organization"
MSG_ORG_NOT_FOUND = "Organization not found"


def _get_org(db: Session, org_id: str) -> Optional[Organization]:
    return db.query(Organization).filter(Organization.id == org_id).first()


def default_success_url() -> str:
    return f"{get_app_url()}/onboarding/success?session_id={{CHECKOUT_SESSION_ID}}"


def default_cancel_url() -> str:
    return f"{get_app_url()}/onboarding?step=2"


async def ensure_stripe_customer(
    db: Session, org: Organization, user_id: str, stripe_client: StripeClient
) -> str:
    """Return the organization's Stripe customer id, creating the customer if needed."""
    if org.stripe_customer_id:
        return org.stripe_customer_id

    profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
    customer = await stripe_client.create_customer(
        email=profile.email if profile is not None else None,
        name=org.company_name or org.name,
        metadata={"paymatch_org_id": org.id, "paymatch_user_id": user_id},
    )
    org.stripe_customer_id = customer["id"]
    db.commit()
    return org.stripe_customer_id


async def create_checkout_session(
    db: Session,
    org_id: str,
    user_id: str,
    plan: str,
    billing_cycle: str = "monthly",
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
    stripe_client: Optional[StripeClient] = None,
) -> ActionResult:
    """Start a Stripe Checkout subscription for a paid plan.

    Returns data ``{url, session_id}``. The free plan needs no checkout and is
    rejected, as are unknown plans and cycles.
    """
    if get_plan(plan) is None:
        return ActionResult.fail(f"Unknown plan: {plan}", error="INVALID_PLAN")
    if not is_paid_plan(plan):
        return ActionResult.fail("The free plan does not require checkout", error="INVALID_PLAN")
    if billing_cycle not in BILLING_CYCLES:
        return ActionResult.fail("Billing cycle must be monthly or annual", error="INVALID_BILLING_CYCLE")

    org = _get_org(db, org_id)
    if org is None:
        return ActionResult.fail(MSG_ORG_NOT_FOUND, error="NOT_FOUND")

    try:
        client = stripe_client or get_stripe_client()
        customer_id = await ensure_stripe_customer(db, org, user_id, client)
        metadata = {
            "org_id": org.id,
            "user_id": user_id,
            "plan_name": plan,
            "billing_cycle": billing_cycle,
        }
        session = await client.create_checkout_session(
            customer_id=customer_id,
            price_id=get_stripe_price_id(plan, billing_cycle),
            success_url=success_url or default_success_url(),
            cancel_url=cancel_url or default_cancel_url(),
            metadata=metadata,
        )
    except (httpx.HTTPError, ValueError, KeyError) as e:
        db.rollback()
        logger.error(
            "billing.checkout_failed",
            extra={"org_id": org_id, "plan": plan, "error_type": type(e).__name__, "error": str(e)},
        )
        return ActionResult.fail("Failed to create checkout session", error=type(e).__name__)

    logger.info(
        "billing.checkout_created",
        extra={"org_id": org_id, "plan": plan, "billing_cycle": billing_cycle, "session_id": session.get("id")},
    )
    return ActionResult.ok(
        "Checkout session created",
        redirect_to=session.get("url"),
        data={"url": session.get("url"), "session_id": session.get("id")},
    )


async def create_portal_session(
    db: Session,
    org_id: str,
    return_url: Optional[str] = None,
    stripe_client: Optional[StripeClient] = None,
) -> ActionResult:
    org = _get_org(db, org_id)
    if org is None:
        return ActionResult.fail(MSG_ORG_NOT_FOUND, error="NOT_FOUND")
    if not org.stripe_customer_id:
        return ActionResult.fail(MSG_NO_CUSTOMER, error="NO_CUSTOMER")

    try:
        client = stripe_client or get_stripe_client()
        portal = await client.create_billing_portal_session(
            customer_id=org.stripe_customer_id,
            return_url=return_url or f"{get_app_url()}/dashboard",
        )
    except (httpx.HTTPError, ValueError) as e:
        logger.error(
            "billing.portal_failed",
            extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
        )
        return ActionResult.fail("Failed to create portal session", error=type(e).__name__)

    return ActionResult.ok("Portal session created", redirect_to=portal.get("url"),
                           data={"url": portal.get("url")})


def update_organization_plan(
    db: Session,
    org_id: str,
    plan: str,
    billing_cycle: Optional[str] = None,
    stripe_customer_id: Optional[str] = None,
    stripe_subscription_id: Optional[str] = None,
    subscription_status: Optional[str] = None,
    redis_client: Optional[redis.Redis] = None,
) -> ActionResult:
    """Set the organization's plan.

    Paid plans keep existing Stripe ids unless new ones are given; the free
    plan clears the ids, the billing cycle and the subscription status.
    """
    if get_plan(plan) is None:
        return ActionResult.fail(f"Unknown plan: {plan}", error="INVALID_PLAN")

    org = _get_org(db, org_id)
    if org is None:
        return ActionResult.fail(MSG_ORG_NOT_FOUND, error="NOT_FOUND")

    org.plan = plan
    if is_paid_plan(plan):
        if billing_cycle:
            org.billing_cycle = billing_cycle
        if stripe_customer_id:
            org.stripe_customer_id = stripe_customer_id
        if stripe_subscription_id:
            org.stripe_subscription_id = stripe_subscription_id
        if subscription_status:
            org.subscription_status = subscription_status
    else:
        org.billing_cycle = None
        org.stripe_customer_id = None
        org.stripe_subscription_id = None
        org.subscription_status = subscription_status
    db.commit()

    invalidate_organization_members(db, org_id, CacheService(redis_client))
    logger.info(
        "billing.plan_updated",
        extra={"org_id": org_id, "plan": plan, "billing_cycle": org.billing_cycle},
    )
    return ActionResult.ok(f"Organization plan updated to {plan}")


def set_subscription_status(
    db: Session, org_id: str, status: str, redis_client: Optional[redis.Redis] = None
) -> bool:
    org = _get_org(db, org_id)
    if org is None:
        return False
    org.subscription_status = status
    db.commit()
    invalidate_organization_members(db, org_id, CacheService(redis_client))
    return True


def _summarize_invoice(invoice: dict[str, Any]) -> dict[str, Any]:
    lines = (invoice.get("lines") or {}).get("data") or []
    return {
        "id": invoice.get("id"),
        "amount_due": invoice.get("amount_due"),
        "currency": invoice.get("currency"),
        "period_start": invoice.get("period_start"),
        "period_end": invoice.get("period_end"),
        "subtotal": invoice.get("subtotal"),
        "tax": invoice.get("tax") or 0,
        "total": invoice.get("total"),
        "line_items": [
            {
                "description": line.get("description"),
                "amount": line.get("amount"),
                "quantity": line.get("quantity"),
            }
            for line in lines
        ],
    }


async def get_upcoming_invoice(
    db: Session, org_id: str, stripe_client: Optional[StripeClient] = None
) -> Optional[dict[str, Any]]:
    """Summary of the next invoice, or None when the organization has no customer.

    Raises:
        httpx.HTTPError: If Stripe fails
    """
    org = _get_org(db, org_id)
    if org is None or not org.stripe_customer_id:
        return None
    client = stripe_client or get_stripe_client()
    invoice = await client.retrieve_upcoming_invoice(org.stripe_customer_id)
    return _summarize_invoice(invoice)
