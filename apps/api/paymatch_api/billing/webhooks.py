"""Stripe event reconciliation.

Handlers raise on unexpected failures so the route can mark the dedup row
failed and return 500, letting Stripe retry.
"""

import logging
from typing import Any, Optional

import redis
from sqlalchemy.orm import Session

from paymatch_api.billing.checkout import set_subscription_status, update_organization_plan
from paymatch_api.billing.stripe_client import StripeClient, get_stripe_client
from paymatch_api.config.plans import get_plan_by_price_id

logger = logging.getLogger(__name__)

HANDLED_EVENT_TYPES = (
    "checkout.session.completed",
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)


class WebhookProcessingError(Exception):
    """A plan update was rejected while applying a Stripe event."""


def _metadata(obj: dict[str, Any]) -> dict[str, str]:
    return obj.get("metadata") or {}


def _subscription_price_id(subscription: dict[str, Any]) -> Optional[str]:
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def resolve_subscription_plan(subscription: dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """(plan, billing_cycle) from subscription metadata, else from its price id."""
    metadata = _metadata(subscription)
    if metadata.get("plan_name"):
        return metadata["plan_name"], metadata.get("billing_cycle")
    price_id = _subscription_price_id(subscription)
    if price_id:
        found = get_plan_by_price_id(price_id)
        if found:
            return found
    return None, None


def _apply_plan(db: Session, org_id: str, plan: str, redis_client: Optional[redis.Redis], **kwargs: Any) -> None:
    result = update_organization_plan(db, org_id, plan, redis_client=redis_client, **kwargs)
    if not result.success:
        raise WebhookProcessingError(result.message)


def handle_checkout_completed(db: Session, session: dict[str, Any], redis_client=None) -> None:
    metadata = _metadata(session)
    org_id, plan = metadata.get("org_id"), metadata.get("plan_name")
    if not org_id or not plan:
        logger.warning("WEBHOOK_CHECKOUT_MISSING_METADATA", extra={"session_id": session.get("id")})
        return
    _apply_plan(
        db, org_id, plan, redis_client,
        billing_cycle=metadata.get("billing_cycle"),
        stripe_customer_id=session.get("customer"),
        stripe_subscription_id=session.get("subscription"),
        subscription_status="active",
    )


def handle_subscription_upserted(db: Session, subscription: dict[str, Any], redis_client=None) -> None:
    org_id = _metadata(subscription).get("org_id")
    plan, billing_cycle = resolve_subscription_plan(subscription)
    if not org_id or not plan:
        logger.warning(
            "WEBHOOK_SUBSCRIPTION_UNRESOLVED",
            extra={"subscription_id": subscription.get("id")},
        )
        return
    _apply_plan(
        db, org_id, plan, redis_client,
        billing_cycle=billing_cycle,
        stripe_customer_id=subscription.get("customer"),
        stripe_subscription_id=subscription.get("id"),
        subscription_status=subscription.get("status"),
    )


def handle_subscription_deleted(db: Session, subscription: dict[str, Any], redis_client=None) -> None:
    org_id = _metadata(subscription).get("org_id")
    if not org_id:
        logger.warning(
            "WEBHOOK_SUBSCRIPTION_UNRESOLVED",
            extra={"subscription_id": subscription.get("id")},
        )
        return
    _apply_plan(db, org_id, "free", redis_client, subscription_status="canceled")


async def handle_invoice_payment(
    db: Session,
    invoice: dict[str, Any],
    succeeded: bool,
    stripe_client: StripeClient,
    redis_client=None,
) -> None:
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        return
    subscription = await stripe_client.retrieve_subscription(subscription_id)
    org_id = _metadata(subscription).get("org_id")
    if not org_id:
        return

    if succeeded:
        logger.info(
            "WEBHOOK_PAYMENT_SUCCEEDED",
            extra={"org_id": org_id, "invoice_id": invoice.get("id")},
        )
        return

    logger.warning(
        "WEBHOOK_PAYMENT_FAILED",
        extra={"org_id": org_id, "invoice_id": invoice.get("id")},
    )
    set_subscription_status(db, org_id, "past_due", redis_client)


async def process_stripe_event(
    db: Session,
    event: dict[str, Any],
    stripe_client: Optional[StripeClient] = None,
    redis_client: Optional[redis.Redis] = None,
) -> bool:
    """Apply one Stripe event. Returns False for event types that are ignored."""
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type == "checkout.session.completed":
        handle_checkout_completed(db, obj, redis_client)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        handle_subscription_upserted(db, obj, redis_client)
    elif event_type == "customer.subscription.deleted":
        handle_subscription_deleted(db, obj, redis_client)
    elif event_type in ("invoice.payment_succeeded", "invoice.payment_failed"):
        await handle_invoice_payment(
            db, obj, event_type == "invoice.payment_succeeded",
            stripe_client or get_stripe_client(), redis_client,
        )
    else:
        logger.info("WEBHOOK_EVENT_IGNORED", extra={"event_type": event_type, "event_id": event.get("id")})
        return False
    return True
