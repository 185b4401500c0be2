"""Subscription plans (CHF) and Stripe price resolution.

Prices are integer CHF cents. Limits use -1 for unlimited; storage is in MB.
"""

import os
from typing import Literal, Optional

from pydantic import BaseModel

PlanName = Literal["free", "freelancer", "business", "enterprise"]
BillingCycle = Literal["monthly", "annual"]

BILLING_CYCLES: tuple[str, ...] = ("monthly", "annual")
CURRENCY = "CHF"
UNLIMITED = -1


class PlanLimits(BaseModel):
    """Usage limits and feature flags of a plan."""

    invoices: int
    clients: int
    users: int
    storage_mb: int
    custom_branding: bool = False
    team_management: bool = False
    advanced_reporting: bool = False
    priority_support: bool = False
    dedicated_support: bool = False
    early_access: bool = False
    custom_requests: bool = False


class PlanPricing(BaseModel):
    """Plan price in CHF cents per billing cycle."""

    monthly: int
    annual: int


class PlanConfig(BaseModel):
    """Plan definition."""

    name: str
    display_name: str
    featured: bool = False
    pricing: PlanPricing
    limits: PlanLimits


PLANS: dict[str, PlanConfig] = {
    "free": PlanConfig(
        name="free",
        display_name="Free",
        pricing=PlanPricing(monthly=0, annual=0),
        limits=PlanLimits(invoices=5, clients=10, users=1, storage_mb=5),
    ),
    "freelancer": PlanConfig(
        name="freelancer",
        display_name="Freelancer",
        pricing=PlanPricing(monthly=500, annual=4800),
        limits=PlanLimits(
            invoices=UNLIMITED,
            clients=50,
            users=1,
            storage_mb=50,
            priority_support=True,
        ),
    ),
    "business": PlanConfig(
        name="business",
        display_name="Business",
        featured=True,
        pricing=PlanPricing(monthly=5000, annual=48000),
        limits=PlanLimits(
            invoices=UNLIMITED,
            clients=UNLIMITED,
            users=10,
            storage_mb=100,
            custom_branding=True,
            team_management=True,
            advanced_reporting=True,
            priority_support=True,
        ),
    ),
    "enterprise": PlanConfig(
        name="enterprise",
        display_name="Enterprise",
        pricing=PlanPricing(monthly=15000, annual=144000),
        limits=PlanLimits(
            invoices=UNLIMITED,
            clients=UNLIMITED,
            users=UNLIMITED,
            storage_mb=150,
            custom_branding=True,
            team_management=True,
            advanced_reporting=True,
            priority_support=True,
            dedicated_support=True,
            early_access=True,
            custom_requests=True,
        ),
    ),
}


def get_plan(plan_name: str) -> Optional[PlanConfig]:
    """Return the plan config, or None for unknown plan names."""
    return PLANS.get(plan_name)


def is_paid_plan(plan_name: str) -> bool:
    plan = get_plan(plan_name)
    return plan is not None and plan.pricing.monthly > 0


def get_stripe_price_id(plan_name: str, billing_cycle: str) -> Optional[str]:
    """Resolve the Stripe price id for a plan and billing cycle.

    Reads STRIPE_{PLAN}_{MONTHLY|ANNUAL}_PRICE_ID; defaults to
    ``price_{plan}_{cycle}``. The free plan has no price.

    Raises:
        ValueError: If plan or billing cycle is unknown
    """
    if plan_name not in PLANS:
        raise ValueError(f"Unknown plan: {plan_name}")
    if billing_cycle not in BILLING_CYCLES:
        raise ValueError(f"Unknown billing cycle: {billing_cycle}")
    if not is_paid_plan(plan_name):
        return None

    env_key = f"STRIPE_{plan_name.upper()}_{billing_cycle.upper()}_PRICE_ID"
    return os.getenv(env_key, f"price_{plan_name}_{billing_cycle}")


def get_plan_by_price_id(price_id: str) -> Optional[tuple[str, str]]:
    """Reverse lookup: Stripe price id -> (plan_name, billing_cycle)."""
    for plan_name in PLANS:
        if not is_paid_plan(plan_name):
            continue
        for billing_cycle in BILLING_CYCLES:
            if get_stripe_price_id(plan_name, billing_cycle) == price_id:
                return plan_name, billing_cycle
    return None


def get_plan_price(plan_name: str, billing_cycle: str) -> int:
    """Price in CHF cents for the given cycle."""
    plan = PLANS[plan_name]
    return plan.pricing.annual if billing_cycle == "annual" else plan.pricing.monthly


def annual_savings_percent(plan_name: str) -> int:
    """Percent saved by paying annually instead of 12 monthly payments."""
    plan = PLANS[plan_name]
    yearly_at_monthly = plan.pricing.monthly * 12
    if yearly_at_monthly == 0:
        return 0
    return round((yearly_at_monthly - plan.pricing.annual) * 100 / yearly_at_monthly)


def format_price(cents: int) -> str:
    """Format CHF cents for display, e.g. ``CHF 48.00``."""
    return f"{CURRENCY} {cents / 100:.2f}"


def is_within_limit(plan_name: str, resource: str, current_count: int) -> bool:
    """Check whether adding one more ``resource`` stays within the plan limit.

    Args:
        plan_name: Plan name
        resource: One of invoices, clients, users, storage_mb
        current_count: Current usage

    Returns:
        True if the next unit is allowed
    """
    plan = PLANS[plan_name]
    limit = getattr(plan.limits, resource)
    if limit == UNLIMITED:
        return True
    return current_count < limit
