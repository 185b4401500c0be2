"""Plan catalogue and Stripe price resolution."""

import pytest

from paymatch_api.config.plans import (
    PLANS,
    annual_savings_percent,
    format_price,
    get_plan_by_price_id,
    get_plan_price,
    get_stripe_price_id,
    is_paid_plan,
    is_within_limit,
)


def test_catalogue():
    assert list(PLANS) == ["free", "freelancer", "business", "enterprise"]
    assert PLANS["business"].featured
    assert get_plan_price("enterprise", "annual") == 144000
    assert get_plan_price("freelancer", "monthly") == 500


def test_only_free_is_unpaid():
    assert not is_paid_plan("free")
    assert all(is_paid_plan(p) for p in ("freelancer", "business", "enterprise"))
    assert not is_paid_plan("unknown")


def test_price_ids_default_and_env_override(monkeypatch):
    assert get_stripe_price_id("business", "monthly") == "price_business_monthly"
    assert get_stripe_price_id("free", "monthly") is None

    monkeypatch.setenv("STRIPE_BUSINESS_ANNUAL_PRICE_ID", "price_1AbC")
    assert get_stripe_price_id("business", "annual") == "price_1AbC"
    assert get_plan_by_price_id("price_1AbC") == ("business", "annual")


def test_price_id_rejects_unknown_inputs():
    with pytest.raises(ValueError):
        get_stripe_price_id("gold", "monthly")
    with pytest.raises(ValueError):
        get_stripe_price_id("business", "weekly")


def test_reverse_lookup_unknown_price():
    assert get_plan_by_price_id("price_nope") is None


def test_annual_savings():
    assert annual_savings_percent("free") == 0
    assert annual_savings_percent("business") == 20
    assert annual_savings_percent("freelancer") == 20


def test_format_price():
    assert format_price(4800) == "CHF 48.00"


def test_limits():
    assert is_within_limit("free", "invoices", 4)
    assert not is_within_limit("free", "invoices", 5)
    assert is_within_limit("business", "clients", 10_000)
    assert not is_within_limit("business", "users", 10)
