"""Server session derivation and gate ordering."""

import uuid

from conftest import create_member, make_supabase_client, make_supabase_user

from paymatch_api.auth.cache import CacheService
from paymatch_api.auth.session import (
    DASHBOARD_OPTIONS,
    ONBOARDING_OPTIONS,
    PUBLIC_OPTIONS,
    SessionErrorType,
    SessionOptions,
    get_public_session,
    get_server_session,
)


def test_missing_token_is_unauthenticated(db_session, fake_redis):
    result = get_server_session(db_session, None, DASHBOARD_OPTIONS, redis_client=fake_redis)
    assert result.session is None
    assert result.error.type == SessionErrorType.UNAUTHENTICATED
    assert result.error.redirect_to == "/login"


def test_rejected_token_is_unauthenticated(db_session, fake_redis):
    result = get_server_session(
        db_session, "bad", PUBLIC_OPTIONS, redis_client=fake_redis,
        supabase_client=make_supabase_client(None),
    )
    assert result.error.type == SessionErrorType.UNAUTHENTICATED


def test_unverified_email_fails_first(db_session, fake_redis):
    user = make_supabase_user(confirmed=False)

    result = get_server_session(
        db_session, "tok", DASHBOARD_OPTIONS, redis_client=fake_redis,
        supabase_client=make_supabase_client(user),
    )

    assert result.error.type == SessionErrorType.EMAIL_NOT_VERIFIED
    assert result.error.redirect_to == "/verify-email"
    assert result.session.is_email_verified is False


def test_require_organization_without_membership_redirects_to_onboarding(db_session, fake_redis):
    user = make_supabase_user()
    options = SessionOptions(require_organization=True)

    result = get_server_session(
        db_session, "tok", options, redis_client=fake_redis,
        supabase_client=make_supabase_client(user),
    )

    assert result.error.type == SessionErrorType.NO_ORGANIZATION
    assert result.error.redirect_to == "/onboarding"
    assert result.session.has_organization is False


def test_dashboard_requires_completed_onboarding(db_session, fake_redis):
    user = make_supabase_user()
    create_member(db_session, user_id=user.id, onboarding_completed=False)

    result = get_server_session(
        db_session, "tok", DASHBOARD_OPTIONS, redis_client=fake_redis,
        supabase_client=make_supabase_client(user),
    )

    assert result.error.type == SessionErrorType.ONBOARDING_INCOMPLETE
    assert result.session.has_organization is True


def test_onboarding_session_allows_incomplete_onboarding(db_session, fake_redis):
    user = make_supabase_user()
    _, org = create_member(db_session, user_id=user.id)

    result = get_server_session(
        db_session, "tok", ONBOARDING_OPTIONS, redis_client=fake_redis,
        supabase_client=make_supabase_client(user),
    )

    assert result.error is None
    assert result.session.organization_id == org.id
    assert result.session.role == "owner"
    assert result.session.profile["first_name"] == "Anna"


def test_completed_member_passes_dashboard_gate_and_is_cached(db_session, fake_redis):
    user = make_supabase_user()
    _, org = create_member(db_session, user_id=user.id, onboarding_completed=True)

    result = get_server_session(
        db_session, "tok", DASHBOARD_OPTIONS, redis_client=fake_redis,
        supabase_client=make_supabase_client(user),
    )

    assert result.error is None
    assert result.session.has_completed_onboarding is True
    cache = CacheService(fake_redis)
    assert cache.get_cached_organization(user.id)["id"] == org.id
    assert cache.get_cached_user_profile(user.id)["email"] == "anna@example.ch"


def test_public_session_redirect_targets(db_session, fake_redis):
    unverified = make_supabase_user(confirmed=False)
    result = get_public_session(
        db_session, "tok", redis_client=fake_redis, supabase_client=make_supabase_client(unverified)
    )
    assert result.error is None
    assert result.redirect_to == "/verify-email"

    verified = make_supabase_user(user_id=str(uuid.uuid4()), email="ben@example.ch")
    create_member(db_session, user_id=verified.id, email="ben@example.ch", onboarding_completed=True)
    result = get_public_session(
        db_session, "tok", redis_client=fake_redis, supabase_client=make_supabase_client(verified)
    )
    assert result.redirect_to == "/dashboard"
