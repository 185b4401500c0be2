"""Deferred registration: pending rows, verification links, account creation."""

import uuid
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from paymatch_api.auth.pending_registration import (
    MSG_ACCOUNT_EXISTS,
    MSG_ALREADY_PENDING,
    MSG_EXPIRED_LINK,
    MSG_INVALID_LINK,
    PendingRegistrationData,
    check_pending_registration,
    cleanup_expired_pending_registrations,
    complete_pending_registration,
    delete_pending_registration,
    store_pending_registration,
    verify_pending_registration,
)
from paymatch_api.auth.registration import (
    MSG_REGISTERED,
    RegisterUserData,
    complete_registration,
    register_user,
    resend_verification_email,
)
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.tokens import as_utc, utcnow
from paymatch_api.db.models import (
    AuditLog,
    Organization,
    OrganizationUser,
    PendingRegistration,
    UserProfile,
)
from paymatch_api.email.email_service import EmailSendResult


def _admin(existing_users=None, created_user_id=None):
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = existing_users or []
    admin.auth.admin.create_user.return_value = SimpleNamespace(
        user=SimpleNamespace(id=created_user_id or str(uuid.uuid4()))
    )
    return admin


def _data(email="a@b.com"):
    return PendingRegistrationData(email=email, first_name="Anna", last_name="Muster")


def _expire(db, email):
    row = db.query(PendingRegistration).filter_by(email=email).one()
    row.expires_at = utcnow() - timedelta(minutes=1)
    db.commit()


# ===========================================================================
# pending_registration
# ===========================================================================


def test_store_returns_token_with_24h_expiry(db_session):
    result = store_pending_registration(db_session, _data(), admin_client=_admin())

    assert result.success
    row = db_session.query(PendingRegistration).one()
    assert row.verification_token == result.data["verification_token"]
    remaining = as_utc(row.expires_at) - utcnow()
    assert timedelta(hours=23, minutes=59) < remaining <= timedelta(hours=24)


def test_duplicate_pending_registration_rejected(db_session):
    store_pending_registration(db_session, _data(), admin_client=_admin())
    second = store_pending_registration(db_session, _data("A@B.com"), admin_client=_admin())

    assert second.success is False
    assert second.message == MSG_ALREADY_PENDING
    assert db_session.query(PendingRegistration).count() == 1


def test_expired_pending_registration_is_replaced(db_session):
    first = store_pending_registration(db_session, _data(), admin_client=_admin())
    _expire(db_session, "a@b.com")

    second = store_pending_registration(db_session, _data(), admin_client=_admin())

    assert second.success
    assert second.data["verification_token"] != first.data["verification_token"]
    assert db_session.query(PendingRegistration).count() == 1


def test_existing_provider_user_rejected(db_session):
    admin = _admin(existing_users=[SimpleNamespace(id="u1", email="a@b.com")])
    result = store_pending_registration(db_session, _data(), admin_client=admin)

    assert result.success is False
    assert result.message == MSG_ACCOUNT_EXISTS
    assert db_session.query(PendingRegistration).count() == 0


def test_verify_unknown_token(db_session):
    assert verify_pending_registration(db_session, "nope").message == MSG_INVALID_LINK
    assert verify_pending_registration(db_session, "").message == MSG_INVALID_LINK


def test_verify_expired_token_deletes_row(db_session):
    token = store_pending_registration(db_session, _data(), admin_client=_admin()).data["verification_token"]
    _expire(db_session, "a@b.com")

    result = verify_pending_registration(db_session, token)

    assert result.success is False
    assert result.message == MSG_EXPIRED_LINK
    assert db_session.query(PendingRegistration).count() == 0


def test_verify_valid_token_returns_pending_data(db_session):
    token = store_pending_registration(db_session, _data(), admin_client=_admin()).data["verification_token"]
    result = verify_pending_registration(db_session, token)

    assert result.success
    assert result.data["email"] == "a@b.com"
    assert result.data["first_name"] == "Anna"


def test_complete_creates_owner_organization_and_consumes_token(db_session):
    user_id = str(uuid.uuid4())
    token = store_pending_registration(db_session, _data(), admin_client=_admin()).data["verification_token"]
    admin = _admin(created_user_id=user_id)

    result = complete_pending_registration(db_session, token, "Abcdef1!", admin_client=admin)

    assert result.success
    assert result.redirect_to == "/login"
    payload = admin.auth.admin.create_user.call_args[0][0]
    assert payload["email"] == "a@b.com"
    assert payload["email_confirm"] is True

    assert db_session.query(PendingRegistration).count() == 0
    assert db_session.query(UserProfile).filter_by(id=user_id).one().email == "a@b.com"
    member = db_session.query(OrganizationUser).filter_by(user_id=user_id).one()
    assert member.role == "owner"
    org = db_session.query(Organization).filter_by(id=member.organization_id).one()
    assert org.onboarding_completed is False

    # Token cannot be consumed twice
    again = complete_pending_registration(db_session, token, "Abcdef1!", admin_client=admin)
    assert again.success is False
    assert again.message == MSG_INVALID_LINK


def test_check_and_delete_pending(db_session):
    store_pending_registration(db_session, _data(), admin_client=_admin())

    status = check_pending_registration(db_session, "a@b.com")
    assert status["exists"] is True
    assert status["expired"] is False

    assert delete_pending_registration(db_session, "a@b.com") is True
    assert check_pending_registration(db_session, "a@b.com")["exists"] is False


def test_cleanup_expired_counts_only_expired(db_session):
    store_pending_registration(db_session, _data("old@b.com"), admin_client=_admin())
    store_pending_registration(db_session, _data("new@b.com"), admin_client=_admin())
    _expire(db_session, "old@b.com")

    assert cleanup_expired_pending_registrations(db_session) == 1
    assert [r.email for r in db_session.query(PendingRegistration).all()] == ["new@b.com"]


# ===========================================================================
# registration actions
# ===========================================================================


@pytest.mark.asyncio
async def test_register_stores_pending_row_and_sends_link(db_session, fake_redis, email_service):
    data = RegisterUserData(first_name="Anna", last_name="Muster", email="a@b.com", password="Abcdef1!")

    result = await register_user(
        db_session, data, ClientInfo(ip_address="198.51.100.1"), fake_redis, _admin(), email_service
    )

    assert result.success
    assert result.message == MSG_REGISTERED
    row = db_session.query(PendingRegistration).one()
    send_kwargs = email_service.send.call_args.kwargs
    assert send_kwargs["to"] == "a@b.com"
    assert send_kwargs["template"] == "verification"
    assert send_kwargs["context"]["verification_url"].endswith(
        f"/verify-email?token={row.verification_token}"
    )

    second = await register_user(
        db_session, data, ClientInfo(ip_address="198.51.100.1"), fake_redis, _admin(), email_service
    )
    assert second.success is False
    assert second.message == MSG_ALREADY_PENDING


@pytest.mark.asyncio
async def test_register_rejects_weak_password(db_session, fake_redis, email_service):
    data = RegisterUserData(first_name="Anna", last_name="Muster", email="a@b.com", password="abcdefgh")

    result = await register_user(db_session, data, None, fake_redis, _admin(), email_service)

    assert result.success is False
    assert result.error == "VALIDATION_ERROR"
    assert "password" in result.data["field_errors"]
    email_service.send.assert_not_called()


@pytest.mark.asyncio
async def test_register_email_failure_keeps_registration(db_session, fake_redis, email_service):
    email_service.send.return_value = EmailSendResult(success=False, error="resend down")
    data = RegisterUserData(first_name="Anna", last_name="Muster", email="a@b.com", password="Abcdef1!")

    result = await register_user(db_session, data, None, fake_redis, _admin(), email_service)

    assert result.success
    assert db_session.query(PendingRegistration).count() == 1
    rows = db_session.query(AuditLog).filter_by(action="user_registration").all()
    assert [row.status for row in rows] == ["failure"]
    assert rows[0].error_message == "Failed to send verification email"


@pytest.mark.asyncio
async def test_register_rate_limited_after_auth_operations_limit(db_session, fake_redis, email_service):
    client = ClientInfo(ip_address="198.51.100.9")
    for i in range(10):
        data = RegisterUserData(
            first_name="Anna", last_name="Muster", email=f"user{i}@b.com", password="Abcdef1!"
        )
        await register_user(db_session, data, client, fake_redis, _admin(), email_service)

    data = RegisterUserData(first_name="Anna", last_name="Muster", email="late@b.com", password="Abcdef1!")
    result = await register_user(db_session, data, client, fake_redis, _admin(), email_service)

    assert result.success is False
    assert result.error == "RATE_LIMITED"
    assert result.data["retry_after"] > 0
    assert db_session.query(AuditLog).filter_by(action="rate_limit_hit").count() >= 1


def test_complete_registration_rejects_weak_password(db_session):
    result = complete_registration(db_session, "token", "short", admin_client=_admin())
    assert result.success is False
    assert result.error == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_resend_rotates_token(db_session, fake_redis, email_service):
    old = store_pending_registration(db_session, _data(), admin_client=_admin()).data["verification_token"]

    result = await resend_verification_email(db_session, "a@b.com", None, fake_redis, email_service)

    assert result.success
    row = db_session.query(PendingRegistration).one()
    assert row.verification_token != old
    assert email_service.send.await_count == 1


@pytest.mark.asyncio
async def test_resend_without_pending_row_fails(db_session, fake_redis, email_service):
    result = await resend_verification_email(db_session, "ghost@b.com", None, fake_redis, email_service)
    assert result.success is False
    email_service.send.assert_not_called()
