"""Password login, logout, magic links and password reset."""

import uuid
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import create_member

from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.login import (
    MSG_EMAIL_NOT_CONFIRMED,
    MSG_INVALID_CREDENTIALS,
    MSG_TOO_MANY_ATTEMPTS,
    login_user,
    logout_user,
)
from paymatch_api.auth.magic_link import MSG_INVALID_MAGIC_LINK, MSG_MAGIC_LINK_SENT, send_magic_link, verify_magic_link
from paymatch_api.auth.password_reset import (
    MSG_INVALID_RESET_TOKEN,
    MSG_RESET_DONE,
    MSG_RESET_RATE_LIMITED,
    MSG_RESET_SENT,
    PasswordResetToken,
    password_reset_key,
    request_password_reset,
    reset_password,
    verify_reset_token,
)
from paymatch_api.auth.session_timeout import SessionTimeoutService
from paymatch_api.auth.tokens import session_id_from_access_token, utcnow
from paymatch_api.db.models import AuditLog, PendingRegistration
from paymatch_api.db.redis_client import set_json

CLIENT = ClientInfo(ip_address="198.51.100.30", user_agent="pytest")


def _auth_response(user_id, email="anna@example.ch", confirmed=True, access_token="header.e30.sig"):
    return SimpleNamespace(
        user=SimpleNamespace(
            id=user_id,
            email=email,
            email_confirmed_at="2026-01-01T00:00:00Z" if confirmed else None,
        ),
        session=SimpleNamespace(access_token=access_token, refresh_token="refresh", expires_at=1893456000),
    )


class EmailNotConfirmedError(Exception):
    code = "email_not_confirmed"


# ===========================================================================
# login / logout
# ===========================================================================


def test_login_success_redirects_to_onboarding_and_tracks_session(db_session, fake_redis):
    user_id = str(uuid.uuid4())
    create_member(db_session, user_id=user_id)
    supabase = MagicMock()
    supabase.auth.sign_in_with_password.return_value = _auth_response(user_id)

    result = login_user(db_session, "Anna@Example.ch", "Abcdef1!", False, CLIENT, fake_redis, supabase)

    assert result.success
    assert result.redirect_to == "/onboarding"
    assert result.data["access_token"] == "header.e30.sig"
    supabase.auth.sign_in_with_password.assert_called_once_with(
        {"email": "anna@example.ch", "password": "Abcdef1!"}
    )
    session_id = session_id_from_access_token("header.e30.sig")
    assert SessionTimeoutService(fake_redis).get_session_info(session_id).user_id == user_id
    actions = {row.action for row in db_session.query(AuditLog).all()}
    assert {"user_login", "session_created"} <= actions


def test_login_completed_member_redirects_to_dashboard(db_session, fake_redis):
    user_id = str(uuid.uuid4())
    create_member(db_session, user_id=user_id, onboarding_completed=True)
    supabase = MagicMock()
    supabase.auth.sign_in_with_password.return_value = _auth_response(user_id)

    result = login_user(db_session, "anna@example.ch", "Abcdef1!", True, CLIENT, fake_redis, supabase)

    assert result.redirect_to == "/dashboard"


def test_login_invalid_credentials(db_session, fake_redis):
    supabase = MagicMock()
    supabase.auth.sign_in_with_password.side_effect = Exception("Invalid login credentials")

    result = login_user(db_session, "anna@example.ch", "wrong", False, CLIENT, fake_redis, supabase)

    assert result.success is False
    assert result.message == MSG_INVALID_CREDENTIALS
    assert result.error == "INVALID_CREDENTIALS"


def test_login_unconfirmed_email_redirects_to_verification(db_session, fake_redis):
    supabase = MagicMock()
    supabase.auth.sign_in_with_password.side_effect = EmailNotConfirmedError("Email not confirmed")

    result = login_user(db_session, "anna@example.ch", "Abcdef1!", False, CLIENT, fake_redis, supabase)

    assert result.message == MSG_EMAIL_NOT_CONFIRMED
    assert result.redirect_to == "/verify-email"


def test_sixth_login_attempt_is_rate_limited(db_session, fake_redis):
    supabase = MagicMock()
    supabase.auth.sign_in_with_password.side_effect = Exception("Invalid login credentials")

    for _ in range(5):
        login_user(db_session, "anna@example.ch", "wrong", False, CLIENT, fake_redis, supabase)
    result = login_user(db_session, "anna@example.ch", "wrong", False, CLIENT, fake_redis, supabase)

    assert result.message == MSG_TOO_MANY_ATTEMPTS
    assert result.error == "RATE_LIMITED"
    assert supabase.auth.sign_in_with_password.call_count == 5


def test_successful_login_clears_email_counter(db_session, fake_redis):
    user_id = str(uuid.uuid4())
    supabase = MagicMock()
    supabase.auth.sign_in_with_password.side_effect = [Exception("bad")] * 4 + [_auth_response(user_id)]

    for _ in range(5):
        login_user(db_session, "anna@example.ch", "pw", False, CLIENT, fake_redis, supabase)

    supabase.auth.sign_in_with_password.side_effect = Exception("bad")
    result = login_user(db_session, "anna@example.ch", "pw", False, CLIENT, fake_redis, supabase)
    assert result.error == "INVALID_CREDENTIALS"


def test_logout_drops_session_even_when_provider_fails(db_session, fake_redis):
    service = SessionTimeoutService(fake_redis)
    token = "header.e30.sig"
    session_id = session_id_from_access_token(token)
    service.update_session_activity(session_id, "user-1")
    admin = MagicMock()
    admin.auth.admin.sign_out.side_effect = Exception("provider down")

    result = logout_user(db_session, token, "user-1", CLIENT, fake_redis, admin)

    assert result.success
    assert result.redirect_to == "/login"
    assert service.get_session_info(session_id) is None
    assert db_session.query(AuditLog).filter_by(action="session_invalidated").count() == 1


# ===========================================================================
# magic link
# ===========================================================================


@pytest.mark.asyncio
async def test_magic_link_unknown_email_does_not_reveal(db_session, fake_redis, email_service):
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = []

    result = await send_magic_link(db_session, "ghost@example.ch", CLIENT, fake_redis, admin, email_service)

    assert result.success
    assert result.message == MSG_MAGIC_LINK_SENT
    email_service.send.assert_not_called()


@pytest.mark.asyncio
async def test_magic_link_sent_to_known_user(db_session, fake_redis, email_service):
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = [
        SimpleNamespace(id="user-1", email="anna@example.ch", user_metadata={"first_name": "Anna"})
    ]
    admin.auth.admin.generate_link.return_value = SimpleNamespace(
        properties=SimpleNamespace(hashed_token="hash123")
    )

    result = await send_magic_link(db_session, "anna@example.ch", CLIENT, fake_redis, admin, email_service)

    assert result.message == MSG_MAGIC_LINK_SENT
    context = email_service.send.call_args.kwargs["context"]
    assert context["first_name"] == "Anna"
    assert "token_hash=hash123" in context["magic_link_url"]
    assert db_session.query(AuditLog).filter_by(action="magic_link_sent").count() == 1


def test_verify_magic_link_failure(db_session, fake_redis):
    supabase = MagicMock()
    supabase.auth.verify_otp.side_effect = Exception("Token has expired")

    result = verify_magic_link(db_session, "hash", "magiclink", CLIENT, supabase, fake_redis)

    assert result.success is False
    assert result.message == MSG_INVALID_MAGIC_LINK


def test_verify_magic_link_success(db_session, fake_redis):
    supabase = MagicMock()
    supabase.auth.verify_otp.return_value = _auth_response("user-1")

    result = verify_magic_link(db_session, "hash", "magiclink", CLIENT, supabase, fake_redis)

    assert result.success
    assert result.data["refresh_token"] == "refresh"
    supabase.auth.verify_otp.assert_called_once_with({"token_hash": "hash", "type": "magiclink"})


def test_magic_link_session_is_tracked_for_timeout(db_session, fake_redis):
    user_id = str(uuid.uuid4())
    supabase = MagicMock()
    supabase.auth.verify_otp.return_value = _auth_response(user_id, access_token="ml.e30.sig")

    result = verify_magic_link(db_session, "hash", "magiclink", CLIENT, supabase, fake_redis)

    session_id = session_id_from_access_token("ml.e30.sig")
    assert result.data["session_id"] == session_id
    timeout = SessionTimeoutService(fake_redis).check_session_timeout(session_id)
    assert timeout.is_expired is False
    assert timeout.time_until_expiry > 0
    assert SessionTimeoutService(fake_redis).extend_session(session_id, user_id) is True
    assert db_session.query(AuditLog).filter_by(action="session_created", user_id=user_id).count() == 1


# ===========================================================================
# password reset
# ===========================================================================


def _reset_admin():
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = [
        SimpleNamespace(id="user-1", email="anna@example.ch", user_metadata={"first_name": "Anna"})
    ]
    return admin


@pytest.mark.asyncio
async def test_request_reset_stores_token_and_sends_email(db_session, fake_redis, email_service):
    result = await request_password_reset(
        db_session, "anna@example.ch", CLIENT, fake_redis, _reset_admin(), email_service
    )

    assert result.message == MSG_RESET_SENT
    reset_url = email_service.send.call_args.kwargs["context"]["reset_url"]
    token = reset_url.split("token=")[1]
    assert verify_reset_token(fake_redis, token) == {"valid": True}
    assert 0 < fake_redis.ttl(password_reset_key(token)) <= 3600


@pytest.mark.asyncio
async def test_request_reset_unknown_email_same_message(db_session, fake_redis, email_service):
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = []

    result = await request_password_reset(db_session, "ghost@example.ch", CLIENT, fake_redis, admin, email_service)

    assert result.success
    assert result.message == MSG_RESET_SENT
    email_service.send.assert_not_called()


def _pending(db, expires_in=timedelta(hours=12)):
    row = PendingRegistration(
        email="nina@example.ch",
        first_name="Nina",
        last_name="Keller",
        verification_token="old-token",
        expires_at=utcnow() + expires_in,
    )
    db.add(row)
    db.commit()
    return row


@pytest.mark.asyncio
async def test_reset_for_pending_registration_resends_verification_link(db_session, fake_redis, email_service):
    pending = _pending(db_session)
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = []

    result = await request_password_reset(db_session, "nina@example.ch", CLIENT, fake_redis, admin, email_service)

    assert result.message == MSG_RESET_SENT
    db_session.refresh(pending)
    assert pending.verification_token != "old-token"
    kwargs = email_service.send.call_args.kwargs
    assert kwargs["template"] == "verification"
    assert pending.verification_token in kwargs["context"]["verification_url"]
    entry = db_session.query(AuditLog).filter_by(action="password_reset").one()
    assert entry.status == "success"
    assert entry.details["pending_registration"] is True


@pytest.mark.asyncio
async def test_reset_for_expired_pending_registration_deletes_it(db_session, fake_redis, email_service):
    _pending(db_session, expires_in=timedelta(hours=-1))
    admin = MagicMock()
    admin.auth.admin.list_users.return_value = []

    result = await request_password_reset(db_session, "nina@example.ch", CLIENT, fake_redis, admin, email_service)

    assert result.message == MSG_RESET_SENT
    assert db_session.query(PendingRegistration).count() == 0
    email_service.send.assert_not_called()


@pytest.mark.asyncio
async def test_fourth_reset_request_is_rate_limited(db_session, fake_redis, email_service):
    for _ in range(3):
        await request_password_reset(
            db_session, "anna@example.ch", CLIENT, fake_redis, _reset_admin(), email_service
        )
    result = await request_password_reset(
        db_session, "anna@example.ch", CLIENT, fake_redis, _reset_admin(), email_service
    )

    assert result.message == MSG_RESET_RATE_LIMITED
    assert result.error == "RATE_LIMITED"


def _store_reset_token(fake_redis, token="tok123", expires_in=timedelta(hours=1)):
    record = PasswordResetToken(
        token=token, user_id="user-1", email="anna@example.ch",
        expires_at=(utcnow() + expires_in).isoformat(),
    )
    set_json(fake_redis, password_reset_key(token), record.model_dump(), 3600)
    return token


def test_reset_password_updates_provider_and_consumes_token(db_session, fake_redis):
    token = _store_reset_token(fake_redis)
    admin = MagicMock()

    result = reset_password(db_session, token, "Newpass1!", CLIENT, fake_redis, admin)

    assert result.message == MSG_RESET_DONE
    assert result.redirect_to == "/login"
    admin.auth.admin.update_user_by_id.assert_called_once_with("user-1", {"password": "Newpass1!"})
    assert fake_redis.get(password_reset_key(token)) is None


def test_reset_password_with_expired_token(db_session, fake_redis):
    token = _store_reset_token(fake_redis, expires_in=timedelta(minutes=-1))

    result = reset_password(db_session, token, "Newpass1!", CLIENT, fake_redis, MagicMock())

    assert result.message == MSG_INVALID_RESET_TOKEN
    assert verify_reset_token(fake_redis, token)["valid"] is False


def test_reset_password_rejects_weak_password(db_session, fake_redis):
    token = _store_reset_token(fake_redis)
    result = reset_password(db_session, token, "weak", CLIENT, fake_redis, MagicMock())
    assert result.error == "VALIDATION_ERROR"
