"""Unsubscribe tokens, email preferences and the outbound email service."""

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from paymatch_api.consent.consent_service import ConsentInput, ConsentMethod, ConsentType, record_consent
from paymatch_api.email.email_service import EmailService
from paymatch_api.email.preferences import EmailPreferencesService, MandatoryEmailTypeError
from paymatch_api.email.renderer import EmailRenderError, EmailRenderer
from paymatch_api.email.types import EmailType, is_mandatory_email_type
from paymatch_api.email.unsubscribe import (
    generate_unsubscribe_token,
    get_unsubscribe_headers,
    verify_unsubscribe_token,
)

EMAIL = "anna@example.ch"
USER_ID = "3a3a3a3a-3b3b-4c3c-8d3d-3e3e3e3e3e3e"

VERIFICATION_CONTEXT = {
    "first_name": "Anna",
    "verification_url": "https://app.paymatch.test/verify-email?token=abc",
    "expires_in_hours": 24,
}


# ===========================================================================
# unsubscribe tokens
# ===========================================================================


class TestUnsubscribeToken:
    def test_roundtrip_carries_payload(self):
        token = generate_unsubscribe_token(EMAIL, EmailType.NEWSLETTER_NEWS, USER_ID)

        data = verify_unsubscribe_token(token)

        assert data.email == EMAIL
        assert data.type == "newsletter_news"
        assert data.user_id == USER_ID

    def test_tokens_are_unique(self):
        assert generate_unsubscribe_token(EMAIL, "newsletter_news") != generate_unsubscribe_token(
            EMAIL, "newsletter_news"
        )

    def test_tampered_payload_is_rejected(self):
        token = generate_unsubscribe_token(EMAIL, "newsletter_news")
        payload_b64, signature = token.split(".")
        payload = json.loads(base64.urlsafe_b64decode(payload_b64 + "=" * (-len(payload_b64) % 4)))
        payload["email"] = "victim@example.ch"
        forged = base64.urlsafe_b64encode(
            json.dumps(payload, separators=(",", ":")).encode()
        ).rstrip(b"=").decode()

        assert verify_unsubscribe_token(f"{forged}.{signature}") is None

    def test_other_secret_is_rejected(self, monkeypatch):
        token = generate_unsubscribe_token(EMAIL, "newsletter_news")
        monkeypatch.setenv("UNSUBSCRIBE_TOKEN_SECRET", "another-secret")
        assert verify_unsubscribe_token(token) is None

    def test_expired_token(self):
        token = generate_unsubscribe_token(EMAIL, "newsletter_news", expires_in_days=-1)
        assert verify_unsubscribe_token(token) is None

    @pytest.mark.parametrize("token", ["", "abc", "a.b.c", "!!!.sig"])
    def test_malformed_tokens(self, token):
        assert verify_unsubscribe_token(token) is None

    def test_missing_secret_raises(self, monkeypatch):
        monkeypatch.delenv("UNSUBSCRIBE_TOKEN_SECRET", raising=False)
        with pytest.raises(ValueError):
            generate_unsubscribe_token(EMAIL, "newsletter_news")

    def test_list_unsubscribe_headers(self):
        headers = get_unsubscribe_headers(EMAIL, "business_notifications")

        assert headers["List-Unsubscribe-Post"] == "List-Unsubscribe=One-Click"
        assert headers["List-Unsubscribe"].startswith(
            "<https://app.paymatch.test/api/unsubscribe/one-click?token="
        )
        assert "mailto:unsubscribe@paymatch.app" in headers["List-Unsubscribe"]


# ===========================================================================
# preferences
# ===========================================================================


class TestPreferences:
    def test_defaults_to_subscribed(self, db_session):
        prefs = EmailPreferencesService(db_session).get_preferences(EMAIL)
        assert set(prefs) == {t.value for t in EmailType}
        assert all(prefs.values())

    def test_unsubscribe_is_case_insensitive(self, db_session):
        service = EmailPreferencesService(db_session)

        service.unsubscribe("Anna@Example.CH", "newsletter_news")

        assert service.is_subscribed(EMAIL, "newsletter_news") is False
        assert service.get_preferences(EMAIL)["newsletter_news"] is False

    def test_mandatory_types_cannot_be_unsubscribed(self, db_session):
        service = EmailPreferencesService(db_session)
        for email_type in ("security", "transactional", "support", "legal"):
            assert is_mandatory_email_type(email_type)
            with pytest.raises(MandatoryEmailTypeError):
                service.unsubscribe(EMAIL, email_type)
        assert not is_mandatory_email_type("not_a_type")

    def test_update_ignores_mandatory_types(self, db_session):
        prefs = EmailPreferencesService(db_session).update_preferences(
            EMAIL, {"security": False, "overdue_alerts": False}
        )
        assert prefs["security"] is True
        assert prefs["overdue_alerts"] is False

    def test_resubscribe(self, db_session):
        service = EmailPreferencesService(db_session)
        service.unsubscribe(EMAIL, "newsletter_news")
        row = service.subscribe(EMAIL, "newsletter_news")
        assert row.subscribed is True
        assert row.unsubscribed_at is None

    def test_unsubscribe_with_token(self, db_session):
        service = EmailPreferencesService(db_session)
        token = generate_unsubscribe_token(EMAIL, "business_notifications", USER_ID)

        result = service.unsubscribe_with_token(token)

        assert result.success
        assert result.data == {"email": EMAIL, "email_type": "business_notifications"}
        assert service.is_subscribed(EMAIL, "business_notifications") is False

    def test_unsubscribe_with_bad_tokens(self, db_session):
        service = EmailPreferencesService(db_session)
        assert service.unsubscribe_with_token("garbage").error == "INVALID_TOKEN"
        assert (
            service.unsubscribe_with_token(generate_unsubscribe_token(EMAIL, "carrier_pigeon")).error
            == "INVALID_EMAIL_TYPE"
        )
        assert (
            service.unsubscribe_with_token(generate_unsubscribe_token(EMAIL, "security")).error
            == "MANDATORY_EMAIL_TYPE"
        )


# ===========================================================================
# renderer and service
# ===========================================================================


def test_renderer_produces_html_and_text():
    html, text = EmailRenderer().render("verification", subject="Verify", unsubscribe_url=None,
                                        **VERIFICATION_CONTEXT)
    assert "https://app.paymatch.test/verify-email?token=abc" in html
    assert "Anna" in text


def test_renderer_errors():
    with pytest.raises(EmailRenderError):
        EmailRenderer().render("no_such_template")
    with pytest.raises(EmailRenderError):
        EmailRenderer().render("verification", subject="x", unsubscribe_url=None)


@pytest.fixture
def resend_client():
    client = MagicMock()
    client.send_email = AsyncMock(return_value={"id": "re_123"})
    return client


class TestEmailService:
    @pytest.mark.asyncio
    async def test_security_email_has_no_unsubscribe_headers(self, db_session, resend_client):
        service = EmailService(db_session, resend_client=resend_client)

        result = await service.send(EMAIL, "Verify", "verification", VERIFICATION_CONTEXT, EmailType.SECURITY)

        assert result.success and result.message_id == "re_123"
        kwargs = resend_client.send_email.await_args.kwargs
        assert kwargs["headers"] is None
        assert kwargs["tags"] == [{"name": "email_type", "value": "security"}]

    @pytest.mark.asyncio
    async def test_optional_email_carries_unsubscribe_headers(self, db_session, resend_client):
        service = EmailService(db_session, resend_client=resend_client)

        await service.send(EMAIL, "Update", "verification", VERIFICATION_CONTEXT, "business_notifications")

        kwargs = resend_client.send_email.await_args.kwargs
        assert "List-Unsubscribe" in kwargs["headers"]
        assert "/unsubscribe?token=" in kwargs["html"]

    @pytest.mark.asyncio
    async def test_unsubscribed_recipient_is_skipped(self, db_session, resend_client):
        EmailPreferencesService(db_session).unsubscribe(EMAIL, "business_notifications")
        service = EmailService(db_session, resend_client=resend_client)

        result = await service.send(EMAIL, "Update", "verification", VERIFICATION_CONTEXT, "business_notifications")

        assert result.skipped and result.reason == "unsubscribed"
        resend_client.send_email.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_promotional_requires_marketing_consent(self, db_session, resend_client, fake_redis):
        service = EmailService(db_session, resend_client=resend_client, redis_client=fake_redis)

        result = await service.send(
            EMAIL, "Offer", "verification", VERIFICATION_CONTEXT, "newsletter_promotional", user_id=USER_ID
        )
        assert result.reason == "no_marketing_consent"

        record_consent(
            db_session,
            ConsentInput(
                consent_type=ConsentType.MARKETING_EMAILS,
                consent_given=True,
                consent_method=ConsentMethod.NEWSLETTER_FORM,
                user_id=USER_ID,
            ),
        )
        result = await service.send(
            EMAIL, "Offer", "verification", VERIFICATION_CONTEXT, "newsletter_promotional", user_id=USER_ID
        )
        assert result.success and not result.skipped

    @pytest.mark.asyncio
    async def test_anonymous_promotional_uses_email_consent(self, db_session, resend_client):
        record_consent(
            db_session,
            ConsentInput(
                consent_type=ConsentType.MARKETING_EMAILS,
                consent_given=True,
                consent_method=ConsentMethod.NEWSLETTER_FORM,
                email=EMAIL,
            ),
        )
        service = EmailService(db_session, resend_client=resend_client)

        result = await service.send(EMAIL, "Offer", "verification", VERIFICATION_CONTEXT, "newsletter_promotional")

        assert result.success and not result.skipped

    @pytest.mark.asyncio
    async def test_optional_email_limited_per_user(self, db_session, resend_client, fake_redis):
        service = EmailService(db_session, resend_client=resend_client, redis_client=fake_redis)

        for _ in range(50):
            result = await service.send(
                EMAIL, "Update", "verification", VERIFICATION_CONTEXT, "business_notifications", user_id=USER_ID
            )
            assert result.success
        limited = await service.send(
            EMAIL, "Update", "verification", VERIFICATION_CONTEXT, "business_notifications", user_id=USER_ID
        )
        security = await service.send(
            EMAIL, "Verify", "verification", VERIFICATION_CONTEXT, EmailType.SECURITY, user_id=USER_ID
        )

        assert limited.skipped and limited.reason == "rate_limited"
        assert security.success and not security.skipped
        assert resend_client.send_email.await_count == 51

    @pytest.mark.asyncio
    async def test_provider_failure_is_reported(self, db_session, resend_client):
        resend_client.send_email.side_effect = httpx.ConnectError("resend down")
        service = EmailService(db_session, resend_client=resend_client)

        result = await service.send(EMAIL, "Verify", "verification", VERIFICATION_CONTEXT, EmailType.SECURITY)

        assert result.success is False
        assert "resend down" in result.error
