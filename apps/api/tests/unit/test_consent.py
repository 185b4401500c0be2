"""GDPR / FADP consent records, withdrawal, renewal and proof."""

import hashlib
import json
from datetime import timedelta

import pytest

from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.tokens import utcnow
from paymatch_api.consent.consent_service import (
    ConsentInput,
    ConsentMethod,
    ConsentType,
    check_consent_renewal,
    email_type_requires_marketing_consent,
    generate_consent_proof,
    get_consent_statistics,
    get_consent_status,
    has_marketing_consent,
    record_consent,
    record_cookie_consent_change,
    withdraw_consent,
)
from paymatch_api.db.models import ConsentRecord

USER_ID = "2a2a2a2a-2b2b-4c2c-8d2d-2e2e2e2e2e2e"


def _give(db, consent_type=ConsentType.MARKETING_EMAILS, given=True, user_id=USER_ID, **kwargs):
    return record_consent(
        db,
        ConsentInput(
            consent_type=consent_type,
            consent_given=given,
            consent_method=ConsentMethod.ACCOUNT_SETTINGS,
            user_id=user_id,
            **kwargs,
        ),
    )


def _age(db, record, days):
    record.consent_date = utcnow() - timedelta(days=days)
    db.commit()


def test_record_requires_user_or_email(db_session):
    with pytest.raises(ValueError):
        _give(db_session, user_id=None)


def test_record_upserts_per_user_and_type(db_session):
    first = _give(db_session, given=True)
    second = _give(db_session, given=False, source="settings_page")

    assert first.id == second.id
    assert db_session.query(ConsentRecord).count() == 1
    assert second.consent_given is False
    assert second.metadata_json == {"source": "settings_page"}


def test_anonymous_consent_by_email(db_session):
    record = _give(db_session, ConsentType.NEWSLETTER_SUBSCRIPTION, user_id=None, email="lead@example.ch")
    assert record.user_id is None
    assert record.email == "lead@example.ch"


def test_anonymous_consent_upserts_per_email_and_type(db_session):
    for _ in range(3):
        record_cookie_consent_change(db_session, True, False, email="anon@example.ch")
    record_cookie_consent_change(db_session, False, False, email="Anon@Example.ch ")

    rows = db_session.query(ConsentRecord).order_by(ConsentRecord.consent_type).all()
    assert [(r.consent_type, r.consent_given) for r in rows] == [
        ("analytics_cookies", False),
        ("marketing_cookies", False),
    ]
    assert {r.email for r in rows} == {"anon@example.ch"}


def test_anonymous_and_user_consents_stay_separate(db_session):
    _give(db_session, user_id=None, email="anna@example.ch")
    _give(db_session, email="anna@example.ch")

    assert db_session.query(ConsentRecord).count() == 2


def test_withdraw_anonymous_consent_by_email(db_session):
    _give(db_session, ConsentType.NEWSLETTER_SUBSCRIPTION, user_id=None, email="lead@example.ch")
    _give(db_session, ConsentType.MARKETING_EMAILS, user_id=None, email="lead@example.ch")
    assert has_marketing_consent(db_session, email="lead@example.ch")

    count = withdraw_consent(
        db_session, None, [ConsentType.NEWSLETTER_SUBSCRIPTION, ConsentType.MARKETING_EMAILS],
        ConsentMethod.EMAIL_LINK, email="LEAD@example.ch",
    )

    assert count == 2
    assert not has_marketing_consent(db_session, email="lead@example.ch")
    record = db_session.query(ConsentRecord).filter_by(consent_type="newsletter_subscription").one()
    assert record.metadata_json["withdrawal_method"] == "email_link"


def test_withdraw_by_email_leaves_user_consents_alone(db_session):
    _give(db_session, email="anna@example.ch")

    assert withdraw_consent(db_session, None, [ConsentType.MARKETING_EMAILS], email="anna@example.ch") == 0
    assert has_marketing_consent(db_session, USER_ID)


def test_withdraw_requires_user_or_email(db_session):
    with pytest.raises(ValueError):
        withdraw_consent(db_session, None, [ConsentType.MARKETING_EMAILS])


def test_status_and_validity(db_session):
    _give(db_session, ConsentType.MARKETING_EMAILS)
    analytics = _give(db_session, ConsentType.ANALYTICS_COOKIES)
    _age(db_session, analytics, 800)

    status = get_consent_status(db_session, USER_ID)

    assert status["marketing_emails"].is_valid is True
    assert status["marketing_emails"].age_days == 0
    assert status["analytics_cookies"].is_valid is False
    assert status["analytics_cookies"].age_days == 800


def test_withdraw_only_given_consents(db_session):
    _give(db_session, ConsentType.MARKETING_EMAILS, given=True)
    _give(db_session, ConsentType.MARKETING_COOKIES, given=False)

    count = withdraw_consent(
        db_session, USER_ID, [ConsentType.MARKETING_EMAILS, "marketing_cookies"], reason="too many emails"
    )

    assert count == 1
    record = db_session.query(ConsentRecord).filter_by(consent_type="marketing_emails").one()
    assert record.withdrawn is True
    assert record.withdrawn_at is not None
    assert record.metadata_json["withdrawal_reason"] == "too many emails"
    assert withdraw_consent(db_session, USER_ID, [ConsentType.MARKETING_EMAILS]) == 0


def test_withdraw_unknown_type_raises(db_session):
    with pytest.raises(ValueError):
        withdraw_consent(db_session, USER_ID, ["bogus"])


def test_renewed_consent_clears_withdrawal(db_session):
    _give(db_session)
    withdraw_consent(db_session, USER_ID, [ConsentType.MARKETING_EMAILS])

    record = _give(db_session)

    assert record.withdrawn is False
    assert has_marketing_consent(db_session, USER_ID)


def test_marketing_consent(db_session):
    assert not has_marketing_consent(db_session, USER_ID)
    record = _give(db_session)
    assert has_marketing_consent(db_session, USER_ID)
    _age(db_session, record, 731)
    assert not has_marketing_consent(db_session, USER_ID)

    assert email_type_requires_marketing_consent("newsletter_promotional")
    assert not email_type_requires_marketing_consent("security")


def test_renewal_window(db_session):
    fresh = _give(db_session, ConsentType.MARKETING_EMAILS)
    due = _give(db_session, ConsentType.DATA_PROCESSING)
    expired = _give(db_session, ConsentType.ANALYTICS_COOKIES)
    _age(db_session, fresh, 100)
    _age(db_session, due, 710)
    _age(db_session, expired, 740)

    renewals = {r.consent_type: r for r in check_consent_renewal(db_session, USER_ID)}

    assert set(renewals) == {"data_processing", "analytics_cookies"}
    assert renewals["data_processing"].days_until_expiry == 20
    assert renewals["data_processing"].expired is False
    assert renewals["analytics_cookies"].days_until_expiry == 0
    assert renewals["analytics_cookies"].expired is True


def test_proof_hash_matches_canonical_json(db_session):
    _give(db_session, ConsentType.DATA_PROCESSING, ip_address="10.0.0.1")

    proof = generate_consent_proof(db_session, USER_ID)

    assert len(proof["records"]) == 1
    assert proof["records"][0]["ip_address"] == "10.0.0.1"
    body = {k: v for k, v in proof.items() if k != "proof_hash"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    assert proof["proof_hash"] == hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def test_cookie_banner_records_both_types(db_session):
    records = record_cookie_consent_change(
        db_session, marketing=False, analytics=True, user_id=USER_ID,
        client=ClientInfo(ip_address="1.2.3.4", user_agent="pytest"),
    )

    assert [r.consent_type for r in records] == ["marketing_cookies", "analytics_cookies"]
    assert [r.consent_given for r in records] == [False, True]
    assert all(r.consent_method == "cookie_banner" for r in records)
    assert records[0].metadata_json["preferences"] == {"marketing": False, "analytics": True}


def test_statistics(db_session):
    _give(db_session, ConsentType.MARKETING_EMAILS)
    _give(db_session, ConsentType.DATA_PROCESSING)
    withdraw_consent(db_session, USER_ID, [ConsentType.DATA_PROCESSING])

    stats = get_consent_statistics(db_session)

    assert stats["total_consents"] == 2
    assert stats["active_consents"] == 1
    assert stats["withdrawn_consents"] == 1
    assert stats["consent_types"]["data_processing"]["withdrawn"] == 1
