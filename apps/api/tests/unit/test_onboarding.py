"""Onboarding: Swiss validation, drafts, debounced saves, steps and completion."""

import threading
import uuid

from conftest import create_member

from paymatch_api.auth.cache import CacheService
from paymatch_api.consent.consent_service import ConsentType
from paymatch_api.db.models import ConsentRecord, EmailPreference, Organization
from paymatch_api.onboarding.drafts import DraftDebouncer, clear_draft, load_draft, save_draft
from paymatch_api.onboarding.steps import complete_onboarding, save_company_details, update_onboarding_step
from paymatch_api.onboarding.validation import (
    SWISS_CANTONS,
    normalize_iban,
    validate_company_details,
    validate_plan_selection,
    validate_swiss_iban,
    validate_swiss_postal_code,
    validate_swiss_vat_number,
)
from paymatch_api.schemas import OnboardingSettings

VALID_COMPANY = {
    "company_name": "Muster GmbH",
    "street": "Bahnhofstrasse 1",
    "postal_code": "8001",
    "city": "Zürich",
    "canton": "ZH",
    "iban": "ch93 0076 2011 6238 5295 7",
    "vat_number": "CHE-123.456.789 MWST",
}


# ===========================================================================
# validation
# ===========================================================================


def test_all_26_cantons():
    assert len(SWISS_CANTONS) == 26
    assert "ZH" in SWISS_CANTONS and "JU" in SWISS_CANTONS


def test_iban_normalization_and_length():
    assert normalize_iban("ch93 0076 2011 6238 5295 7") == "CH9300762011623852957"
    assert validate_swiss_iban("CH93 0076 2011 6238 5295 7")
    assert not validate_swiss_iban("DE89370400440532013000")
    assert not validate_swiss_iban("CH93 0076")


def test_postal_code_and_vat():
    assert validate_swiss_postal_code("8001")
    assert not validate_swiss_postal_code("800")
    assert not validate_swiss_postal_code("80011")
    assert validate_swiss_vat_number("CHE-123.456.789")
    assert not validate_swiss_vat_number("CHE-123")


def test_valid_company_details_have_no_errors():
    assert validate_company_details(VALID_COMPANY) == {}


def test_company_details_field_errors():
    errors = validate_company_details(
        {**VALID_COMPANY, "company_name": "M", "canton": "XX", "iban": "", "vat_number": "12"}
    )
    assert set(errors) == {"company_name", "canton", "iban", "vat_number"}


def test_vat_number_is_optional():
    details = dict(VALID_COMPANY)
    del details["vat_number"]
    assert validate_company_details(details) == {}


def test_plan_selection():
    assert validate_plan_selection("business", "annual") == {}
    assert set(validate_plan_selection("platinum", "weekly")) == {"plan", "billing_cycle"}


# ===========================================================================
# drafts
# ===========================================================================


def test_draft_save_merges_and_load_returns_latest_step(db_session):
    _, org = create_member(db_session)

    save_draft(db_session, org.id, {"company_name": "Muster"}, 1)
    result = save_draft(db_session, org.id, {"city": "Bern"}, 2)

    assert result.success
    draft = load_draft(db_session, org.id)
    assert draft["data"] == {"company_name": "Muster", "city": "Bern"}
    assert draft["step"] == 2
    assert draft["last_saved"]


def test_draft_load_without_draft_is_empty(db_session):
    _, org = create_member(db_session)
    assert load_draft(db_session, org.id) == {}
    assert load_draft(db_session, str(uuid.uuid4())) == {}


def test_draft_clear(db_session):
    _, org = create_member(db_session)
    save_draft(db_session, org.id, {"city": "Bern"}, 1)

    assert clear_draft(db_session, org.id).success
    assert load_draft(db_session, org.id) == {}


def test_draft_unknown_org(db_session):
    assert save_draft(db_session, str(uuid.uuid4()), {}, 1).error == "NOT_FOUND"


def test_debouncer_coalesces_submits_into_one_save():
    calls = []
    debouncer = DraftDebouncer(lambda data, step: calls.append((dict(data), step)) or "saved", delay=60)

    debouncer.submit({"company_name": "Muster"}, 1)
    debouncer.submit({"city": "Bern"}, 2)
    assert debouncer.has_pending
    assert calls == []

    assert debouncer.flush() == "saved"
    assert calls == [({"company_name": "Muster", "city": "Bern"}, 2)]
    assert debouncer.has_pending is False
    assert debouncer.flush() is None


def test_debouncer_fires_after_delay():
    done = threading.Event()
    calls = []

    def save(data, step):
        calls.append((data, step))
        done.set()

    debouncer = DraftDebouncer(save, delay=0.05)
    debouncer.submit({"city": "Bern"}, 3)

    assert done.wait(2.0)
    assert calls == [({"city": "Bern"}, 3)]


def test_debouncer_cancel_drops_pending():
    calls = []
    debouncer = DraftDebouncer(lambda data, step: calls.append(step), delay=60)
    debouncer.submit({"city": "Bern"}, 1)
    debouncer.cancel()
    assert debouncer.flush() is None
    assert calls == []


def test_debouncer_save_error_is_logged_not_raised():
    def save(data, step):
        raise RuntimeError("db down")

    debouncer = DraftDebouncer(save, delay=60)
    debouncer.submit({"city": "Bern"}, 1)
    assert debouncer.flush() is None


# ===========================================================================
# steps and completion
# ===========================================================================


def test_update_step_bounds(db_session, fake_redis):
    _, org = create_member(db_session)

    assert update_onboarding_step(db_session, org.id, 3, fake_redis).success
    db_session.refresh(org)
    assert org.onboarding_step == 3
    assert update_onboarding_step(db_session, org.id, 5, fake_redis).error == "VALIDATION_ERROR"
    assert update_onboarding_step(db_session, org.id, 0, fake_redis).error == "VALIDATION_ERROR"


def test_save_company_details_normalizes_iban(db_session, fake_redis):
    _, org = create_member(db_session)

    result = save_company_details(db_session, org.id, VALID_COMPANY, fake_redis)

    assert result.success
    db_session.refresh(org)
    assert org.iban == "CH9300762011623852957"
    assert org.canton == "ZH"


def test_save_company_details_rejects_invalid(db_session, fake_redis):
    _, org = create_member(db_session)

    result = save_company_details(db_session, org.id, {**VALID_COMPANY, "postal_code": "12"}, fake_redis)

    assert result.error == "VALIDATION_ERROR"
    assert "postal_code" in result.data["field_errors"]


def test_complete_onboarding_sets_flag_and_syncs_preferences(db_session, fake_redis):
    profile, org = create_member(db_session)
    save_draft(db_session, org.id, {"city": "Bern"}, 3)
    CacheService(fake_redis).cache_organization(profile.id, {"id": org.id, "onboarding_completed": False})
    settings = OnboardingSettings(emailNotifications=False, autoReminders=True, defaultPaymentTerms=10)

    result = complete_onboarding(db_session, org.id, profile.id, settings, redis_client=fake_redis)

    assert result.success
    assert result.redirect_to == "/dashboard"
    db_session.refresh(org)
    assert org.onboarding_completed is True
    assert org.onboarding_step == 4
    assert org.onboarding_draft == {}
    assert org.settings["defaultPaymentTerms"] == 10

    prefs = {p.email_type: p.subscribed for p in db_session.query(EmailPreference).all()}
    assert prefs == {"business_notifications": False, "overdue_alerts": True}

    consent = db_session.query(ConsentRecord).one()
    assert consent.consent_type == ConsentType.DATA_PROCESSING.value
    assert consent.metadata_json["source"] == "onboarding_settings"

    assert CacheService(fake_redis).get_cached_organization(profile.id) is None


def test_complete_onboarding_twice_is_idempotent(db_session, fake_redis):
    profile, org = create_member(db_session)

    first = complete_onboarding(db_session, org.id, profile.id, redis_client=fake_redis)
    second = complete_onboarding(db_session, org.id, profile.id, redis_client=fake_redis)

    assert first.success and second.success
    db_session.refresh(org)
    assert org.onboarding_completed is True
    assert db_session.query(ConsentRecord).count() == 1
    assert db_session.query(EmailPreference).count() == 2
    assert db_session.query(Organization).count() == 1


def test_complete_onboarding_unknown_org(db_session, fake_redis):
    result = complete_onboarding(db_session, str(uuid.uuid4()), str(uuid.uuid4()), redis_client=fake_redis)
    assert result.error == "NOT_FOUND"
