"""Onboarding wizard server actions.

Steps: 1 company details, 2 plan selection, 3 settings, 4 done.
``organizations.onboarding_completed`` is the only completion flag.
"""

import logging
from typing import Any, Optional

import redis
from sqlalchemy.orm import Session

from paymatch_api.auth.cache import CacheService, invalidate_organization_members
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.consent.consent_service import ConsentInput, ConsentMethod, ConsentType, record_consent
from paymatch_api.db.models import Organization, UserProfile
from paymatch_api.email.preferences import EmailPreferencesService
from paymatch_api.email.types import EmailType
from paymatch_api.onboarding.drafts import clear_draft
from paymatch_api.onboarding.validation import normalize_iban, validate_company_details
from paymatch_api.results import GENERIC_ERROR_MESSAGE, ActionResult
from paymatch_api.schemas import OnboardingSettings

logger = logging.getLogger(__name__)

FINAL_STEP = 4

COMPANY_FIELDS = ("company_name", "street", "postal_code", "city", "canton", "country", "iban", "vat_number")


def _get_org(db: Session, org_id: str) -> Optional[Organization]:
    return db.query(Organization).filter(Organization.id == org_id).first()


def update_onboarding_step(
    db: Session, org_id: str, step: int, redis_client: Optional[redis.Redis] = None
) -> ActionResult:
    if step < 1 or step > FINAL_STEP:
        return ActionResult.fail("Invalid onboarding step", error="VALIDATION_ERROR")
    try:
        org = _get_org(db, org_id)
        if org is None:
            return ActionResult.fail("Organization not found", error="NOT_FOUND")
        org.onboarding_step = step
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "onboarding.step_update_failed",
            extra={"org_id": org_id, "step": step, "error": str(e)},
        )
        return ActionResult.fail("Failed to update onboarding step", error=type(e).__name__)

    invalidate_organization_members(db, org_id, CacheService(redis_client))
    return ActionResult.ok("Onboarding step updated", data={"step": step})


def save_company_details(
    db: Session, org_id: str, details: dict[str, Any], redis_client: Optional[redis.Redis] = None
) -> ActionResult:
    errors = validate_company_details(details)
    if errors:
        return ActionResult.fail(
            next(iter(errors.values())), error="VALIDATION_ERROR", data={"field_errors": errors}
        )

    try:
        org = _get_org(db, org_id)
        if org is None:
            return ActionResult.fail("Organization not found", error="NOT_FOUND")
        for field in COMPANY_FIELDS:
            if field in details and details[field] is not None:
                value = details[field]
                if field == "iban":
                    value = normalize_iban(value)
                elif isinstance(value, str):
                    value = value.strip()
                setattr(org, field, value)
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "onboarding.company_save_failed",
            extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
        )
        return ActionResult.fail("Failed to save company details", error=type(e).__name__)

    invalidate_organization_members(db, org_id, CacheService(redis_client))
    logger.info("onboarding.company_saved", extra={"org_id": org_id})
    return ActionResult.ok("Company details saved")


def _sync_email_preferences(
    db: Session, email: str, user_id: str, settings: OnboardingSettings
) -> None:
    EmailPreferencesService(db).update_preferences(
        email,
        {
            EmailType.BUSINESS_NOTIFICATIONS.value: settings.email_notifications,
            EmailType.OVERDUE_ALERTS.value: settings.auto_reminders,
        },
        user_id=user_id,
    )


def complete_onboarding(
    db: Session,
    org_id: str,
    user_id: str,
    settings: Optional[OnboardingSettings] = None,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
) -> ActionResult:
    """Mark onboarding complete and apply the final settings step.

    Safe to call more than once: flags are absolute and consent rows upsert.
    """
    settings = settings or OnboardingSettings()
    client = client or ClientInfo()

    try:
        org = _get_org(db, org_id)
        if org is None:
            return ActionResult.fail("Organization not found", error="NOT_FOUND")

        org.onboarding_completed = True
        org.onboarding_step = FINAL_STEP
        org.settings = {**(org.settings or {}), **settings.model_dump(by_alias=True)}
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "onboarding.complete_failed",
            extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)

    clear_draft(db, org_id)

    profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
    email = profile.email if profile is not None else None

    # Preference and consent sync failures do not undo completion
    if email:
        try:
            _sync_email_preferences(db, email, user_id, settings)
        except Exception as e:
            db.rollback()
            logger.warning(
                "onboarding.email_preferences_sync_failed",
                extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
            )

    try:
        record_consent(
            db,
            ConsentInput(
                consent_type=ConsentType.DATA_PROCESSING,
                consent_given=True,
                consent_method=ConsentMethod.ACCOUNT_SETTINGS,
                user_id=user_id,
                email=email,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                source="onboarding_settings",
                context={"organization_id": org_id},
            ),
        )
    except Exception as e:
        db.rollback()
        logger.warning(
            "onboarding.consent_record_failed",
            extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
        )

    invalidate_organization_members(db, org_id, CacheService(redis_client))
    logger.info("onboarding.completed", extra={"org_id": org_id, "user_id": user_id})
    return ActionResult.ok("Onboarding completed successfully", redirect_to="/dashboard")
