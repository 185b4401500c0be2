"""Consent records for GDPR and the Swiss FADP.

One row per (user_id, consent_type), or per (email, consent_type) for anonymous
decisions without a user id, updated in place by upsert or withdrawal. A
consent is valid while it is given, not withdrawn and at most
CONSENT_EXPIRY_DAYS old.
"""

import hashlib
import json
import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.tokens import as_utc, utcnow
from paymatch_api.db.models import ConsentRecord
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

CONSENT_EXPIRY_DAYS = 730  # 2 years (FADP)
RENEWAL_REMINDER_DAYS = 30
EXPIRING_SOON_AGE_DAYS = 600
CONSENT_VERSION = "1.0"
PROOF_VALIDITY = timedelta(hours=24)


class ConsentType(str, Enum):
    MARKETING_COOKIES = "marketing_cookies"
    ANALYTICS_COOKIES = "analytics_cookies"
    NEWSLETTER_SUBSCRIPTION = "newsletter_subscription"
    MARKETING_EMAILS = "marketing_emails"
    DATA_PROCESSING = "data_processing"
    THIRD_PARTY_SHARING = "third_party_sharing"


class ConsentMethod(str, Enum):
    COOKIE_BANNER = "cookie_banner"
    NEWSLETTER_FORM = "newsletter_form"
    ACCOUNT_SETTINGS = "account_settings"
    EMAIL_LINK = "email_link"
    API_REQUEST = "api_request"
    ADMIN_ACTION = "admin_action"


# Email types sent only with a valid marketing consent
MARKETING_CONSENT_EMAIL_TYPES: frozenset[str] = frozenset({"newsletter_promotional"})


class ConsentInput(BaseModel):
    consent_type: ConsentType
    consent_given: bool
    consent_method: ConsentMethod
    user_id: Optional[str] = None
    email: Optional[str] = None
    consent_version: str = CONSENT_VERSION
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    source: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ConsentStatus(BaseModel):
    consent_type: str
    consent_given: bool
    consent_date: str
    age_days: int
    is_valid: bool
    withdrawn: bool
    consent_method: str


class ConsentRenewal(BaseModel):
    consent_type: str
    age_days: int
    days_until_expiry: int
    expired: bool


def _age_days(record: ConsentRecord) -> int:
    return (utcnow() - as_utc(record.consent_date)).days


def _is_valid(record: ConsentRecord) -> bool:
    return (
        record.consent_given
        and not record.withdrawn
        and _age_days(record) <= CONSENT_EXPIRY_DAYS
    )


def record_consent(db: Session, consent: ConsentInput) -> ConsentRecord:
    """Record a consent decision.

    Upserts on (user_id, consent_type), or on (email, consent_type) among
    anonymous rows when no user_id is given; a renewed decision resets the
    consent date and clears any withdrawal.

    Raises:
        ValueError: If neither user_id nor email is given
    """
    if not consent.user_id and not consent.email:
        raise ValueError("Consent requires a user_id or an email")

    metadata = dict(consent.context)
    if consent.source:
        metadata["source"] = consent.source

    email = _normalize_email(consent.email)
    record = _owner_query(db, consent.user_id, email).filter(
        ConsentRecord.consent_type == consent.consent_type.value
    ).first()

    if record is None:
        record = ConsentRecord(
            user_id=consent.user_id,
            consent_type=consent.consent_type.value,
        )
        db.add(record)

    record.email = email or record.email
    record.consent_given = consent.consent_given
    record.consent_method = consent.consent_method.value
    record.consent_version = consent.consent_version
    record.ip_address = consent.ip_address
    record.user_agent = consent.user_agent
    record.consent_date = utcnow()
    record.withdrawn = False
    record.withdrawn_at = None
    record.metadata_json = metadata
    db.commit()

    logger.info(
        "consent.recorded",
        extra={
            "user_id": consent.user_id,
            "consent_type": consent.consent_type.value,
            "consent_given": consent.consent_given,
            "consent_method": consent.consent_method.value,
        },
    )
    return record


def _normalize_email(email: Optional[str]) -> Optional[str]:
    return email.strip().lower() if email else None


def _owner_query(db: Session, user_id: Optional[str], email: Optional[str]):
    """Rows of a user, or the anonymous rows stored under an email."""
    query = db.query(ConsentRecord)
    if user_id:
        return query.filter(ConsentRecord.user_id == user_id)
    return query.filter(ConsentRecord.user_id.is_(None), ConsentRecord.email == email)


def _user_records(db: Session, user_id: str) -> list[ConsentRecord]:
    return (
        db.query(ConsentRecord)
        .filter(ConsentRecord.user_id == user_id)
        .order_by(ConsentRecord.consent_type.asc())
        .all()
    )


def get_consent_status(db: Session, user_id: str) -> dict[str, ConsentStatus]:
    """Per consent type: given, date, age, validity and method."""
    status: dict[str, ConsentStatus] = {}
    for record in _user_records(db, user_id):
        status[record.consent_type] = ConsentStatus(
            consent_type=record.consent_type,
            consent_given=record.consent_given,
            consent_date=as_utc(record.consent_date).isoformat(),
            age_days=_age_days(record),
            is_valid=_is_valid(record),
            withdrawn=record.withdrawn,
            consent_method=record.consent_method,
        )
    return status


def check_consent_renewal(db: Session, user_id: str) -> list[ConsentRenewal]:
    """Given consents within RENEWAL_REMINDER_DAYS of expiry, or already expired."""
    renewals = []
    for record in _user_records(db, user_id):
        if not record.consent_given or record.withdrawn:
            continue
        age = _age_days(record)
        days_left = CONSENT_EXPIRY_DAYS - age
        if days_left <= RENEWAL_REMINDER_DAYS:
            renewals.append(
                ConsentRenewal(
                    consent_type=record.consent_type,
                    age_days=age,
                    days_until_expiry=max(0, days_left),
                    expired=days_left < 0,
                )
            )
    return renewals


def withdraw_consent(
    db: Session,
    user_id: Optional[str],
    consent_types: Iterable["ConsentType | str"],
    method: ConsentMethod = ConsentMethod.ACCOUNT_SETTINGS,
    reason: Optional[str] = None,
    email: Optional[str] = None,
) -> int:
    """Withdraw given, not yet withdrawn consents of a user, or of an email
    for anonymous consents.

    Returns:
        Number of records withdrawn

    Raises:
        ValueError: If neither user_id nor email is given, or a type is unknown
    """
    if not user_id and not email:
        raise ValueError("Withdrawal requires a user_id or an email")
    types = [ConsentType(t).value for t in consent_types]
    if not types:
        return 0

    records = (
        _owner_query(db, user_id, _normalize_email(email))
        .filter(
            ConsentRecord.consent_type.in_(types),
            ConsentRecord.consent_given.is_(True),
            ConsentRecord.withdrawn.is_(False),
        )
        .all()
    )
    now = utcnow()
    for record in records:
        record.withdrawn = True
        record.withdrawn_at = now
        metadata = dict(record.metadata_json or {})
        metadata["withdrawal_method"] = method.value
        if reason:
            metadata["withdrawal_reason"] = reason
        record.metadata_json = metadata
    db.commit()

    logger.info(
        "consent.withdrawn",
        extra={
            "user_id": user_id,
            "email": mask_email(email) if email else None,
            "consent_types": types,
            "withdrawn_count": len(records),
        },
    )
    return len(records)


def email_type_requires_marketing_consent(email_type: str) -> bool:
    return str(getattr(email_type, "value", email_type)) in MARKETING_CONSENT_EMAIL_TYPES


def has_valid_consent(
    db: Session,
    consent_type: "ConsentType | str",
    user_id: Optional[str] = None,
    email: Optional[str] = None,
) -> bool:
    """Given, not withdrawn and not expired; looked up by user, or by email when anonymous."""
    if not user_id and not email:
        return False
    record = (
        _owner_query(db, user_id, _normalize_email(email))
        .filter(ConsentRecord.consent_type == ConsentType(consent_type).value)
        .first()
    )
    return record is not None and _is_valid(record)


def has_marketing_consent(
    db: Session, user_id: Optional[str] = None, email: Optional[str] = None
) -> bool:
    return has_valid_consent(db, ConsentType.MARKETING_EMAILS, user_id=user_id, email=email)


def _record_to_dict(record: ConsentRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "user_id": record.user_id,
        "email": record.email,
        "consent_type": record.consent_type,
        "consent_given": record.consent_given,
        "consent_method": record.consent_method,
        "consent_version": record.consent_version,
        "ip_address": record.ip_address,
        "user_agent": record.user_agent,
        "consent_date": as_utc(record.consent_date).isoformat(),
        "withdrawn": record.withdrawn,
        "withdrawn_at": as_utc(record.withdrawn_at).isoformat() if record.withdrawn_at else None,
        "metadata": record.metadata_json or {},
    }


def generate_consent_proof(db: Session, user_id: str) -> dict[str, Any]:
    """Tamper-evident snapshot of a user's consent records.

    ``proof_hash`` is the SHA-256 of the canonical JSON (sorted keys, compact
    separators) of user_id, records, generated_at and valid_until.
    """
    generated_at = utcnow()
    valid_until = generated_at + PROOF_VALIDITY
    proof_data = {
        "user_id": user_id,
        "records": [_record_to_dict(r) for r in _user_records(db, user_id)],
        "generated_at": generated_at.isoformat(),
        "valid_until": valid_until.isoformat(),
    }
    canonical = json.dumps(proof_data, sort_keys=True, separators=(",", ":"), default=str)
    proof_data["proof_hash"] = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return proof_data


def record_cookie_consent_change(
    db: Session,
    marketing: bool,
    analytics: bool,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    client: Optional[ClientInfo] = None,
    source: str = "cookie_banner",
) -> list[ConsentRecord]:
    """Record marketing and analytics cookie decisions from the cookie banner."""
    client = client or ClientInfo()
    preferences = {"marketing": marketing, "analytics": analytics}
    records = []
    for consent_type, given in (
        (ConsentType.MARKETING_COOKIES, marketing),
        (ConsentType.ANALYTICS_COOKIES, analytics),
    ):
        records.append(
            record_consent(
                db,
                ConsentInput(
                    consent_type=consent_type,
                    consent_given=given,
                    consent_method=ConsentMethod.COOKIE_BANNER,
                    user_id=user_id,
                    email=email,
                    ip_address=client.ip_address,
                    user_agent=client.user_agent,
                    source=source,
                    context={"preferences": preferences},
                ),
            )
        )
    return records


def get_consent_statistics(db: Session) -> dict[str, Any]:
    """Aggregate counts for compliance reporting."""
    records = db.query(ConsentRecord).all()
    by_type: dict[str, dict[str, int]] = {}
    for record in records:
        counts = by_type.setdefault(record.consent_type, {"total": 0, "given": 0, "withdrawn": 0})
        counts["total"] += 1
        if record.consent_given and not record.withdrawn:
            counts["given"] += 1
        if record.withdrawn:
            counts["withdrawn"] += 1

    return {
        "total_consents": len(records),
        "active_consents": sum(1 for r in records if r.consent_given and not r.withdrawn),
        "withdrawn_consents": sum(1 for r in records if r.withdrawn),
        "expiring_soon": sum(1 for r in records if _age_days(r) > EXPIRING_SOON_AGE_DAYS),
        "consent_types": by_type,
    }
