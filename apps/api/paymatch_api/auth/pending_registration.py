"""Deferred registration: hold sign-up data until the email is verified.

Flow:
1. store_pending_registration()  → row + 24h token, no credentials stored
2. verify_pending_registration() → token valid? (expired rows are deleted)
3. complete_pending_registration(token, password)
       → Supabase user (email confirmed) + profile + organization + owner membership
       → pending row deleted

A pending row and a confirmed auth user for the same email never coexist:
the provider is checked before a row is stored, and the row is deleted
when the user is created.
"""

import logging
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from paymatch_api.auth.tokens import as_utc, generate_verification_token, is_token_expired, utcnow
from paymatch_api.auth.user_operations import user_exists_by_email
from paymatch_api.db.models import Organization, OrganizationUser, PendingRegistration, UserProfile
from paymatch_api.results import ActionResult
from paymatch_api.supabase_client import get_supabase_admin_client
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

MSG_ALREADY_PENDING = (
    "Registration already in progress. Please check your email for verification link."
)
MSG_ACCOUNT_EXISTS = "An account with this email already exists. Please sign in instead."
MSG_INVALID_LINK = "Invalid or expired verification link."
MSG_EXPIRED_LINK = "Verification link has expired. Please register again."
MSG_REGISTRATION_FAILED = "Registration failed. Please try again."


class PendingRegistrationData(BaseModel):
    email: str
    first_name: str
    last_name: str
    language: str = "de"
    referral_source: Optional[str] = None
    browser_locale: Optional[str] = None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _get_by_email(db: Session, email: str) -> Optional[PendingRegistration]:
    return (
        db.query(PendingRegistration)
        .filter(PendingRegistration.email == _normalize_email(email))
        .first()
    )


def store_pending_registration(
    db: Session,
    data: PendingRegistrationData,
    admin_client: Any = None,
) -> ActionResult:
    """Store a pending registration and return its verification token.

    Returns:
        ActionResult with ``data["verification_token"]`` and ``data["expires_at"]``
        on success
    """
    email = _normalize_email(data.email)

    existing = _get_by_email(db, email)
    if existing is not None:
        if not is_token_expired(existing.expires_at):
            return ActionResult.fail(MSG_ALREADY_PENDING)
        db.delete(existing)
        db.commit()
        logger.info("pending_registration.expired_replaced", extra={"email": mask_email(email)})

    if user_exists_by_email(email, admin_client):
        return ActionResult.fail(MSG_ACCOUNT_EXISTS)

    token, expires_at = generate_verification_token()
    db.add(
        PendingRegistration(
            email=email,
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            user_metadata={
                "language": data.language,
                "referral_source": data.referral_source,
                "browser_locale": data.browser_locale,
            },
            verification_token=token,
            expires_at=expires_at,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        # Concurrent submission for the same email won the unique constraint
        db.rollback()
        return ActionResult.fail(MSG_ALREADY_PENDING)

    logger.info("pending_registration.stored", extra={"email": mask_email(email)})
    return ActionResult.ok(
        "Pending registration stored.",
        data={"verification_token": token, "expires_at": expires_at.isoformat()},
    )


def _get_valid_by_token(db: Session, token: str) -> "tuple[Optional[PendingRegistration], Optional[ActionResult]]":
    if not token:
        return None, ActionResult.fail(MSG_INVALID_LINK)

    pending = (
        db.query(PendingRegistration)
        .filter(PendingRegistration.verification_token == token)
        .first()
    )
    if pending is None:
        return None, ActionResult.fail(MSG_INVALID_LINK)

    if is_token_expired(pending.expires_at):
        db.delete(pending)
        db.commit()
        return None, ActionResult.fail(MSG_EXPIRED_LINK)

    return pending, None


def verify_pending_registration(db: Session, token: str) -> ActionResult:
    """Check a verification token. Expired rows are removed."""
    pending, failure = _get_valid_by_token(db, token)
    if failure is not None:
        return failure

    return ActionResult.ok(
        "Email verified successfully! Please set your password to complete registration.",
        data={
            "email": pending.email,
            "first_name": pending.first_name,
            "last_name": pending.last_name,
            "user_metadata": dict(pending.user_metadata or {}),
        },
    )


def complete_pending_registration(
    db: Session,
    token: str,
    password: str,
    admin_client: Any = None,
) -> ActionResult:
    """Consume a verification token: create the auth user and its organization."""
    pending, failure = _get_valid_by_token(db, token)
    if failure is not None:
        return failure

    client = admin_client or get_supabase_admin_client()
    metadata = dict(pending.user_metadata or {})
    response = client.auth.admin.create_user(
        {
            "email": pending.email,
            "password": password,
            "email_confirm": True,
            "user_metadata": {
                "first_name": pending.first_name,
                "last_name": pending.last_name,
                **{k: v for k, v in metadata.items() if v is not None},
            },
        }
    )
    user = getattr(response, "user", None)
    if user is None:
        logger.error(
            "pending_registration.user_create_failed",
            extra={"email": mask_email(pending.email)},
        )
        return ActionResult.fail(MSG_REGISTRATION_FAILED)

    full_name = f"{pending.first_name} {pending.last_name}".strip()
    organization = Organization(name=full_name or pending.email)
    db.add(organization)
    db.flush()

    db.add(
        UserProfile(
            id=user.id,
            email=pending.email,
            first_name=pending.first_name,
            last_name=pending.last_name,
            language=metadata.get("language") or "de",
        )
    )
    db.add(
        OrganizationUser(
            user_id=user.id,
            organization_id=organization.id,
            role="owner",
            status="active",
        )
    )
    email = pending.email
    db.delete(pending)
    db.commit()

    logger.info(
        "pending_registration.completed",
        extra={"user_id": user.id, "organization_id": organization.id, "email": mask_email(email)},
    )
    return ActionResult.ok(
        "Registration completed. You can now sign in.",
        redirect_to="/login",
        data={"user_id": user.id, "organization_id": organization.id, "email": email},
    )


def check_pending_registration(db: Session, email: str) -> dict[str, Any]:
    """Report whether a (non-expired) pending registration exists for ``email``."""
    pending = _get_by_email(db, email)
    if pending is None:
        return {"exists": False, "expired": False, "expires_at": None}
    expired = is_token_expired(pending.expires_at)
    return {
        "exists": not expired,
        "expired": expired,
        "expires_at": as_utc(pending.expires_at).isoformat(),
    }


def delete_pending_registration(db: Session, email: str) -> bool:
    deleted = (
        db.query(PendingRegistration)
        .filter(PendingRegistration.email == _normalize_email(email))
        .delete(synchronize_session=False)
    )
    db.commit()
    return deleted > 0


def rotate_verification_token(db: Session, email: str) -> Optional[PendingRegistration]:
    """Issue a fresh token and 24h expiry for an existing pending row."""
    pending = _get_by_email(db, email)
    if pending is None:
        return None
    token, expires_at = generate_verification_token()
    pending.verification_token = token
    pending.expires_at = expires_at
    db.commit()
    return pending


def cleanup_expired_pending_registrations(db: Session) -> int:
    """Delete expired pending registrations.

    Returns:
        Number of rows deleted
    """
    deleted = (
        db.query(PendingRegistration)
        .filter(PendingRegistration.expires_at < utcnow())
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("pending_registration.cleanup", extra={"deleted_count": deleted})
    return deleted
