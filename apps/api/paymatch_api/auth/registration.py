"""Registration actions: register, verify email, complete, resend.

Registration is deferred: the form creates a pending registration and sends
a verification link; the account is created only when the link is consumed
together with the password (see pending_registration).
"""

import logging
from typing import Any, Optional

import redis
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import (
    log_email_verification_attempt,
    log_rate_limit_hit,
    log_registration_attempt,
)
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.pending_registration import (
    PendingRegistrationData,
    complete_pending_registration,
    rotate_verification_token,
    store_pending_registration,
    verify_pending_registration,
)
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.validation import validate_password_strength, validate_registration_form
from paymatch_api.email.auth_emails import send_verification_email
from paymatch_api.email.email_service import EmailService
from paymatch_api.results import GENERIC_ERROR_MESSAGE, ActionResult
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

MSG_RATE_LIMITED = "Too many registration attempts. Please try again later."
MSG_REGISTERED = "Registration successful! Please check your email to verify your account."


class RegisterUserData(BaseModel):
    first_name: str
    last_name: str
    email: str
    password: str
    language: str = "de"
    referral_source: Optional[str] = None
    browser_locale: Optional[str] = None


async def register_user(
    db: Session,
    data: RegisterUserData,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    admin_client: Any = None,
    email_service: Optional[EmailService] = None,
) -> ActionResult:
    """Validate, rate limit, store a pending registration and send the verification email.

    The password is validated here but not stored; it is submitted again when
    the verification link is consumed.
    """
    client = client or ClientInfo()
    email = data.email.strip().lower()

    errors = validate_registration_form(data.first_name, data.last_name, email, data.password)
    if errors:
        return ActionResult.fail(next(iter(errors.values())), error="VALIDATION_ERROR",
                                 data={"field_errors": errors})

    try:
        limits = RateLimiter(redis_client).check_dual(
            email, client.ip_address, "AUTH_OPERATIONS", "AUTH_OPERATIONS"
        )
        if not limits.allowed:
            log_rate_limit_hit(db, email, "AUTH_OPERATIONS", client, {"operation": "register"})
            log_registration_attempt(db, email, client, False, "Rate limit exceeded")
            return ActionResult.fail(
                MSG_RATE_LIMITED,
                error="RATE_LIMITED",
                data={"retry_after": max(limits.email.retry_after, limits.ip.retry_after)},
            )

        stored = store_pending_registration(
            db,
            PendingRegistrationData(
                email=email,
                first_name=data.first_name,
                last_name=data.last_name,
                language=data.language,
                referral_source=data.referral_source,
                browser_locale=data.browser_locale,
            ),
            admin_client=admin_client,
        )
        if not stored.success:
            log_registration_attempt(db, email, client, False, stored.message)
            return stored

        sent = await send_verification_email(
            db,
            email,
            data.first_name.strip(),
            stored.data["verification_token"],
            email_service=email_service,
        )
        if not sent.success:
            # The pending row stays; the user can request a new link.
            logger.error(
                "auth.register.verification_email_failed",
                extra={"email": mask_email(email), "error": sent.error},
            )
            log_registration_attempt(
                db, email, client, False, "Failed to send verification email",
                {"error": sent.error},
            )
        else:
            log_registration_attempt(
                db, email, client, True,
                details={"referral_source": data.referral_source, "browser_locale": data.browser_locale},
            )
        logger.info("auth.register.pending", extra={"email": mask_email(email)})
        return ActionResult.ok(MSG_REGISTERED)

    except Exception as e:
        logger.error(
            "auth.register.error",
            extra={"email": mask_email(email), "error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        log_registration_attempt(db, email, client, False, str(e))
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)


def verify_email(db: Session, token: str, client: Optional[ClientInfo] = None) -> ActionResult:
    """Validate a verification link; the caller then asks for the password."""
    try:
        result = verify_pending_registration(db, token)
    except Exception as e:
        logger.error("auth.verify_email.error", extra={"error": str(e)}, exc_info=True)
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)

    log_email_verification_attempt(
        db,
        result.data.get("email", ""),
        client,
        result.success,
        None if result.success else result.message,
    )
    return result


def complete_registration(
    db: Session,
    token: str,
    password: str,
    client: Optional[ClientInfo] = None,
    admin_client: Any = None,
) -> ActionResult:
    """Set the password for a verified pending registration and create the account."""
    weak = validate_password_strength(password)
    if weak:
        return ActionResult.fail(weak, error="VALIDATION_ERROR")

    try:
        result = complete_pending_registration(db, token, password, admin_client=admin_client)
    except Exception as e:
        db.rollback()
        logger.error(
            "auth.complete_registration.error",
            extra={"error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)

    email = result.data.get("email", "")
    log_email_verification_attempt(
        db, email, client, result.success, None if result.success else result.message,
        {"stage": "complete_registration", "user_id": result.data.get("user_id")},
    )
    return result


async def resend_verification_email(
    db: Session,
    email: str,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    email_service: Optional[EmailService] = None,
) -> ActionResult:
    """Rotate the pending token, extend its expiry and send a new link."""
    client = client or ClientInfo()
    email = email.strip().lower()

    limit = RateLimiter(redis_client).check(email, "EMAIL_VERIFICATION")
    if not limit.allowed:
        log_rate_limit_hit(db, email, "EMAIL_VERIFICATION", client, {"operation": "resend_verification"})
        return ActionResult.fail(
            "Too many verification emails requested. Please wait before trying again.",
            error="RATE_LIMITED",
            data={"retry_after": limit.retry_after},
        )

    pending = rotate_verification_token(db, email)
    if pending is None:
        return ActionResult.fail("No pending registration found. Please register again.")

    sent = await send_verification_email(
        db, email, pending.first_name, pending.verification_token, email_service=email_service
    )
    if not sent.success:
        return ActionResult.fail("Failed to send verification email. Please try again.")

    log_email_verification_attempt(db, email, client, True, details={"stage": "resend"})
    return ActionResult.ok("Verification email sent successfully!")
