"""Newsletter subscription from the public signup form.

A subscription is an anonymous consent pair (newsletter_subscription and
marketing_emails, keyed by email) plus an opt-in to newsletter_promotional
mail. The welcome email goes out on first subscription and on reactivation,
never to an address that is already subscribed.
"""

import logging
import re
from typing import Optional

import redis
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import log_rate_limit_hit
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.validation import validate_email_address
from paymatch_api.config.env import get_app_url
from paymatch_api.consent.consent_service import (
    ConsentInput,
    ConsentMethod,
    ConsentType,
    has_valid_consent,
    record_consent,
    withdraw_consent,
)
from paymatch_api.db.models import ConsentRecord
from paymatch_api.email.email_service import EmailService
from paymatch_api.email.preferences import EmailPreferencesService
from paymatch_api.email.types import EmailType
from paymatch_api.email.unsubscribe import verify_unsubscribe_token
from paymatch_api.results import ActionResult
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

NEWSLETTER_EMAIL_TYPE = EmailType.NEWSLETTER_PROMOTIONAL
NEWSLETTER_EMAIL_TYPES = frozenset(
    {EmailType.NEWSLETTER_PROMOTIONAL, EmailType.NEWSLETTER_INFORMATIONAL, EmailType.NEWSLETTER_NEWS}
)
NEWSLETTER_CONSENTS = (ConsentType.NEWSLETTER_SUBSCRIPTION, ConsentType.MARKETING_EMAILS)

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 100
# Letters, joined by spaces, hyphens, apostrophes or dots
_NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[\s\-'.]+[^\W\d_]+)*\.?$")

MSG_SUBSCRIBED = "Successfully subscribed to the newsletter. Please check your inbox."
MSG_ALREADY_SUBSCRIBED = "You're already subscribed to our newsletter."
MSG_CONSENT_REQUIRED = "You must agree to receive the newsletter."
MSG_RATE_LIMITED = "Too many subscription attempts. Please try again later."
MSG_UNSUBSCRIBED = "You have been unsubscribed from the newsletter."


class NewsletterSignup(BaseModel):
    first_name: str
    last_name: str
    email: str
    consent: bool = False
    language: str = "de"
    source: str = "newsletter_form"


def validate_person_name(value: str, label: str) -> Optional[str]:
    value = (value or "").strip()
    if len(value) < NAME_MIN_LENGTH:
        return f"{label} must be at least {NAME_MIN_LENGTH} characters"
    if len(value) > NAME_MAX_LENGTH:
        return f"{label} must be at most {NAME_MAX_LENGTH} characters"
    if not _NAME_PATTERN.match(value):
        return f"{label} can only contain letters, spaces, hyphens, apostrophes and dots"
    return None


def _field_errors(signup: NewsletterSignup) -> dict[str, str]:
    errors = {
        "first_name": validate_person_name(signup.first_name, "First name"),
        "last_name": validate_person_name(signup.last_name, "Last name"),
        "email": validate_email_address(signup.email),
        "consent": None if signup.consent else MSG_CONSENT_REQUIRED,
    }
    return {field: message for field, message in errors.items() if message}


async def subscribe_to_newsletter(
    db: Session,
    signup: NewsletterSignup,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    email_service: Optional[EmailService] = None,
) -> ActionResult:
    """Subscribe an email address, or reactivate a lapsed subscription.

    Returns:
        ActionResult with ``data["already_subscribed"]``, ``data["reactivated"]``
        and ``data["email_sent"]`` on success
    """
    client = client or ClientInfo()
    errors = _field_errors(signup)
    if errors:
        return ActionResult.fail(
            next(iter(errors.values())), error="VALIDATION_ERROR", data={"field_errors": errors}
        )

    email = signup.email.strip().lower()
    limit = RateLimiter(redis_client).rate_limit_newsletter_subscription(email)
    if not limit.allowed:
        log_rate_limit_hit(db, email, "NEWSLETTER_SUBSCRIPTION", client, {"operation": "newsletter"})
        return ActionResult.fail(
            MSG_RATE_LIMITED, error="RATE_LIMITED", data={"retry_after": limit.retry_after}
        )

    preferences = EmailPreferencesService(db)
    subscribed = has_valid_consent(db, ConsentType.NEWSLETTER_SUBSCRIPTION, email=email)
    if subscribed and preferences.is_subscribed(email, NEWSLETTER_EMAIL_TYPE):
        logger.info("newsletter.already_subscribed", extra={"email": mask_email(email)})
        return ActionResult.ok(
            MSG_ALREADY_SUBSCRIBED,
            data={"already_subscribed": True, "reactivated": False, "email_sent": False},
        )

    reactivated = (
        db.query(ConsentRecord)
        .filter(
            ConsentRecord.user_id.is_(None),
            ConsentRecord.email == email,
            ConsentRecord.consent_type == ConsentType.NEWSLETTER_SUBSCRIPTION.value,
        )
        .first()
        is not None
    )

    first_name = signup.first_name.strip()
    last_name = signup.last_name.strip()
    for consent_type in NEWSLETTER_CONSENTS:
        record_consent(
            db,
            ConsentInput(
                consent_type=consent_type,
                consent_given=True,
                consent_method=ConsentMethod.NEWSLETTER_FORM,
                email=email,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                source=signup.source,
                context={"first_name": first_name, "last_name": last_name, "language": signup.language},
            ),
        )
    preferences.subscribe(email, NEWSLETTER_EMAIL_TYPE)

    service = email_service or EmailService(db, redis_client=redis_client)
    sent = await service.send(
        to=email,
        subject="Welcome to the PayMatch newsletter!",
        template="newsletter_welcome",
        context={"first_name": first_name, "language": signup.language, "app_url": get_app_url()},
        email_type=NEWSLETTER_EMAIL_TYPE,
    )
    email_sent = sent.success and not sent.skipped
    if not email_sent:
        logger.warning(
            "newsletter.welcome_email_failed",
            extra={"email": mask_email(email), "error": sent.error, "reason": sent.reason},
        )

    logger.info(
        "newsletter.subscribed",
        extra={"email": mask_email(email), "reactivated": reactivated, "source": signup.source},
    )
    return ActionResult.ok(
        MSG_SUBSCRIBED,
        data={"already_subscribed": False, "reactivated": reactivated, "email_sent": email_sent},
    )


def unsubscribe_from_newsletter(
    db: Session, token: str, client: Optional[ClientInfo] = None
) -> ActionResult:
    """Opt out through a signed newsletter unsubscribe link.

    Stops newsletter mail and withdraws the newsletter and marketing consents
    held for the address (and for the account, when the link carries one).

    Raises:
        ValueError: If UNSUBSCRIBE_TOKEN_SECRET is not set
    """
    data = verify_unsubscribe_token(token)
    if data is None:
        return ActionResult.fail("Invalid or expired unsubscribe link.", error="INVALID_TOKEN")
    if data.type not in {t.value for t in NEWSLETTER_EMAIL_TYPES}:
        return ActionResult.fail("This link is not a newsletter unsubscribe link.", error="INVALID_EMAIL_TYPE")

    EmailPreferencesService(db).unsubscribe(data.email, data.type, data.user_id)
    withdrawn = withdraw_consent(
        db, None, NEWSLETTER_CONSENTS, ConsentMethod.EMAIL_LINK, reason="newsletter_unsubscribe",
        email=data.email,
    )
    if data.user_id:
        withdrawn += withdraw_consent(
            db, data.user_id, NEWSLETTER_CONSENTS, ConsentMethod.EMAIL_LINK, reason="newsletter_unsubscribe"
        )

    logger.info(
        "newsletter.unsubscribed",
        extra={
            "email": mask_email(data.email),
            "email_type": data.type,
            "withdrawn": withdrawn,
            "ip_address": (client or ClientInfo()).ip_address,
        },
    )
    return ActionResult.ok(MSG_UNSUBSCRIBED, data={"email": data.email, "withdrawn": withdrawn})
