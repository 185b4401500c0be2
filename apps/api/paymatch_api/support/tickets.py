"""Support requests from the contact form.

A request is mailed to the team inbox (SUPPORT_EMAIL) with Reply-To set to the
requester, then confirmed to the requester. Only the team email is required
for success; a failed confirmation is logged and reported in the result.

Limits are per signed-in user, or per email for anonymous requests:
SUPPORT_TICKETS for the request itself, FILE_UPLOADS once per attachment.
"""

import logging
import re
import secrets
from enum import Enum
from typing import Optional

import redis
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import log_rate_limit_hit
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.validation import validate_email_address
from paymatch_api.config.env import get_support_email
from paymatch_api.email.email_service import EmailService
from paymatch_api.email.newsletter import validate_person_name
from paymatch_api.email.types import EmailType
from paymatch_api.results import ActionResult
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

MAX_ATTACHMENTS = 5
MAX_ATTACHMENT_BYTES = 10 * 1024 * 1024
COMPANY_MAX_LENGTH = 100
SUBJECT_MIN_LENGTH = 5
SUBJECT_MAX_LENGTH = 200
MESSAGE_MIN_LENGTH = 10
MESSAGE_MAX_LENGTH = 2000

_SUBJECT_PATTERN = re.compile(r"^[\w\s\-.,!?]+$")
_HAS_WORD_CHARACTER = re.compile(r"[^\W_]")

MSG_SUBMITTED = "Your support request has been sent. We will get back to you soon."
MSG_CONSENT_REQUIRED = "You must agree to the processing of your request."
MSG_RATE_LIMITED = "Too many support requests. Please try again later."
MSG_UPLOADS_LIMITED = "Too many file uploads. Please try again later."
MSG_SEND_FAILED = "Failed to send your support request. Please try again or email us directly."


class SupportCategory(str, Enum):
    GENERAL = "general"
    TECHNICAL = "technical"
    BILLING = "billing"
    FEATURE_REQUEST = "feature-request"
    BUG_REPORT = "bug-report"
    ACCOUNT = "account"
    INTEGRATION = "integration"
    OTHER = "other"


class SupportPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SupportAttachment(BaseModel):
    """An already uploaded file, referenced by URL."""

    filename: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    size_bytes: int = Field(..., ge=0)
    content_type: Optional[str] = Field(None, max_length=100)


class SupportRequestData(BaseModel):
    name: str
    email: str
    company: Optional[str] = None
    category: SupportCategory = SupportCategory.GENERAL
    priority: SupportPriority = SupportPriority.MEDIUM
    subject: str
    message: str
    attachments: list[SupportAttachment] = Field(default_factory=list)
    consent: bool = False


def _validate_subject(subject: str) -> Optional[str]:
    subject = (subject or "").strip()
    if len(subject) < SUBJECT_MIN_LENGTH:
        return f"Subject must be at least {SUBJECT_MIN_LENGTH} characters"
    if len(subject) > SUBJECT_MAX_LENGTH:
        return f"Subject must be at most {SUBJECT_MAX_LENGTH} characters"
    if not _SUBJECT_PATTERN.match(subject):
        return "Subject contains invalid characters"
    return None


def _validate_message(message: str) -> Optional[str]:
    message = (message or "").strip()
    if len(message) < MESSAGE_MIN_LENGTH:
        return f"Message must be at least {MESSAGE_MIN_LENGTH} characters"
    if len(message) > MESSAGE_MAX_LENGTH:
        return f"Message must be at most {MESSAGE_MAX_LENGTH} characters"
    if not _HAS_WORD_CHARACTER.search(message):
        return "Message must contain letters or numbers"
    return None


def _validate_attachments(attachments: list[SupportAttachment]) -> Optional[str]:
    if len(attachments) > MAX_ATTACHMENTS:
        return f"At most {MAX_ATTACHMENTS} attachments are allowed"
    for attachment in attachments:
        if attachment.size_bytes > MAX_ATTACHMENT_BYTES:
            return f"{attachment.filename} is larger than {MAX_ATTACHMENT_BYTES // (1024 * 1024)} MB"
    return None


def _field_errors(data: SupportRequestData) -> dict[str, str]:
    company = (data.company or "").strip()
    errors = {
        "name": validate_person_name(data.name, "Name"),
        "email": validate_email_address(data.email),
        "company": (
            f"Company must be at most {COMPANY_MAX_LENGTH} characters"
            if len(company) > COMPANY_MAX_LENGTH
            else None
        ),
        "subject": _validate_subject(data.subject),
        "message": _validate_message(data.message),
        "attachments": _validate_attachments(data.attachments),
        "consent": None if data.consent else MSG_CONSENT_REQUIRED,
    }
    return {field: message for field, message in errors.items() if message}


def generate_ticket_id() -> str:
    """Short reference quoted in both emails, e.g. ``PM-3F9A12C0``."""
    return f"PM-{secrets.token_hex(4).upper()}"


async def submit_support_request(
    db: Session,
    data: SupportRequestData,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    user_id: Optional[str] = None,
    email_service: Optional[EmailService] = None,
) -> ActionResult:
    """Mail a support request to the team and confirm it to the requester.

    Returns:
        ActionResult with ``data["ticket_id"]`` and ``data["confirmation_sent"]``
        on success
    """
    client = client or ClientInfo()
    errors = _field_errors(data)
    if errors:
        return ActionResult.fail(
            next(iter(errors.values())), error="VALIDATION_ERROR", data={"field_errors": errors}
        )

    email = data.email.strip().lower()
    identifier = user_id or email
    limiter = RateLimiter(redis_client)

    limit = limiter.rate_limit_support_tickets(identifier)
    if not limit.allowed:
        log_rate_limit_hit(db, identifier, "SUPPORT_TICKETS", client, {"operation": "support_request"})
        return ActionResult.fail(
            MSG_RATE_LIMITED, error="RATE_LIMITED", data={"retry_after": limit.retry_after}
        )

    for _ in data.attachments:
        upload = limiter.rate_limit_file_uploads(identifier)
        if not upload.allowed:
            log_rate_limit_hit(db, identifier, "FILE_UPLOADS", client, {"operation": "support_request"})
            return ActionResult.fail(
                MSG_UPLOADS_LIMITED, error="RATE_LIMITED", data={"retry_after": upload.retry_after}
            )

    ticket_id = generate_ticket_id()
    subject = data.subject.strip()
    context = {
        "ticket_id": ticket_id,
        "name": data.name.strip(),
        "email": email,
        "company": (data.company or "").strip() or None,
        "user_id": user_id,
        "category": data.category.value,
        "priority": data.priority.value,
        "ticket_subject": subject,
        "message": data.message.strip(),
        "attachments": [attachment.model_dump() for attachment in data.attachments],
    }

    service = email_service or EmailService(db, redis_client=redis_client)
    team = await service.send(
        to=get_support_email(),
        subject=f"[{data.priority.value.upper()}] {subject} ({ticket_id})",
        template="support_team_notification",
        context=context,
        email_type=EmailType.SUPPORT,
        reply_to=email,
    )
    if not team.success:
        logger.error(
            "support.team_email_failed",
            extra={"ticket_id": ticket_id, "email": mask_email(email), "error": team.error},
        )
        return ActionResult.fail(MSG_SEND_FAILED, error="EMAIL_SEND_FAILED")

    confirmation = await service.send(
        to=email,
        subject=f"We received your request: {subject} ({ticket_id})",
        template="support_confirmation",
        context=context,
        email_type=EmailType.SUPPORT,
        user_id=user_id,
    )
    if not confirmation.success:
        logger.warning(
            "support.confirmation_email_failed",
            extra={"ticket_id": ticket_id, "email": mask_email(email), "error": confirmation.error},
        )

    logger.info(
        "support.request_submitted",
        extra={
            "ticket_id": ticket_id,
            "email": mask_email(email),
            "user_id": user_id,
            "category": data.category.value,
            "priority": data.priority.value,
            "attachments": len(data.attachments),
        },
    )
    return ActionResult.ok(
        MSG_SUBMITTED,
        data={
            "ticket_id": ticket_id,
            "team_message_id": team.message_id,
            "confirmation_sent": confirmation.success,
        },
    )
