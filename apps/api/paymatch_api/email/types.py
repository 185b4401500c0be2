"""Email categories and their unsubscribe rules."""

from enum import Enum


class EmailType(str, Enum):
    NEWSLETTER_PROMOTIONAL = "newsletter_promotional"
    NEWSLETTER_INFORMATIONAL = "newsletter_informational"
    NEWSLETTER_NEWS = "newsletter_news"
    SUPPORT = "support"
    TRANSACTIONAL = "transactional"
    SECURITY = "security"
    LEGAL = "legal"
    BUSINESS_NOTIFICATIONS = "business_notifications"
    OVERDUE_ALERTS = "overdue_alerts"


# Never carry unsubscribe headers; cannot be unsubscribed from.
MANDATORY_EMAIL_TYPES: frozenset[EmailType] = frozenset(
    {EmailType.SECURITY, EmailType.TRANSACTIONAL, EmailType.SUPPORT, EmailType.LEGAL}
)

OPTIONAL_EMAIL_TYPES: tuple[EmailType, ...] = tuple(
    t for t in EmailType if t not in MANDATORY_EMAIL_TYPES
)


def is_mandatory_email_type(email_type: "EmailType | str") -> bool:
    try:
        return EmailType(email_type) in MANDATORY_EMAIL_TYPES
    except ValueError:
        return False
