"""Per-address email subscription preferences.

No row means subscribed. Mandatory types are always subscribed.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from paymatch_api.auth.tokens import utcnow
from paymatch_api.db.models import EmailPreference
from paymatch_api.email.types import EmailType, MANDATORY_EMAIL_TYPES, is_mandatory_email_type
from paymatch_api.email.unsubscribe import verify_unsubscribe_token
from paymatch_api.results import ActionResult
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)


class MandatoryEmailTypeError(ValueError):
    """Raised when unsubscribing from an email type that cannot be opted out of."""

    def __init__(self, email_type: str):
        super().__init__(
            f"Cannot unsubscribe from {email_type} emails - they are required for "
            "account security, support and legal compliance"
        )
        self.email_type = email_type


def _normalize(email: str) -> str:
    return email.strip().lower()


class EmailPreferencesService:
    """Reads and writes ``email_preferences`` rows."""

    def __init__(self, db: Session):
        self.db = db

    def _get(self, email: str, email_type: EmailType) -> Optional[EmailPreference]:
        return (
            self.db.query(EmailPreference)
            .filter(
                EmailPreference.email == _normalize(email),
                EmailPreference.email_type == email_type.value,
            )
            .first()
        )

    def get_preferences(self, email: str) -> dict[str, bool]:
        """Subscription state for every email type (default: subscribed)."""
        rows = (
            self.db.query(EmailPreference)
            .filter(EmailPreference.email == _normalize(email))
            .all()
        )
        stored = {row.email_type: row.subscribed for row in rows}
        return {
            t.value: True if t in MANDATORY_EMAIL_TYPES else stored.get(t.value, True)
            for t in EmailType
        }

    def is_subscribed(self, email: str, email_type: "EmailType | str") -> bool:
        email_type = EmailType(email_type)
        if email_type in MANDATORY_EMAIL_TYPES:
            return True
        row = self._get(email, email_type)
        return row is None or row.subscribed

    def _upsert(
        self, email: str, email_type: EmailType, subscribed: bool, user_id: Optional[str]
    ) -> EmailPreference:
        row = self._get(email, email_type)
        if row is None:
            row = EmailPreference(email=_normalize(email), email_type=email_type.value)
            self.db.add(row)
        if user_id:
            row.user_id = user_id
        row.subscribed = subscribed
        row.unsubscribed_at = None if subscribed else utcnow()
        self.db.commit()
        return row

    def subscribe(
        self, email: str, email_type: "EmailType | str", user_id: Optional[str] = None
    ) -> EmailPreference:
        return self._upsert(email, EmailType(email_type), True, user_id)

    def unsubscribe(
        self, email: str, email_type: "EmailType | str", user_id: Optional[str] = None
    ) -> EmailPreference:
        """Opt out of an email type.

        Raises:
            MandatoryEmailTypeError: For security, transactional, support and legal
        """
        email_type = EmailType(email_type)
        if email_type in MANDATORY_EMAIL_TYPES:
            raise MandatoryEmailTypeError(email_type.value)
        row = self._upsert(email, email_type, False, user_id)
        logger.info(
            "email.unsubscribed",
            extra={"email": mask_email(email), "email_type": email_type.value},
        )
        return row

    def update_preferences(
        self, email: str, preferences: dict[str, bool], user_id: Optional[str] = None
    ) -> dict[str, bool]:
        """Apply a {email_type: subscribed} map; mandatory types are ignored."""
        for type_name, subscribed in preferences.items():
            if is_mandatory_email_type(type_name):
                continue
            self._upsert(email, EmailType(type_name), bool(subscribed), user_id)
        return self.get_preferences(email)

    def unsubscribe_with_token(self, token: str) -> ActionResult:
        """Unsubscribe using a signed link token."""
        data = verify_unsubscribe_token(token)
        if data is None:
            return ActionResult.fail(
                "Invalid or expired unsubscribe link.", error="INVALID_TOKEN"
            )
        try:
            email_type = EmailType(data.type)
        except ValueError:
            return ActionResult.fail("Unknown email type.", error="INVALID_EMAIL_TYPE")

        try:
            self.unsubscribe(data.email, email_type, data.user_id)
        except MandatoryEmailTypeError as e:
            return ActionResult.fail(str(e), error="MANDATORY_EMAIL_TYPE")

        return ActionResult.ok(
            f"Successfully unsubscribed from {email_type.value} emails",
            data={"email": data.email, "email_type": email_type.value},
        )
