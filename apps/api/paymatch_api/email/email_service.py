"""Outbound email: preference and consent gates, rendering, unsubscribe headers, Resend."""

import logging
from typing import Any, Optional

import httpx
import redis
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.consent.consent_service import (
    email_type_requires_marketing_consent,
    has_marketing_consent,
)
from paymatch_api.email.preferences import EmailPreferencesService
from paymatch_api.email.renderer import EmailRenderer, get_email_renderer
from paymatch_api.email.resend import ResendClient, get_resend_client
from paymatch_api.email.types import EmailType, MANDATORY_EMAIL_TYPES
from paymatch_api.email.unsubscribe import generate_unsubscribe_url, get_unsubscribe_headers
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)


class EmailSendResult(BaseModel):
    success: bool
    message_id: Optional[str] = None
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None


class EmailService:
    """Sends templated email on behalf of the application.

    Non-mandatory types are skipped for unsubscribed recipients and get a
    footer link plus List-Unsubscribe headers. Promotional newsletters also
    require a valid marketing consent. Optional mail addressed to a known user
    counts against that user's EMAIL_SENDING limit.
    """

    def __init__(
        self,
        db: Session,
        resend_client: Optional[ResendClient] = None,
        renderer: Optional[EmailRenderer] = None,
        redis_client: Optional[redis.Redis] = None,
    ):
        self.db = db
        self._resend = resend_client
        self._redis = redis_client
        self.renderer = renderer or get_email_renderer()
        self.preferences = EmailPreferencesService(db)

    @property
    def resend(self) -> ResendClient:
        if self._resend is None:
            self._resend = get_resend_client()
        return self._resend

    async def send(
        self,
        to: str,
        subject: str,
        template: str,
        context: Optional[dict[str, Any]] = None,
        email_type: "EmailType | str" = EmailType.TRANSACTIONAL,
        user_id: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> EmailSendResult:
        email_type = EmailType(email_type)
        mandatory = email_type in MANDATORY_EMAIL_TYPES

        if not mandatory and not self.preferences.is_subscribed(to, email_type):
            logger.info(
                "email.skipped.unsubscribed",
                extra={"email": mask_email(to), "email_type": email_type.value},
            )
            return EmailSendResult(success=True, skipped=True, reason="unsubscribed")

        if email_type_requires_marketing_consent(email_type.value):
            if not has_marketing_consent(self.db, user_id=user_id, email=to):
                logger.info(
                    "email.skipped.no_marketing_consent",
                    extra={"email": mask_email(to), "email_type": email_type.value},
                )
                return EmailSendResult(success=True, skipped=True, reason="no_marketing_consent")

        if not mandatory and user_id:
            limit = RateLimiter(self._redis).rate_limit_email_sending(user_id)
            if not limit.allowed:
                logger.warning(
                    "email.skipped.rate_limited",
                    extra={"email": mask_email(to), "email_type": email_type.value},
                )
                return EmailSendResult(success=False, skipped=True, reason="rate_limited")

        unsubscribe_url = None
        headers: dict[str, str] = {}
        if not mandatory:
            try:
                unsubscribe_url = generate_unsubscribe_url(to, email_type.value, user_id)
                headers = get_unsubscribe_headers(to, email_type.value, user_id)
            except ValueError as e:
                # Missing UNSUBSCRIBE_TOKEN_SECRET: send without unsubscribe links
                logger.warning("email.unsubscribe_unavailable", extra={"error": str(e)})

        html, text = self.renderer.render(
            template,
            **{"subject": subject, "unsubscribe_url": unsubscribe_url, **(context or {})},
        )

        try:
            result = await self.resend.send_email(
                to=to,
                subject=subject,
                html=html,
                text=text,
                reply_to=reply_to,
                headers=headers or None,
                tags=[{"name": "email_type", "value": email_type.value}],
            )
        except (httpx.HTTPError, ValueError) as e:
            logger.error(
                "email.send_failed",
                extra={
                    "email": mask_email(to),
                    "email_type": email_type.value,
                    "template": template,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return EmailSendResult(success=False, error=str(e))

        return EmailSendResult(success=True, message_id=result.get("id"))
