"""Resend REST API client.

API Reference: https://resend.com/docs/api-reference/emails/send-email
"""

import logging
import os
from typing import Optional

import httpx

from paymatch_api.config.env import get_email_from

logger = logging.getLogger(__name__)


class ResendClient:
    """Resend email API client.

    Environment Variables:
    - RESEND_API_KEY: Resend API key
    - EMAIL_FROM: Default From header
    """

    def __init__(self):
        self.api_key = os.getenv("RESEND_API_KEY")
        if not self.api_key:
            raise ValueError(
                "RESEND_API_KEY is required. Set it in environment configuration."
            )
        self.base_url = os.getenv("RESEND_API_BASE_URL", "https://api.resend.com")
        self.default_from = get_email_from()

    async def send_email(
        self,
        *,
        to: "str | list[str]",
        subject: str,
        html: str,
        text: Optional[str] = None,
        from_address: Optional[str] = None,
        reply_to: Optional[str] = None,
        headers: Optional[dict[str, str]] = None,
        tags: Optional[list[dict[str, str]]] = None,
    ) -> dict:
        """Send one email.

        Returns:
            Resend response dict (``{"id": ...}``)

        Raises:
            httpx.HTTPStatusError: If Resend rejects the request
        """
        body: dict = {
            "from": from_address or self.default_from,
            "to": [to] if isinstance(to, str) else list(to),
            "subject": subject,
            "html": html,
        }
        if text:
            body["text"] = text
        if reply_to:
            body["reply_to"] = reply_to
        if headers:
            body["headers"] = headers
        if tags:
            body["tags"] = tags

        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{self.base_url}/emails",
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json=body,
                timeout=30.0,
            )
            response.raise_for_status()

            result = response.json()
            logger.info(
                "Email sent via Resend",
                extra={"event": "resend.email.sent", "message_id": result.get("id")},
            )
            return result


_resend_client: Optional[ResendClient] = None


def get_resend_client() -> ResendClient:
    """Get or create the Resend client singleton.

    Raises:
        ValueError: If RESEND_API_KEY is missing
    """
    global _resend_client
    if _resend_client is None:
        _resend_client = ResendClient()
    return _resend_client
