"""Authentication emails (verification, password reset, magic link).

All are sent as ``security`` emails: no unsubscribe links, never suppressed
by preferences.
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from sqlalchemy.orm import Session

from paymatch_api.auth.tokens import PASSWORD_RESET_TOKEN_TTL, VERIFICATION_TOKEN_TTL
from paymatch_api.config.env import get_app_url
from paymatch_api.email.email_service import EmailSendResult, EmailService
from paymatch_api.email.types import EmailType
from paymatch_api.supabase_client import get_supabase_admin_client
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)


def build_verification_url(token: str) -> str:
    return f"{get_app_url()}/verify-email?{urlencode({'token': token})}"


def build_password_reset_url(token: str) -> str:
    return f"{get_app_url()}/reset-password?{urlencode({'token': token})}"


async def send_verification_email(
    db: Session,
    email: str,
    first_name: str,
    token: str,
    email_service: Optional[EmailService] = None,
) -> EmailSendResult:
    service = email_service or EmailService(db)
    return await service.send(
        to=email,
        subject="Verify your PayMatch account",
        template="verification",
        context={
            "first_name": first_name,
            "verification_url": build_verification_url(token),
            "expires_in_hours": int(VERIFICATION_TOKEN_TTL.total_seconds() // 3600),
        },
        email_type=EmailType.SECURITY,
    )


async def send_password_reset_email(
    db: Session,
    email: str,
    first_name: str,
    token: str,
    email_service: Optional[EmailService] = None,
) -> EmailSendResult:
    service = email_service or EmailService(db)
    return await service.send(
        to=email,
        subject="Reset your PayMatch password",
        template="password_reset",
        context={
            "first_name": first_name,
            "reset_url": build_password_reset_url(token),
            "expires_in_minutes": int(PASSWORD_RESET_TOKEN_TTL.total_seconds() // 60),
        },
        email_type=EmailType.SECURITY,
    )


def generate_magic_link_url(email: str, admin_client: Any = None) -> str:
    """Generate a Supabase magic link and point it at our auth callback.

    Raises:
        RuntimeError: If Supabase returns no hashed token
    """
    client = admin_client or get_supabase_admin_client()
    callback_url = f"{get_app_url()}/auth/callback"
    response = client.auth.admin.generate_link(
        {
            "type": "magiclink",
            "email": email,
            "options": {"redirect_to": callback_url},
        }
    )
    properties = getattr(response, "properties", None)
    token_hash = getattr(properties, "hashed_token", None)
    if not token_hash:
        raise RuntimeError("Supabase generate_link returned no hashed token")
    return f"{callback_url}?{urlencode({'token_hash': token_hash, 'type': 'magiclink'})}"


async def send_magic_link_email(
    db: Session,
    email: str,
    first_name: str,
    admin_client: Any = None,
    email_service: Optional[EmailService] = None,
) -> EmailSendResult:
    try:
        magic_link_url = generate_magic_link_url(email, admin_client)
    except Exception as e:
        logger.error(
            "email.magic_link.generate_failed",
            extra={"email": mask_email(email), "error_type": type(e).__name__, "error": str(e)},
        )
        return EmailSendResult(success=False, error=str(e))

    service = email_service or EmailService(db)
    return await service.send(
        to=email,
        subject="Your PayMatch sign-in link",
        template="magic_link",
        context={"first_name": first_name, "magic_link_url": magic_link_url},
        email_type=EmailType.SECURITY,
    )
