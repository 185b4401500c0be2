"""Passwordless login via Supabase magic links."""

import logging
from typing import Any, Optional

import redis
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import (
    log_auth_failure,
    log_auth_success,
    log_rate_limit_hit,
    log_session_activity,
)
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.session_timeout import SessionTimeoutService
from paymatch_api.auth.tokens import session_id_from_access_token
from paymatch_api.auth.user_operations import find_user_by_email
from paymatch_api.auth.validation import validate_email_address
from paymatch_api.email.auth_emails import send_magic_link_email
from paymatch_api.email.email_service import EmailService
from paymatch_api.results import GENERIC_ERROR_MESSAGE, ActionResult
from paymatch_api.supabase_client import get_supabase_client
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

MSG_MAGIC_LINK_SENT = (
    "If an account with that email exists, a magic link has been sent. "
    "Please check your email and spam folder."
)
MSG_INVALID_MAGIC_LINK = "Invalid or expired magic link. Please request a new one."


def _first_name(user: Any, fallback: str) -> str:
    metadata = getattr(user, "user_metadata", None) or {}
    return metadata.get("first_name") or metadata.get("name") or fallback


async def send_magic_link(
    db: Session,
    email: str,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    admin_client: Any = None,
    email_service: Optional[EmailService] = None,
) -> ActionResult:
    """Send a magic link if the account exists.

    The response does not reveal whether the account exists.
    """
    client = client or ClientInfo()
    email = (email or "").strip().lower()

    invalid = validate_email_address(email)
    if invalid:
        return ActionResult.fail("Please enter a valid email address", error="VALIDATION_ERROR")

    limit = RateLimiter(redis_client).check(email, "EMAIL_VERIFICATION")
    if not limit.allowed:
        log_rate_limit_hit(db, email, "EMAIL_VERIFICATION", client, {"operation": "magic_link"})
        return ActionResult.fail(
            "Too many requests. Please wait before trying again.",
            error="RATE_LIMITED",
            data={"retry_after": limit.retry_after},
        )

    try:
        user = find_user_by_email(email, admin_client)
        if user is None:
            logger.info("auth.magic_link.unknown_email", extra={"email": mask_email(email)})
            return ActionResult.ok(MSG_MAGIC_LINK_SENT)

        sent = await send_magic_link_email(
            db, email, _first_name(user, email), admin_client=admin_client, email_service=email_service
        )
        if not sent.success:
            log_auth_failure(
                db, "magic_link_login_attempt", sent.error or "Failed to send email",
                client, user_id=user.id, email=email, details={"method": "magic_link"},
            )
            return ActionResult.ok(MSG_MAGIC_LINK_SENT)

        log_auth_success(
            db, "magic_link_sent", client, user_id=user.id, email=email,
            details={"method": "magic_link"},
        )
        return ActionResult.ok(MSG_MAGIC_LINK_SENT)

    except Exception as e:
        logger.error(
            "auth.magic_link.error",
            extra={"email": mask_email(email), "error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)


def verify_magic_link(
    db: Session,
    token_hash: str,
    otp_type: str = "magiclink",
    client: Optional[ClientInfo] = None,
    supabase_client: Any = None,
    redis_client: Optional[redis.Redis] = None,
) -> ActionResult:
    """Exchange a magic link token hash for a session and start its activity tracking."""
    try:
        auth = supabase_client or get_supabase_client()
        try:
            response = auth.auth.verify_otp({"token_hash": token_hash, "type": otp_type})
        except Exception as e:
            log_auth_failure(
                db, "magic_link_verification", str(e), client,
                details={"method": "magic_link", "token_type": otp_type},
            )
            return ActionResult.fail(MSG_INVALID_MAGIC_LINK, error="INVALID_TOKEN")

        user = getattr(response, "user", None)
        session = getattr(response, "session", None)
        if user is None or session is None:
            log_auth_failure(
                db, "magic_link_verification", "No session returned", client,
                details={"method": "magic_link", "token_type": otp_type},
            )
            return ActionResult.fail(MSG_INVALID_MAGIC_LINK, error="INVALID_TOKEN")

        email = getattr(user, "email", None)
        session_id = session_id_from_access_token(session.access_token)
        SessionTimeoutService(redis_client).update_session_activity(
            session_id, user.id, email=email, client=client
        )
        log_session_activity(
            db, "session_created", user.id, session_id, client, email, {"method": "magic_link"}
        )

        log_auth_success(
            db, "magic_link_login_success", client, user_id=user.id,
            email=email,
            details={"method": "magic_link", "token_type": otp_type},
        )
        return ActionResult.ok(
            "Successfully signed in with magic link!",
            data={
                "user_id": user.id,
                "email": email,
                "access_token": session.access_token,
                "refresh_token": session.refresh_token,
                "expires_at": getattr(session, "expires_at", None),
                "session_id": session_id,
            },
        )
    except Exception as e:
        logger.error(
            "auth.magic_link.verify_error",
            extra={"error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)
