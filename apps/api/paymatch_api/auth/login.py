"""Password login and logout.

Rate limits: LOGIN_ATTEMPTS per email, AUTH_OPERATIONS per IP. A successful
login clears the per-email counter. Every outcome is audited.
"""

import logging
from typing import Any, Optional

import redis
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import log_login_attempt, log_rate_limit_hit, log_session_activity
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.session import get_active_membership
from paymatch_api.auth.session_timeout import SessionTimeoutService
from paymatch_api.auth.tokens import session_id_from_access_token
from paymatch_api.results import GENERIC_ERROR_MESSAGE, ActionResult
from paymatch_api.supabase_client import get_supabase_admin_client, get_supabase_client
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

MSG_TOO_MANY_ATTEMPTS = "Too many login attempts. Please try again later."
MSG_INVALID_CREDENTIALS = "Invalid email or password."
MSG_EMAIL_NOT_CONFIRMED = "Please verify your email address before signing in."


def _is_email_not_confirmed(error: Exception) -> bool:
    code = str(getattr(error, "code", "") or "").lower()
    return code == "email_not_confirmed" or "email not confirmed" in str(error).lower()


def login_redirect_for(db: Session, user_id: str) -> str:
    """/dashboard once onboarding is complete, otherwise /onboarding."""
    membership = get_active_membership(db, user_id)
    if membership is not None and membership[1].onboarding_completed:
        return "/dashboard"
    return "/onboarding"


def login_user(
    db: Session,
    email: str,
    password: str,
    remember_me: bool = False,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    supabase_client: Any = None,
) -> ActionResult:
    client = client or ClientInfo()
    email = email.strip().lower()
    limiter = RateLimiter(redis_client)

    limits = limiter.check_dual(email, client.ip_address, "LOGIN_ATTEMPTS", "AUTH_OPERATIONS")
    if not limits.allowed:
        limit_type = "LOGIN_ATTEMPTS" if not limits.email.allowed else "AUTH_OPERATIONS"
        log_rate_limit_hit(db, email, limit_type, client, {"operation": "login"})
        log_login_attempt(db, email, client, False, "Rate limit exceeded")
        return ActionResult.fail(
            MSG_TOO_MANY_ATTEMPTS,
            error="RATE_LIMITED",
            data={"retry_after": max(limits.email.retry_after, limits.ip.retry_after)},
        )

    try:
        auth = supabase_client or get_supabase_client()
        try:
            response = auth.auth.sign_in_with_password({"email": email, "password": password})
        except Exception as e:
            if _is_email_not_confirmed(e):
                log_login_attempt(db, email, client, False, "Email not confirmed")
                return ActionResult.fail(
                    MSG_EMAIL_NOT_CONFIRMED, error="EMAIL_NOT_CONFIRMED", redirect_to="/verify-email"
                )
            logger.info(
                "auth.login.rejected",
                extra={"email": mask_email(email), "error_type": type(e).__name__},
            )
            log_login_attempt(db, email, client, False, "Invalid credentials")
            return ActionResult.fail(MSG_INVALID_CREDENTIALS, error="INVALID_CREDENTIALS")

        user = getattr(response, "user", None)
        session = getattr(response, "session", None)
        if user is None or session is None:
            log_login_attempt(db, email, client, False, "Invalid credentials")
            return ActionResult.fail(MSG_INVALID_CREDENTIALS, error="INVALID_CREDENTIALS")

        if getattr(user, "email_confirmed_at", None) is None:
            log_login_attempt(db, email, client, False, "Email not confirmed", user_id=user.id)
            return ActionResult.fail(
                MSG_EMAIL_NOT_CONFIRMED, error="EMAIL_NOT_CONFIRMED", redirect_to="/verify-email"
            )

        limiter.clear(email, "LOGIN_ATTEMPTS")

        session_id = session_id_from_access_token(session.access_token)
        SessionTimeoutService(redis_client).update_session_activity(
            session_id, user.id, email=email, remember_me=remember_me, client=client
        )
        log_session_activity(
            db, "session_created", user.id, session_id, client, email,
            {"remember_me": remember_me},
        )

        redirect_to = login_redirect_for(db, user.id)
        log_login_attempt(db, email, client, True, user_id=user.id, details={"remember_me": remember_me})
        logger.info("auth.login.success", extra={"user_id": user.id, "redirect_to": redirect_to})

        return ActionResult.ok(
            "Login successful",
            redirect_to=redirect_to,
            data={
                "user_id": user.id,
                "email": getattr(user, "email", email),
                "access_token": session.access_token,
                "refresh_token": session.refresh_token,
                "expires_at": getattr(session, "expires_at", None),
                "session_id": session_id,
            },
        )

    except Exception as e:
        logger.error(
            "auth.login.error",
            extra={"email": mask_email(email), "error_type": type(e).__name__, "error": str(e)},
            exc_info=True,
        )
        log_login_attempt(db, email, client, False, str(e))
        return ActionResult.fail(GENERIC_ERROR_MESSAGE, error=type(e).__name__)


def logout_user(
    db: Session,
    access_token: str,
    user_id: Optional[str] = None,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    admin_client: Any = None,
) -> ActionResult:
    """Revoke the Supabase session and drop its activity record."""
    session_id = session_id_from_access_token(access_token)
    try:
        admin = admin_client or get_supabase_admin_client()
        admin.auth.admin.sign_out(access_token)
    except Exception as e:
        # The local session record is dropped regardless
        logger.warning("auth.logout.provider_failed", extra={"error_type": type(e).__name__})

    SessionTimeoutService(redis_client).invalidate_session(
        session_id, user_id, reason="manual_logout", db=db, client=client
    )
    return ActionResult.ok("Logged out", redirect_to="/login")
