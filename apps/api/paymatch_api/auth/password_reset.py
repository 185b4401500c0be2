"""Password reset: request, token verification, reset.

Reset tokens live in Redis under ``password_reset:{token}`` with a TTL equal
to their expiry (1 hour). An address with only a pending registration gets a
fresh verification link instead, since its password is chosen there.
"""

import logging
from typing import Any, Optional

import redis
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import log_password_reset_attempt, log_rate_limit_hit
from paymatch_api.auth.cache import CacheService
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.pending_registration import (
    check_pending_registration,
    delete_pending_registration,
    rotate_verification_token,
)
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.tokens import generate_password_reset_token, is_token_expired, utcnow
from paymatch_api.auth.user_operations import find_user_by_email
from paymatch_api.auth.validation import validate_email_address, validate_password_strength
from paymatch_api.config.redis_config import KEY_PREFIXES
from paymatch_api.db.redis_client import RedisClient, get_json, set_json
from paymatch_api.email.auth_emails import send_password_reset_email, send_verification_email
from paymatch_api.email.email_service import EmailService
from paymatch_api.results import ActionResult
from paymatch_api.supabase_client import get_supabase_admin_client
from paymatch_api.utils.sanitize import mask_email

logger = logging.getLogger(__name__)

MSG_RESET_SENT = "If an account with that email exists, we've sent a password reset link."
MSG_RESET_RATE_LIMITED = "Too many password reset attempts. Please wait before trying again."
MSG_RESET_SEND_FAILED = "Failed to send password reset email. Please try again."
MSG_INVALID_RESET_TOKEN = "Invalid or expired reset token."
MSG_RESET_FAILED = "Failed to reset password. Please try again."
MSG_RESET_DONE = "Password reset successfully! You can now sign in with your new password."


class PasswordResetToken(BaseModel):
    token: str
    user_id: str
    email: str
    expires_at: str


def password_reset_key(token: str) -> str:
    return f"{KEY_PREFIXES['PASSWORD_RESET']}:{token}"


async def request_password_reset(
    db: Session,
    email: str,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    admin_client: Any = None,
    email_service: Optional[EmailService] = None,
) -> ActionResult:
    client = client or ClientInfo()
    email = (email or "").strip().lower()
    r = redis_client or RedisClient.get_client()

    if validate_email_address(email):
        return ActionResult.fail("Please enter a valid email address", error="VALIDATION_ERROR")

    limit = RateLimiter(r).check(email, "PASSWORD_RESET")
    if not limit.allowed:
        log_rate_limit_hit(db, email, "PASSWORD_RESET", client, {"operation": "password_reset"})
        return ActionResult.fail(
            MSG_RESET_RATE_LIMITED, error="RATE_LIMITED", data={"retry_after": limit.retry_after}
        )

    try:
        user = find_user_by_email(email, admin_client)
    except Exception as e:
        logger.error(
            "auth.password_reset.lookup_failed",
            extra={"email": mask_email(email), "error_type": type(e).__name__, "error": str(e)},
        )
        return ActionResult.fail(MSG_RESET_SEND_FAILED, error=type(e).__name__)

    if user is None:
        return await _reset_pending_registration(db, email, client, email_service)

    token, expires_at = generate_password_reset_token()
    record = PasswordResetToken(
        token=token, user_id=user.id, email=user.email or email, expires_at=expires_at.isoformat()
    )
    ttl = max(1, int((expires_at - utcnow()).total_seconds()))
    try:
        set_json(r, password_reset_key(token), record.model_dump(), ttl)
    except redis.RedisError as e:
        logger.error("auth.password_reset.store_failed", extra={"error": str(e)})
        return ActionResult.fail(MSG_RESET_SEND_FAILED, error="STORE_FAILED")

    metadata = getattr(user, "user_metadata", None) or {}
    sent = await send_password_reset_email(
        db, email, metadata.get("first_name") or email, token, email_service=email_service
    )
    if not sent.success:
        logger.error(
            "auth.password_reset.email_failed",
            extra={"email": mask_email(email), "error": sent.error},
        )
        log_password_reset_attempt(db, email, client, False, "Failed to send email", {"stage": "request"})
        return ActionResult.fail(MSG_RESET_SEND_FAILED, error="EMAIL_FAILED")

    log_password_reset_attempt(db, email, client, True, details={"stage": "request"})
    return ActionResult.ok(MSG_RESET_SENT)


async def _reset_pending_registration(
    db: Session,
    email: str,
    client: ClientInfo,
    email_service: Optional[EmailService],
) -> ActionResult:
    """Reset request for an address without an account.

    A pending registration has no password yet; it is chosen on the
    verification page, so the verification link is rotated and sent again.
    Expired pending rows are deleted. The response is MSG_RESET_SENT either way.
    """
    if not check_pending_registration(db, email)["exists"]:
        if delete_pending_registration(db, email):
            logger.info("auth.password_reset.expired_pending_deleted", extra={"email": mask_email(email)})
        log_password_reset_attempt(db, email, client, False, "Unknown email", {"stage": "request"})
        return ActionResult.ok(MSG_RESET_SENT)

    pending = rotate_verification_token(db, email)
    sent = await send_verification_email(
        db, email, pending.first_name, pending.verification_token, email_service=email_service
    )
    if not sent.success:
        logger.error(
            "auth.password_reset.pending_email_failed",
            extra={"email": mask_email(email), "error": sent.error},
        )
        log_password_reset_attempt(
            db, email, client, False, "Failed to send email", {"stage": "request", "pending_registration": True}
        )
        return ActionResult.fail(MSG_RESET_SEND_FAILED, error="EMAIL_FAILED")

    log_password_reset_attempt(db, email, client, True, details={"stage": "request", "pending_registration": True})
    return ActionResult.ok(MSG_RESET_SENT)


def get_reset_token(r: redis.Redis, token: str) -> Optional[PasswordResetToken]:
    try:
        data = get_json(r, password_reset_key(token))
    except redis.RedisError as e:
        logger.warning("auth.password_reset.lookup_failed", extra={"error": str(e)})
        return None
    if not data:
        return None
    record = PasswordResetToken(**data)
    if is_token_expired(record.expires_at):
        r.delete(password_reset_key(token))
        return None
    return record


def verify_reset_token(redis_client: Optional[redis.Redis], token: str) -> dict[str, Any]:
    """{"valid": bool, "error"?: str}"""
    r = redis_client or RedisClient.get_client()
    if not token or get_reset_token(r, token) is None:
        return {"valid": False, "error": MSG_INVALID_RESET_TOKEN}
    return {"valid": True}


def reset_password(
    db: Session,
    token: str,
    new_password: str,
    client: Optional[ClientInfo] = None,
    redis_client: Optional[redis.Redis] = None,
    admin_client: Any = None,
) -> ActionResult:
    weak = validate_password_strength(new_password)
    if weak:
        return ActionResult.fail(weak, error="VALIDATION_ERROR")

    r = redis_client or RedisClient.get_client()
    record = get_reset_token(r, token) if token else None
    if record is None:
        return ActionResult.fail(MSG_INVALID_RESET_TOKEN, error="INVALID_TOKEN")

    try:
        admin = admin_client or get_supabase_admin_client()
        admin.auth.admin.update_user_by_id(record.user_id, {"password": new_password})
    except Exception as e:
        logger.error(
            "auth.password_reset.update_failed",
            extra={"user_id": record.user_id, "error_type": type(e).__name__, "error": str(e)},
        )
        log_password_reset_attempt(db, record.email, client, False, str(e), {"stage": "reset"})
        return ActionResult.fail(MSG_RESET_FAILED, error=type(e).__name__)

    try:
        r.delete(password_reset_key(token))
    except redis.RedisError as e:
        logger.warning("auth.password_reset.delete_failed", extra={"error": str(e)})

    CacheService(r).clear_user_caches(record.user_id)
    log_password_reset_attempt(
        db, record.email, client, True, details={"stage": "reset", "user_id": record.user_id}
    )
    logger.info("auth.password_reset.completed", extra={"user_id": record.user_id})
    return ActionResult.ok(MSG_RESET_DONE, redirect_to="/login")
