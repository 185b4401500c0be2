"""Best-effort audit logging to the ``audit_logs`` table.

Writes never block the primary operation: failures are rolled back,
logged and swallowed.
"""

import logging
from datetime import timedelta
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.tokens import utcnow
from paymatch_api.db.models import AuditLog
from paymatch_api.utils.sanitize import mask_email, redact_fields

logger = logging.getLogger(__name__)

AuditStatus = Literal["success", "failure", "error"]

DEFAULT_AUDIT_RETENTION_DAYS = 90


class AuditLogEntry(BaseModel):
    """Audit entry to persist."""

    action: str
    status: AuditStatus
    user_id: Optional[str] = None
    email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    session_id: Optional[str] = None


def log_audit_entry(db: Session, entry: AuditLogEntry) -> None:
    """Insert one audit row. Never raises."""
    try:
        db.add(
            AuditLog(
                user_id=entry.user_id,
                email=entry.email,
                ip_address=entry.ip_address,
                user_agent=entry.user_agent,
                action=entry.action,
                resource_type=entry.resource_type,
                resource_id=entry.resource_id,
                details=redact_fields(entry.details),
                status=entry.status,
                error_message=entry.error_message,
                session_id=entry.session_id,
            )
        )
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "audit.write_failed",
            extra={"action": entry.action, "error_type": type(e).__name__, "error": str(e)},
        )


def _entry(
    action: str,
    status: AuditStatus,
    client: Optional[ClientInfo],
    **kwargs: Any,
) -> AuditLogEntry:
    client = client or ClientInfo()
    return AuditLogEntry(
        action=action,
        status=status,
        ip_address=client.ip_address,
        user_agent=client.user_agent,
        **kwargs,
    )


def log_auth_success(
    db: Session,
    action: str,
    client: Optional[ClientInfo] = None,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    log_audit_entry(
        db,
        _entry(action, "success", client, user_id=user_id, email=email,
               resource_type="user", resource_id=user_id, details=details or {}),
    )


def log_auth_failure(
    db: Session,
    action: str,
    reason: str,
    client: Optional[ClientInfo] = None,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    log_audit_entry(
        db,
        _entry(action, "failure", client, user_id=user_id, email=email,
               resource_type="user", resource_id=user_id,
               error_message=reason, details=details or {}),
    )


def log_auth_error(
    db: Session,
    action: str,
    error: "Exception | str",
    client: Optional[ClientInfo] = None,
    user_id: Optional[str] = None,
    email: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    merged = dict(details or {})
    if isinstance(error, Exception):
        merged.setdefault("error_type", type(error).__name__)
    log_audit_entry(
        db,
        _entry(action, "error", client, user_id=user_id, email=email,
               resource_type="user", resource_id=user_id,
               error_message=str(error), details=merged),
    )


def _log_attempt(
    db: Session,
    action: str,
    email: str,
    client: Optional[ClientInfo],
    success: bool,
    error_message: Optional[str],
    details: Optional[dict[str, Any]],
    user_id: Optional[str] = None,
) -> None:
    log_audit_entry(
        db,
        _entry(
            action,
            "success" if success else "failure",
            client,
            user_id=user_id,
            email=email,
            resource_type="user",
            resource_id=user_id,
            error_message=error_message,
            details=details or {},
        ),
    )


def log_registration_attempt(
    db: Session,
    email: str,
    client: Optional[ClientInfo],
    success: bool,
    error_message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    _log_attempt(db, "user_registration", email, client, success, error_message, details)


def log_login_attempt(
    db: Session,
    email: str,
    client: Optional[ClientInfo],
    success: bool,
    error_message: Optional[str] = None,
    user_id: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    _log_attempt(db, "user_login", email, client, success, error_message, details, user_id)


def log_password_reset_attempt(
    db: Session,
    email: str,
    client: Optional[ClientInfo],
    success: bool,
    error_message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    _log_attempt(db, "password_reset", email, client, success, error_message, details)


def log_email_verification_attempt(
    db: Session,
    email: str,
    client: Optional[ClientInfo],
    success: bool,
    error_message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    _log_attempt(db, "email_verification", email, client, success, error_message, details)


def log_session_activity(
    db: Session,
    action: str,
    user_id: str,
    session_id: Optional[str] = None,
    client: Optional[ClientInfo] = None,
    email: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    log_audit_entry(
        db,
        _entry(action, "success", client, user_id=user_id, email=email,
               resource_type="session", resource_id=session_id,
               session_id=session_id, details=details or {}),
    )


def log_rate_limit_hit(
    db: Session,
    identifier: str,
    rate_limit_type: str,
    client: Optional[ClientInfo] = None,
    details: Optional[dict[str, Any]] = None,
) -> None:
    merged = {"identifier": mask_email(identifier) if "@" in identifier else identifier,
              "rate_limit_type": rate_limit_type}
    merged.update(details or {})
    log_audit_entry(
        db,
        _entry("rate_limit_hit", "failure", client, resource_type="rate_limit",
               resource_id=rate_limit_type, error_message="Rate limit exceeded",
               details=merged),
    )


def get_user_audit_logs(
    db: Session, user_id: str, limit: int = 50, offset: int = 0
) -> list[AuditLog]:
    """Audit rows of a user, newest first."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.user_id == user_id)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_ip_audit_logs(
    db: Session, ip_address: str, limit: int = 50, offset: int = 0
) -> list[AuditLog]:
    """Audit rows originating from an IP, newest first."""
    return (
        db.query(AuditLog)
        .filter(AuditLog.ip_address == ip_address)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def cleanup_old_audit_logs(db: Session, retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS) -> int:
    """Delete audit rows older than the retention window.

    Returns:
        Number of rows deleted
    """
    cutoff = utcnow() - timedelta(days=retention_days)
    deleted = (
        db.query(AuditLog)
        .filter(AuditLog.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info(
        "audit.cleanup.completed",
        extra={"deleted_count": deleted, "retention_days": retention_days},
    )
    return deleted
