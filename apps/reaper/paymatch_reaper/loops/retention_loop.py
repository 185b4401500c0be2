"""Retention Cleanup Loop.

Periodically purges rows that are no longer needed:
- Pending registrations past their expiry
- Audit logs older than PAYMATCH_AUDIT_LOG_RETENTION_DAYS (default: 90)
- Webhook dedup rows with status 'done' older than
  PAYMATCH_WEBHOOK_DEDUP_RETENTION_DAYS (default: 30)

Each purge commits on its own; one failing purge does not block the others.
"""

import logging
import os
import threading
import time
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import cleanup_old_audit_logs
from paymatch_api.auth.pending_registration import cleanup_expired_pending_registrations
from paymatch_api.billing.webhook_dedup import cleanup_old_dedup_events

logger = logging.getLogger(__name__)


class RetentionResult(BaseModel):
    pending_registrations: int = 0
    audit_logs: int = 0
    webhook_dedup_events: int = 0
    errors: list[str] = []


def get_audit_log_retention_days() -> int:
    return int(os.getenv("PAYMATCH_AUDIT_LOG_RETENTION_DAYS", "90"))


def get_webhook_dedup_retention_days() -> int:
    return int(os.getenv("PAYMATCH_WEBHOOK_DEDUP_RETENTION_DAYS", "30"))


def get_retention_loop_interval_seconds() -> int:
    """Loop interval in seconds (default: 21600 = 6 hours)."""
    return int(os.getenv("PAYMATCH_RETENTION_LOOP_INTERVAL_SECONDS", "21600"))


def run_retention_cleanup(
    session: Session,
    audit_retention_days: int,
    dedup_retention_days: int,
) -> RetentionResult:
    """Run one iteration of every purge."""
    result = RetentionResult()

    purges = (
        ("pending_registrations", lambda: cleanup_expired_pending_registrations(session)),
        ("audit_logs", lambda: cleanup_old_audit_logs(session, audit_retention_days)),
        ("webhook_dedup_events", lambda: cleanup_old_dedup_events(session, dedup_retention_days)),
    )
    for name, purge in purges:
        try:
            setattr(result, name, purge())
        except Exception as e:
            session.rollback()
            result.errors.append(name)
            logger.error(f"Retention purge '{name}' failed: {e}", exc_info=True)

    logger.info(
        "retention.cleanup.completed",
        extra={
            "pending_registrations": result.pending_registrations,
            "audit_logs": result.audit_logs,
            "webhook_dedup_events": result.webhook_dedup_events,
            "errors": result.errors,
        },
    )
    return result


def retention_loop(
    session_factory,
    interval_seconds: Optional[int] = None,
    audit_retention_days: Optional[int] = None,
    dedup_retention_days: Optional[int] = None,
    stop_event: Optional[threading.Event] = None,
):
    """Retention cleanup loop (runs in background thread).

    Args:
        session_factory: SQLAlchemy sessionmaker
        interval_seconds: Loop interval (default: PAYMATCH_RETENTION_LOOP_INTERVAL_SECONDS)
        audit_retention_days: Audit log cutoff (default: PAYMATCH_AUDIT_LOG_RETENTION_DAYS)
        dedup_retention_days: Dedup row cutoff (default: PAYMATCH_WEBHOOK_DEDUP_RETENTION_DAYS)
        stop_event: Set to end the loop after the current iteration
    """
    if interval_seconds is None:
        interval_seconds = get_retention_loop_interval_seconds()
    if audit_retention_days is None:
        audit_retention_days = get_audit_log_retention_days()
    if dedup_retention_days is None:
        dedup_retention_days = get_webhook_dedup_retention_days()

    logger.info(
        f"Starting retention cleanup loop: interval={interval_seconds}s, "
        f"audit={audit_retention_days} days, dedup={dedup_retention_days} days"
    )

    while stop_event is None or not stop_event.is_set():
        try:
            with session_factory() as session:
                run_retention_cleanup(
                    session=session,
                    audit_retention_days=audit_retention_days,
                    dedup_retention_days=dedup_retention_days,
                )
        except Exception as e:
            logger.error(f"Retention cleanup loop error: {e}", exc_info=True)

        if stop_event is not None:
            stop_event.wait(interval_seconds)
        else:
            time.sleep(interval_seconds)
