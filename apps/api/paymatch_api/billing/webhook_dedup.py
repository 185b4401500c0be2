"""Webhook dedup gate: atomic INSERT ON CONFLICT for concurrent idempotency.

At most one successful processing per (provider, dedup_key), even when Stripe
delivers the same event concurrently or retries it:

  1. INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
       → row returned  : first processor → continue
       → no row        : conflict → check for a re-processable failure
  2. UPDATE ... WHERE status='failed' RETURNING id
       → row returned  : previous attempt failed; re-claim it
       → no row        : 'done' or 'processing' → duplicate, acknowledge
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

STRIPE_PROVIDER = "stripe"
DEFAULT_DEDUP_RETENTION_DAYS = 30


def get_stripe_dedup_key(event: dict) -> str:
    """``ev_{event.id}``; Stripe event ids are unique and stable across retries.

    Raises ValueError if the event has no id.
    """
    event_id = event.get("id")
    if not event_id:
        raise ValueError("Cannot derive Stripe dedup_key: event 'id' missing")
    return f"ev_{event_id}"


def try_acquire_dedup(
    db: Session,
    provider: str,
    dedup_key: str,
    request_hash: Optional[str] = None,
) -> bool:
    """Claim processing rights for (provider, dedup_key).

    Returns:
        True: first delivery, or a previous 'failed' attempt was reclaimed
        False: already 'done' or being processed concurrently
    """
    now = datetime.now(timezone.utc)

    insert_sql = text("""
        INSERT INTO webhook_dedup_events
            (provider, dedup_key, first_seen_at, status, request_hash)
        VALUES
            (:provider, :dedup_key, :now, 'processing', :request_hash)
        ON CONFLICT (provider, dedup_key) DO NOTHING
        RETURNING id
    """)
    row = db.execute(insert_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
        "request_hash": request_hash,
    }).fetchone()

    if row is not None:
        db.commit()
        logger.debug(
            "WEBHOOK_DEDUP_ACQUIRED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    retry_sql = text("""
        UPDATE webhook_dedup_events
        SET status = 'processing', last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key AND status = 'failed'
        RETURNING id
    """)
    retry_row = db.execute(retry_sql, {
        "provider": provider,
        "dedup_key": dedup_key,
        "now": now,
    }).fetchone()

    db.commit()
    if retry_row is not None:
        logger.info(
            "WEBHOOK_DEDUP_RETRY_RECLAIMED",
            extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
        )
        return True

    logger.info(
        "WEBHOOK_DEDUP_DUPLICATE",
        extra={"provider": provider, "dedup_key_prefix": dedup_key[:16]},
    )
    return False


def _set_status(db: Session, provider: str, dedup_key: str, status: str) -> None:
    sql = text("""
        UPDATE webhook_dedup_events
        SET status = :status, last_seen_at = :now
        WHERE provider = :provider AND dedup_key = :dedup_key
    """)
    db.execute(sql, {
        "status": status,
        "provider": provider,
        "dedup_key": dedup_key,
        "now": datetime.now(timezone.utc),
    })
    db.commit()


def mark_dedup_done(db: Session, provider: str, dedup_key: str) -> None:
    _set_status(db, provider, dedup_key, "done")


def mark_dedup_failed(db: Session, provider: str, dedup_key: str) -> None:
    """Mark as 'failed' so the next Stripe retry can reclaim it."""
    _set_status(db, provider, dedup_key, "failed")


def cleanup_old_dedup_events(
    db: Session, retention_days: int = DEFAULT_DEDUP_RETENTION_DAYS
) -> int:
    """Delete 'done' rows first seen more than ``retention_days`` ago."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    result = db.execute(
        text("""
            DELETE FROM webhook_dedup_events
            WHERE status = 'done' AND first_seen_at < :cutoff
        """),
        {"cutoff": cutoff},
    )
    db.commit()
    return result.rowcount or 0
