"""PayMatch Reaper main entry point.

Retention Loop:
   - Purge expired pending registrations
   - Purge audit logs older than PAYMATCH_AUDIT_LOG_RETENTION_DAYS (default: 90)
   - Purge finished webhook dedup rows older than
     PAYMATCH_WEBHOOK_DEDUP_RETENTION_DAYS (default: 30)
   - Interval: 6 hours (21600 seconds)
"""

import logging
import os
import threading
from pathlib import Path

from paymatch_api.config.env import get_database_url
from paymatch_api.db.engine import build_engine, build_sessionmaker
from paymatch_api.utils import configure_json_logging
from paymatch_reaper.loops.retention_loop import (
    get_audit_log_retention_days,
    get_retention_loop_interval_seconds,
    get_webhook_dedup_retention_days,
    retention_loop,
)

configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"), service="paymatch-reaper")
logger = logging.getLogger(__name__)

READY_FILE_PATH = "/tmp/reaper-ready"


def main() -> None:
    """Start the retention loop thread and block until it exits."""
    Path(READY_FILE_PATH).unlink(missing_ok=True)

    database_url = get_database_url()

    retention_enabled = os.getenv("PAYMATCH_RETENTION_ENABLED", "true").lower() in {"true", "1", "yes"}
    if not retention_enabled:
        logger.info("Retention Loop: DISABLED (PAYMATCH_RETENTION_ENABLED=false)")
        return

    interval_sec = get_retention_loop_interval_seconds()
    audit_days = get_audit_log_retention_days()
    dedup_days = get_webhook_dedup_retention_days()

    engine = build_engine(database_url)
    SessionLocal = build_sessionmaker(engine)

    logger.info(
        f"Retention Loop: interval={interval_sec}s, audit={audit_days} days, dedup={dedup_days} days"
    )

    retention_thread = threading.Thread(
        target=retention_loop,
        kwargs={
            "session_factory": SessionLocal,
            "interval_seconds": interval_sec,
            "audit_retention_days": audit_days,
            "dedup_retention_days": dedup_days,
        },
        name="RetentionLoop",
        daemon=False,
    )

    try:
        retention_thread.start()

        with open(READY_FILE_PATH, "w") as f:
            f.write("ready\n")
        logger.info(f"Readiness file created: {READY_FILE_PATH}")

        # Blocks until SIGTERM/SIGINT
        retention_thread.join()

    except KeyboardInterrupt:
        logger.info("Reaper stopped by user (KeyboardInterrupt)")

    finally:
        Path(READY_FILE_PATH).unlink(missing_ok=True)
        engine.dispose()
        logger.info("Reaper shutdown complete")


if __name__ == "__main__":
    main()
