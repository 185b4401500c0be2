"""Onboarding draft persistence.

The draft lives on ``organizations.onboarding_draft`` as
``{"step": int, "data": {...}, "last_saved": iso8601}``; ``{}`` means no draft.
Saves merge shallowly into the stored ``data``. Concurrent saves are
last-write-wins.
"""

import logging
import threading
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from paymatch_api.auth.tokens import utcnow
from paymatch_api.db.models import Organization
from paymatch_api.results import ActionResult

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.5


def _get_org(db: Session, org_id: str) -> Optional[Organization]:
    return db.query(Organization).filter(Organization.id == org_id).first()


def save_draft(db: Session, org_id: str, step_data: dict[str, Any], step: int) -> ActionResult:
    try:
        org = _get_org(db, org_id)
        if org is None:
            return ActionResult.fail("Organization not found", error="NOT_FOUND")

        existing = org.onboarding_draft or {}
        merged = {**(existing.get("data") or {}), **step_data}
        # Reassign so the JSON column is flagged dirty
        org.onboarding_draft = {
            "step": step,
            "data": merged,
            "last_saved": utcnow().isoformat(),
        }
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "onboarding.draft.save_failed",
            extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
        )
        return ActionResult.fail("Failed to save draft data", error=type(e).__name__)

    return ActionResult.ok("Draft data saved successfully", data={"step": step})


def load_draft(db: Session, org_id: str) -> dict[str, Any]:
    """Stored draft as ``{data, step, last_saved}``, or ``{}`` when there is none."""
    org = _get_org(db, org_id)
    draft = org.onboarding_draft if org is not None else None
    if not draft or not isinstance(draft, dict):
        return {}
    return {
        "data": draft.get("data") or {},
        "step": draft.get("step") or 1,
        "last_saved": draft.get("last_saved"),
    }


def clear_draft(db: Session, org_id: str) -> ActionResult:
    try:
        org = _get_org(db, org_id)
        if org is None:
            return ActionResult.fail("Organization not found", error="NOT_FOUND")
        org.onboarding_draft = {}
        db.commit()
    except Exception as e:
        db.rollback()
        logger.error(
            "onboarding.draft.clear_failed",
            extra={"org_id": org_id, "error_type": type(e).__name__, "error": str(e)},
        )
        return ActionResult.fail("Failed to clear draft data", error=type(e).__name__)
    return ActionResult.ok("Draft data cleared successfully")


class DraftDebouncer:
    """Coalesce rapid draft saves into one write.

    Each ``submit`` merges its data into the pending payload, keeps the latest
    step and restarts the timer. ``save_fn(step_data, step)`` runs on a timer
    thread once ``delay`` seconds pass without a new submit.
    """

    def __init__(self, save_fn: Callable[[dict[str, Any], int], Any], delay: float = DEFAULT_DEBOUNCE_SECONDS):
        self.save_fn = save_fn
        self.delay = delay
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending_data: dict[str, Any] = {}
        self._pending_step: Optional[int] = None

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return self._pending_step is not None

    def submit(self, step_data: dict[str, Any], step: int) -> None:
        with self._lock:
            self._pending_data.update(step_data)
            self._pending_step = step
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self.flush)
            self._timer.daemon = True
            self._timer.start()

    def _take_pending(self) -> Optional[tuple[dict[str, Any], int]]:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if self._pending_step is None:
                return None
            payload = (self._pending_data, self._pending_step)
            self._pending_data = {}
            self._pending_step = None
            return payload

    def flush(self) -> Any:
        """Write the pending payload now; returns the save result or None."""
        payload = self._take_pending()
        if payload is None:
            return None
        data, step = payload
        try:
            return self.save_fn(data, step)
        except Exception as e:
            logger.error(
                "onboarding.draft.debounced_save_failed",
                extra={"step": step, "error_type": type(e).__name__, "error": str(e)},
            )
            return None

    def cancel(self) -> None:
        self._take_pending()
