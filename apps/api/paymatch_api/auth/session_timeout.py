"""Session activity tracking and timeout evaluation on Redis.

Key: ``session_activity:{session_id}`` (JSON), TTL = max lifetime, or the
remember-me lifetime. A session expires after INACTIVE_TIMEOUT without
activity or once it is older than its max lifetime. Durations are seconds.
"""

import logging
from typing import Optional

import redis
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.audit_logging import log_session_activity
from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.tokens import parse_datetime, utcnow
from paymatch_api.config.redis_config import KEY_PREFIXES, SESSION_TIMEOUT
from paymatch_api.db.redis_client import RedisClient, get_json, set_json

logger = logging.getLogger(__name__)


class SessionActivity(BaseModel):
    user_id: str
    email: Optional[str] = None
    last_activity: str
    session_start: str
    remember_me: bool = False
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class SessionTimeoutInfo(BaseModel):
    is_expired: bool
    time_until_expiry: int
    time_until_warning: int
    should_warn: bool
    session_lifetime: int


EXPIRED = SessionTimeoutInfo(
    is_expired=True, time_until_expiry=0, time_until_warning=0, should_warn=False, session_lifetime=0
)


def session_activity_key(session_id: str) -> str:
    return f"{KEY_PREFIXES['SESSION_ACTIVITY']}:{session_id}"


def _max_lifetime(remember_me: bool) -> int:
    return SESSION_TIMEOUT["REMEMBER_ME_TIMEOUT"] if remember_me else SESSION_TIMEOUT["MAX_LIFETIME"]


class SessionTimeoutService:
    """Session activity store bound to a Redis client."""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client or RedisClient.get_client()

    def get_session_info(self, session_id: str) -> Optional[SessionActivity]:
        try:
            data = get_json(self.redis, session_activity_key(session_id))
        except redis.RedisError as e:
            logger.warning("session.info_lookup_failed", extra={"error": str(e)})
            return None
        if not data:
            return None
        return SessionActivity(**data)

    def update_session_activity(
        self,
        session_id: str,
        user_id: str,
        email: Optional[str] = None,
        remember_me: Optional[bool] = None,
        client: Optional[ClientInfo] = None,
    ) -> Optional[SessionActivity]:
        """Touch the session: refresh last_activity, keep session_start."""
        existing = self.get_session_info(session_id)
        now = utcnow().isoformat()

        activity = SessionActivity(
            user_id=user_id,
            email=email or (existing.email if existing else None),
            last_activity=now,
            session_start=existing.session_start if existing else now,
            remember_me=bool(
                remember_me if remember_me is not None else (existing.remember_me if existing else False)
            ),
            ip_address=(client.ip_address if client else None) or (existing.ip_address if existing else None),
            user_agent=(client.user_agent if client else None) or (existing.user_agent if existing else None),
        )
        try:
            set_json(
                self.redis,
                session_activity_key(session_id),
                activity.model_dump(),
                _max_lifetime(activity.remember_me),
            )
        except redis.RedisError as e:
            logger.warning("session.activity_update_failed", extra={"error": str(e)})
            return None
        return activity

    def check_session_timeout(self, session_id: str) -> SessionTimeoutInfo:
        """Evaluate inactivity and lifetime limits; a missing session is expired."""
        activity = self.get_session_info(session_id)
        if activity is None:
            return EXPIRED

        now = utcnow()
        since_activity = int((now - parse_datetime(activity.last_activity)).total_seconds())
        lifetime = int((now - parse_datetime(activity.session_start)).total_seconds())

        inactive_timeout = SESSION_TIMEOUT["INACTIVE_TIMEOUT"]
        max_lifetime = _max_lifetime(activity.remember_me)

        is_expired = since_activity > inactive_timeout or lifetime > max_lifetime
        time_until_expiry = min(
            max(0, inactive_timeout - since_activity),
            max(0, max_lifetime - lifetime),
        )
        time_until_warning = max(0, time_until_expiry - SESSION_TIMEOUT["WARNING_TIME"])

        return SessionTimeoutInfo(
            is_expired=is_expired,
            time_until_expiry=time_until_expiry,
            time_until_warning=time_until_warning,
            should_warn=time_until_warning <= 0 and time_until_expiry > 0,
            session_lifetime=lifetime,
        )

    def extend_session(
        self, session_id: str, user_id: str, client: Optional[ClientInfo] = None
    ) -> bool:
        """Reset the inactivity timer; False when the session already expired."""
        if self.check_session_timeout(session_id).is_expired:
            return False
        return self.update_session_activity(session_id, user_id, client=client) is not None

    def invalidate_session(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        reason: str = "manual_logout",
        db: Optional[Session] = None,
        client: Optional[ClientInfo] = None,
    ) -> None:
        try:
            self.redis.delete(session_activity_key(session_id))
        except redis.RedisError as e:
            logger.warning("session.invalidate_failed", extra={"error": str(e)})
            return
        if db is not None and user_id:
            log_session_activity(
                db, "session_invalidated", user_id, session_id, client, details={"reason": reason}
            )
