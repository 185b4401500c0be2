"""Fixed-window rate limiting on Redis.

One counter per (type, identifier) with TTL equal to the window:
- first request in a window: SET key 1 EX window NX
- later requests: INCR (re-apply EXPIRE if the key vanished in between)
- rejected once the count exceeds the configured limit (limit N → N+1th rejected)

Keys:
- rate_limit:{type}:{identifier}    (email / user id)
- ip_rate_limit:{type}:{ip}
- ip_rate_limit:blocked:{ip}

Fails open: on any Redis error the request is allowed and the error logged.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import redis

from paymatch_api.config.redis_config import KEY_PREFIXES, get_rate_limit_config
from paymatch_api.db.redis_client import RedisClient

logger = logging.getLogger(__name__)

DEFAULT_IP_BLOCK_SECONDS = 24 * 60 * 60


@dataclass
class RateLimitResult:
    """Outcome of a rate limit check."""

    allowed: bool
    remaining: int
    reset_time: int  # epoch seconds when the current window ends
    limit: int

    @property
    def retry_after(self) -> int:
        return max(0, self.reset_time - int(time.time()))


@dataclass
class DualRateLimitResult:
    """Outcome of an email + IP check."""

    email: RateLimitResult
    ip: RateLimitResult

    @property
    def allowed(self) -> bool:
        return self.email.allowed and self.ip.allowed


def _safe_identifier(identifier: Optional[str]) -> str:
    if isinstance(identifier, str) and identifier.strip():
        return identifier.strip().lower()
    return "0.0.0.0"


class RateLimiter:
    """Fixed-window limiter bound to a Redis client."""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis = redis_client or RedisClient.get_client()

    @staticmethod
    def key(identifier: str, rate_limit_type: str) -> str:
        return f"{KEY_PREFIXES['RATE_LIMIT']}:{rate_limit_type}:{_safe_identifier(identifier)}"

    @staticmethod
    def ip_key(ip: str, rate_limit_type: str) -> str:
        return f"{KEY_PREFIXES['IP_RATE_LIMIT']}:{rate_limit_type}:{_safe_identifier(ip)}"

    def _hit(self, key: str, rate_limit_type: str) -> RateLimitResult:
        config = get_rate_limit_config(rate_limit_type)
        window = config.window_seconds
        now = int(time.time())

        try:
            if self.redis.set(key, 1, ex=window, nx=True):
                count = 1
                ttl = window
            else:
                count = int(self.redis.incr(key))
                ttl = self.redis.ttl(key)
                if count == 1 or ttl is None or ttl < 0:
                    self.redis.expire(key, window)
                    ttl = window
        except redis.RedisError as e:
            logger.warning(
                "Rate limit check failed, allowing request",
                extra={
                    "event": "rate_limit.fail_open",
                    "rate_limit_type": rate_limit_type,
                    "error": str(e),
                },
            )
            return RateLimitResult(
                allowed=True, remaining=config.limit, reset_time=now + window, limit=config.limit
            )

        allowed = count <= config.limit
        if not allowed:
            logger.info(
                "rate_limit.exceeded",
                extra={"rate_limit_type": rate_limit_type, "count": count, "limit": config.limit},
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, config.limit - count),
            reset_time=now + int(ttl),
            limit=config.limit,
        )

    def _status(self, key: str, rate_limit_type: str) -> RateLimitResult:
        config = get_rate_limit_config(rate_limit_type)
        now = int(time.time())
        try:
            raw = self.redis.get(key)
            if raw is None:
                return RateLimitResult(
                    allowed=True,
                    remaining=config.limit,
                    reset_time=now + config.window_seconds,
                    limit=config.limit,
                )
            count = int(raw)
            ttl = self.redis.ttl(key)
        except redis.RedisError as e:
            logger.warning(
                "Rate limit status lookup failed",
                extra={"event": "rate_limit.status_error", "error": str(e)},
            )
            return RateLimitResult(
                allowed=True,
                remaining=config.limit,
                reset_time=now + config.window_seconds,
                limit=config.limit,
            )

        if ttl is None or ttl < 0:
            ttl = config.window_seconds
        return RateLimitResult(
            allowed=count < config.limit,
            remaining=max(0, config.limit - count),
            reset_time=now + int(ttl),
            limit=config.limit,
        )

    def _clear(self, key: str) -> None:
        try:
            self.redis.delete(key)
        except redis.RedisError as e:
            logger.warning(
                "Rate limit clear failed",
                extra={"event": "rate_limit.clear_error", "error": str(e)},
            )

    # ── identifier (email / user) limits ─────────────────────────────────────

    def check(self, identifier: str, rate_limit_type: str) -> RateLimitResult:
        """Count one request for ``identifier`` and report whether it is allowed."""
        return self._hit(self.key(identifier, rate_limit_type), rate_limit_type)

    def get_status(self, identifier: str, rate_limit_type: str) -> RateLimitResult:
        """Read the current window without counting a request."""
        return self._status(self.key(identifier, rate_limit_type), rate_limit_type)

    def get_remaining(self, identifier: str, rate_limit_type: str) -> int:
        return self.get_status(identifier, rate_limit_type).remaining

    def clear(self, identifier: str, rate_limit_type: str) -> None:
        self._clear(self.key(identifier, rate_limit_type))

    # ── IP limits ────────────────────────────────────────────────────────────

    def check_ip(self, ip: str, rate_limit_type: str) -> RateLimitResult:
        return self._hit(self.ip_key(ip, rate_limit_type), rate_limit_type)

    def get_ip_status(self, ip: str, rate_limit_type: str) -> RateLimitResult:
        return self._status(self.ip_key(ip, rate_limit_type), rate_limit_type)

    def clear_ip(self, ip: str, rate_limit_type: str) -> None:
        self._clear(self.ip_key(ip, rate_limit_type))

    def check_dual(
        self,
        email: str,
        ip: str,
        email_rate_limit_type: str,
        ip_rate_limit_type: str,
    ) -> DualRateLimitResult:
        """Count one request against both the email and the IP limit."""
        return DualRateLimitResult(
            email=self.check(email, email_rate_limit_type),
            ip=self.check_ip(ip, ip_rate_limit_type),
        )

    def is_ip_blocked(self, ip: str) -> bool:
        try:
            return bool(self.redis.get(f"{KEY_PREFIXES['IP_RATE_LIMIT']}:blocked:{ip}"))
        except redis.RedisError as e:
            logger.warning(
                "IP block lookup failed",
                extra={"event": "rate_limit.block_lookup_error", "error": str(e)},
            )
            return False

    def block_ip(self, ip: str, duration_seconds: int = DEFAULT_IP_BLOCK_SECONDS) -> None:
        try:
            self.redis.setex(f"{KEY_PREFIXES['IP_RATE_LIMIT']}:blocked:{ip}", duration_seconds, "1")
            logger.warning("ip.blocked", extra={"ip": ip, "duration_seconds": duration_seconds})
        except redis.RedisError as e:
            logger.warning(
                "IP block failed",
                extra={"event": "rate_limit.block_error", "error": str(e)},
            )

    # ── application limits ───────────────────────────────────────────────────

    def rate_limit_api_calls(self, user_id: str) -> RateLimitResult:
        return self.check(user_id, "API_CALLS")

    def rate_limit_file_uploads(self, user_id: str) -> RateLimitResult:
        return self.check(user_id, "FILE_UPLOADS")

    def rate_limit_email_sending(self, user_id: str) -> RateLimitResult:
        return self.check(user_id, "EMAIL_SENDING")

    def rate_limit_newsletter_subscription(self, email: str) -> RateLimitResult:
        return self.check(email, "NEWSLETTER_SUBSCRIPTION")

    def rate_limit_support_tickets(self, user_id: str) -> RateLimitResult:
        return self.check(user_id, "SUPPORT_TICKETS")

    def rate_limit_general_ip(self, ip: str) -> RateLimitResult:
        return self.check_ip(ip, "IP_GENERAL")

    def record_ip_violation(self, ip: str) -> bool:
        """Count a request rejected by IP_GENERAL; block the IP once IP_VIOLATIONS is exceeded.

        Returns:
            True if the IP is now blocked
        """
        if self.check_ip(ip, "IP_VIOLATIONS").allowed:
            return False
        self.block_ip(ip)
        self.clear_ip(ip, "IP_VIOLATIONS")
        return True
