"""Redis-backed limits, cache TTLs and key prefixes.

All windows and TTLs are expressed in seconds.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitConfig:
    """Fixed-window rate limit: at most ``limit`` requests per ``window_seconds``."""

    limit: int
    window_seconds: int


# Auth rate limits (identifier: email)
RATE_LIMITS: dict[str, RateLimitConfig] = {
    "EMAIL_VERIFICATION": RateLimitConfig(limit=10, window_seconds=5 * 60),
    "PASSWORD_RESET": RateLimitConfig(limit=3, window_seconds=15 * 60),
    "AUTH_OPERATIONS": RateLimitConfig(limit=10, window_seconds=15 * 60),
    "LOGIN_ATTEMPTS": RateLimitConfig(limit=5, window_seconds=15 * 60),
}

# Application rate limits (identifier: user id, email or IP)
APP_RATE_LIMITS: dict[str, RateLimitConfig] = {
    "API_CALLS": RateLimitConfig(limit=100, window_seconds=60),
    "FILE_UPLOADS": RateLimitConfig(limit=10, window_seconds=60 * 60),
    "EMAIL_SENDING": RateLimitConfig(limit=50, window_seconds=60 * 60),
    "NEWSLETTER_SUBSCRIPTION": RateLimitConfig(limit=3, window_seconds=60 * 60),
    "SUPPORT_TICKETS": RateLimitConfig(limit=5, window_seconds=60 * 60),
    "IP_GENERAL": RateLimitConfig(limit=100, window_seconds=60),
    # Requests rejected by IP_GENERAL; exceeding this blocks the IP
    "IP_VIOLATIONS": RateLimitConfig(limit=20, window_seconds=60 * 60),
}

CACHE_TTL: dict[str, int] = {
    "SESSION": 24 * 60 * 60,
    "USER_PROFILE": 60 * 60,
    "ORGANIZATION": 30 * 60,
}

KEY_PREFIXES: dict[str, str] = {
    "RATE_LIMIT": "rate_limit",
    "IP_RATE_LIMIT": "ip_rate_limit",
    "SESSION": "session",
    "SESSION_ACTIVITY": "session_activity",
    "USER_PROFILE": "user_profile",
    "ORGANIZATION": "organization",
    "PASSWORD_RESET": "password_reset",
    "EMAIL_VERIFICATION": "email_verification",
}

SESSION_TIMEOUT: dict[str, int] = {
    "INACTIVE_TIMEOUT": 30 * 60,
    "MAX_LIFETIME": 24 * 60 * 60,
    "REMEMBER_ME_TIMEOUT": 30 * 24 * 60 * 60,
    "WARNING_TIME": 5 * 60,
}


def get_rate_limit_config(rate_limit_type: str) -> RateLimitConfig:
    """Resolve a rate limit type from the auth or application tables.

    Raises:
        KeyError: If the type is unknown
    """
    if rate_limit_type in RATE_LIMITS:
        return RATE_LIMITS[rate_limit_type]
    if rate_limit_type in APP_RATE_LIMITS:
        return APP_RATE_LIMITS[rate_limit_type]
    raise KeyError(f"Unknown rate limit type: {rate_limit_type}")
