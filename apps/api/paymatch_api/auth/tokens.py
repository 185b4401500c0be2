"""Opaque token generation and expiry checks.

Verification and password-reset tokens are random strings with a
server-held expiry. Validity is possession of the token plus an expiry
comparison; no cryptographic binding beyond the emailed link.
"""

import base64
import hashlib
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

VERIFICATION_TOKEN_TTL = timedelta(hours=24)
PASSWORD_RESET_TOKEN_TTL = timedelta(hours=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value: "datetime | str | None") -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass a datetime through) as an aware datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def generate_token(length: int = 32) -> str:
    """Generate a random hex token of ``length`` bytes (2 * length hex chars)."""
    return secrets.token_hex(length)


def generate_url_safe_token(length: int = 32) -> str:
    """Generate a URL-safe base64 token from ``length`` random bytes."""
    return secrets.token_urlsafe(length)


def generate_verification_token() -> Tuple[str, datetime]:
    """Return (token, expires_at) for email verification (24h)."""
    return generate_token(), utcnow() + VERIFICATION_TOKEN_TTL


def generate_password_reset_token() -> Tuple[str, datetime]:
    """Return (token, expires_at) for password reset (1h)."""
    return generate_token(), utcnow() + PASSWORD_RESET_TOKEN_TTL


def is_token_expired(expires_at: "datetime | str") -> bool:
    """A token is expired once now is past its stored expiry."""
    return utcnow() > parse_datetime(expires_at)


def session_id_from_access_token(access_token: str) -> str:
    """Session id of a Supabase access token.

    Reads the unverified ``session_id`` claim (the token itself is verified by
    Supabase); falls back to a digest of the token.
    """
    try:
        payload_segment = access_token.split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_segment + "=" * (-len(payload_segment) % 4)))
        session_id = payload.get("session_id")
        if session_id:
            return str(session_id)
    except (IndexError, ValueError, AttributeError):
        pass
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()[:32]
