"""Signed unsubscribe tokens, URLs and List-Unsubscribe headers.

Token format::

    base64url(json(payload)) + "." + sha256_hex(json(payload) + UNSUBSCRIBE_TOKEN_SECRET)

payload = {email, type, userId, expiresAt (epoch ms), nonce}
"""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from typing import Any, Optional

from pydantic import BaseModel

from paymatch_api.config.env import get_app_url, get_unsubscribe_expiry_days, get_unsubscribe_secret

logger = logging.getLogger(__name__)

UNSUBSCRIBE_MAILTO = "mailto:unsubscribe@paymatch.app?subject=unsubscribe"


class UnsubscribeTokenData(BaseModel):
    email: str
    type: str
    user_id: Optional[str] = None
    expires_at_ms: Optional[int] = None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _sign(payload_string: str, secret: str) -> str:
    return hashlib.sha256((payload_string + secret).encode("utf-8")).hexdigest()


def generate_unsubscribe_token(
    email: str,
    email_type: str,
    user_id: Optional[str] = None,
    expires_in_days: Optional[int] = None,
) -> str:
    """Create a signed unsubscribe token.

    Raises:
        ValueError: If UNSUBSCRIBE_TOKEN_SECRET is not configured
    """
    secret = get_unsubscribe_secret()
    days = get_unsubscribe_expiry_days() if expires_in_days is None else expires_in_days
    payload = {
        "email": email,
        "type": str(getattr(email_type, "value", email_type)),
        "userId": user_id,
        "expiresAt": int((time.time() + days * 86400) * 1000),
        "nonce": secrets.token_hex(16),
    }
    payload_string = json.dumps(payload, separators=(",", ":"))
    return f"{_b64url_encode(payload_string.encode('utf-8'))}.{_sign(payload_string, secret)}"


def verify_unsubscribe_token(token: str) -> Optional[UnsubscribeTokenData]:
    """Verify signature and expiry; None for any invalid token.

    Raises:
        ValueError: If UNSUBSCRIBE_TOKEN_SECRET is not configured
    """
    secret = get_unsubscribe_secret()
    if not token or token.count(".") != 1:
        return None

    payload_b64, signature = token.split(".", 1)
    try:
        payload_string = _b64url_decode(payload_b64).decode("utf-8")
        payload: dict[str, Any] = json.loads(payload_string)
    except (ValueError, UnicodeDecodeError):
        return None

    if not hmac.compare_digest(signature, _sign(payload_string, secret)):
        logger.warning("unsubscribe.token.bad_signature")
        return None

    expires_at = payload.get("expiresAt")
    if expires_at is not None and int(expires_at) < int(time.time() * 1000):
        return None

    if not payload.get("email") or not payload.get("type"):
        return None

    return UnsubscribeTokenData(
        email=payload["email"],
        type=payload["type"],
        user_id=payload.get("userId"),
        expires_at_ms=expires_at,
    )


def generate_unsubscribe_url(email: str, email_type: str, user_id: Optional[str] = None) -> str:
    token = generate_unsubscribe_token(email, email_type, user_id)
    return f"{get_app_url()}/unsubscribe?token={token}"


def generate_one_click_unsubscribe_url(
    email: str, email_type: str, user_id: Optional[str] = None
) -> str:
    token = generate_unsubscribe_token(email, email_type, user_id)
    return f"{get_app_url()}/api/unsubscribe/one-click?token={token}"


def get_unsubscribe_headers(
    email: str, email_type: str, user_id: Optional[str] = None
) -> dict[str, str]:
    """RFC 8058 one-click unsubscribe headers."""
    one_click_url = generate_one_click_unsubscribe_url(email, email_type, user_id)
    return {
        "List-Unsubscribe": f"<{one_click_url}>, <{UNSUBSCRIBE_MAILTO}>",
        "List-Unsubscribe-Post": "List-Unsubscribe=One-Click",
    }
