"""Redaction of credentials, banking data and personal data before logging.

Applied to log messages, ``extra`` fields and audit details. Long strings are
replaced by a length + digest marker instead of being scanned.
"""

import hashlib
import re
import traceback
from typing import Any

REDACTED = "[REDACTED]"

MAX_TEXT_LENGTH = 2048
MAX_NESTING = 6

# Field names whose values are never logged (compared lower-case)
SECRET_FIELDS: frozenset[str] = frozenset({
    "password", "new_password", "current_password",
    "token", "access_token", "refresh_token", "token_hash",
    "verification_token", "reset_token", "unsubscribe_token",
    "authorization", "stripe-signature", "signature",
    "api_key", "secret", "client_secret",
    "iban", "vat_number", "card", "cvc",
})

# Field names holding an email address; logged masked
EMAIL_FIELDS: frozenset[str] = frozenset({"email", "to", "recipient"})

_TEXT_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(Bearer|Basic)\s+\S+"), r"\1 " + REDACTED),
    # Supabase session JWTs
    (re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+"), REDACTED),
    (re.compile(r"\b(sk|rk)_(live|test)_\w+"), REDACTED),
    (re.compile(r"\bwhsec_\w+"), REDACTED),
    (re.compile(r"\bre_\w{20,}"), REDACTED),
    (re.compile(r"\b(token|token_hash|access_token|api_key)=[^&\s]+"), r"\1=" + REDACTED),
    # Swiss / Liechtenstein IBANs, with or without grouping spaces
    (re.compile(r"\b(CH|LI)\d{2}(?:\s?[0-9A-Z]){17}\b"), r"\1** " + REDACTED),
)


def payload_hash_bytes(raw: bytes) -> str:
    return hashlib.sha256(raw).hexdigest()


def mask_email(email: str) -> str:
    """``anna.muster@example.ch`` -> ``an***@example.ch``."""
    if not email or "@" not in email:
        return REDACTED
    local, _, domain = email.partition("@")
    return f"{local[:2]}***@{domain}"


def redact_text(text: str) -> str:
    """Apply the text rules; oversized strings become a digest marker."""
    if not isinstance(text, str):
        return text
    if len(text) > MAX_TEXT_LENGTH:
        digest = hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()[:16]
        return f"[TRUNCATED len={len(text)} sha256={digest}]"
    for pattern, replacement in _TEXT_RULES:
        text = pattern.sub(replacement, text)
    return text


def redact_fields(value: Any, _depth: int = 0) -> Any:
    """Redact a log ``extra`` value or audit details payload.

    Secret fields are replaced, email fields masked, strings run through
    ``redact_text``. Nesting beyond MAX_NESTING is cut off.
    """
    if _depth >= MAX_NESTING:
        return "[DEPTH_LIMIT]"

    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        for key, item in value.items():
            name = key.lower() if isinstance(key, str) else key
            if name in SECRET_FIELDS:
                redacted[key] = REDACTED
            elif name in EMAIL_FIELDS and isinstance(item, str) and "***@" not in item:
                redacted[key] = mask_email(item)
            else:
                redacted[key] = redact_fields(item, _depth + 1)
        return redacted

    if isinstance(value, (list, tuple, set)):
        return [redact_fields(item, _depth + 1) for item in value]

    if isinstance(value, str):
        return redact_text(value)

    return value


def format_exception_redacted(exc_info: tuple) -> str:
    """Traceback text without local variables, passed through ``redact_text``."""
    _, exc, _ = exc_info
    if exc is None:
        return ""
    try:
        lines = traceback.TracebackException.from_exception(exc, capture_locals=False).format()
        return redact_text("".join(lines))
    except Exception:
        return "[TRACEBACK_FORMAT_ERROR]"
