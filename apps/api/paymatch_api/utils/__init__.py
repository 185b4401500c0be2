"""Logging and redaction helpers shared by the API and the reaper."""

from paymatch_api.utils.logging import JSONFormatter, configure_json_logging
from paymatch_api.utils.sanitize import (
    REDACTED,
    format_exception_redacted,
    mask_email,
    payload_hash_bytes,
    redact_fields,
    redact_text,
)

__all__ = [
    "JSONFormatter",
    "REDACTED",
    "configure_json_logging",
    "format_exception_redacted",
    "mask_email",
    "payload_hash_bytes",
    "redact_fields",
    "redact_text",
]
