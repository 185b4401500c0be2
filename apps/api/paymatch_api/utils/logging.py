"""One-line JSON logs for the API and the reaper.

Every line carries ``ts``, ``level``, ``service``, ``logger`` and ``msg``, plus
the request/user/org ids bound in ``paymatch_api.context`` and whatever was
passed via ``extra={...}``. Message, extras and tracebacks are redacted.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from paymatch_api.context import org_id_var, request_id_var, user_id_var
from paymatch_api.utils.sanitize import format_exception_redacted, redact_fields, redact_text

# Attributes every LogRecord has; anything else came in through ``extra``
_STANDARD_RECORD_FIELDS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}

_CONTEXT_VARS = (
    ("request_id", request_id_var),
    ("user_id", user_id_var),
    ("org_id", org_id_var),
)


class JSONFormatter(logging.Formatter):
    def __init__(self, service: str = "paymatch-api"):
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": redact_text(record.getMessage()),
            "src": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        for field, var in _CONTEXT_VARS:
            bound = var.get()
            if bound:
                entry[field] = bound

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_RECORD_FIELDS
        }
        if extras:
            entry.update(redact_fields(extras))

        if record.exc_info:
            entry["exc_info"] = format_exception_redacted(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


def configure_json_logging(log_level: str = "INFO", service: str = "paymatch-api") -> None:
    """Route all logging through a single stderr handler using JSONFormatter."""
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter(service=service))
    root.addHandler(handler)

    # uvicorn access lines duplicate the request middleware log
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
