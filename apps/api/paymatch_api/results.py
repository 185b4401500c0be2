"""Outcome model returned by domain actions.

Expected failures (bad input, rate limits, expired links) come back as
``ActionResult(success=False, ...)``; only programming and infrastructure
errors propagate as exceptions.
"""

from typing import Any, Optional

from pydantic import BaseModel, Field

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again."


class ActionResult(BaseModel):
    success: bool
    message: str
    error: Optional[str] = None
    redirect_to: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **kwargs: Any) -> "ActionResult":
        return cls(success=True, message=message, **kwargs)

    @classmethod
    def fail(cls, message: str, **kwargs: Any) -> "ActionResult":
        return cls(success=False, message=message, **kwargs)
