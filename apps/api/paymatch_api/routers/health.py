"""Liveness and readiness probes."""

import logging
import time
from typing import Callable

import redis
from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db

router = APIRouter()
logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    services: dict[str, str]


def _probe(name: str, check: Callable[[], object]) -> str:
    """Run one dependency check; ``"up (3ms)"`` or ``"down: <error type>"``."""
    started = time.perf_counter()
    try:
        check()
    except Exception as exc:
        logger.error("Readiness probe failed", extra={"dependency": name, "error_type": type(exc).__name__})
        return f"down: {type(exc).__name__}"
    return f"up ({(time.perf_counter() - started) * 1000:.0f}ms)"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Process is alive; dependencies are not checked here."""
    return HealthResponse(status="healthy", version=API_VERSION, services={"api": "up"})


@router.get("/readyz", response_model=HealthResponse)
def readiness_check(
    response: Response,
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
) -> HealthResponse:
    """503 unless Postgres and Redis both answer."""
    services = {
        "api": "up",
        "database": _probe("database", lambda: db.execute(text("SELECT 1"))),
        "redis": _probe("redis", redis_client.ping),
    }

    if any(value.startswith("down") for value in services.values()):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=API_VERSION, services=services)
    return HealthResponse(status="ready", version=API_VERSION, services=services)
