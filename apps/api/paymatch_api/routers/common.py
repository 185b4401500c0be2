"""Shared router helpers: action → HTTP mapping, IP rate limit, optional session."""

import logging
from typing import Optional

import redis
from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo, get_client_info
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.session import PUBLIC_OPTIONS, ServerSession, get_server_session, session_security
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.results import GENERIC_ERROR_MESSAGE, ActionResult
from paymatch_api.schemas import ActionResponse

logger = logging.getLogger(__name__)

# Failure codes with a dedicated HTTP status; everything else is 400
ERROR_STATUS = {
    "INVALID_CREDENTIALS": status.HTTP_401_UNAUTHORIZED,
    "EMAIL_NOT_CONFIRMED": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "NO_CUSTOMER": status.HTTP_404_NOT_FOUND,
    "EMAIL_SEND_FAILED": status.HTTP_502_BAD_GATEWAY,
}


def action_response(result: ActionResult) -> "ActionResponse | JSONResponse":
    """Map an action result onto an HTTP response.

    Success → 200 ActionResponse. RATE_LIMITED → 429 Problem Details with
    Retry-After. Other failures keep the ActionResponse body with a 4xx status
    (500 for unexpected errors).
    """
    if result.success:
        return ActionResponse(**result.model_dump())

    if result.error == "RATE_LIMITED":
        retry_after = int(result.data.get("retry_after") or 60)
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=result.message,
            headers={"Retry-After": str(max(1, retry_after))},
        )

    if result.message == GENERIC_ERROR_MESSAGE:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    else:
        status_code = ERROR_STATUS.get(result.error or "", status.HTTP_400_BAD_REQUEST)
    return JSONResponse(status_code=status_code, content=ActionResponse(**result.model_dump()).model_dump())


def enforce_ip_rate_limit(
    client: ClientInfo = Depends(get_client_info),
    redis_client: redis.Redis = Depends(get_redis),
) -> ClientInfo:
    """Dependency for mutating public endpoints.

    403 for an IP on the block list, 429 once IP_GENERAL is exhausted. An IP
    that keeps going past IP_GENERAL (IP_VIOLATIONS) lands on the block list.
    """
    limiter = RateLimiter(redis_client)
    if limiter.is_ip_blocked(client.ip_address):
        logger.warning("http.ip_blocked", extra={"ip_address": client.ip_address})
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Requests from this address are temporarily blocked.",
        )

    result = limiter.rate_limit_general_ip(client.ip_address)
    if not result.allowed:
        blocked = limiter.record_ip_violation(client.ip_address)
        logger.warning("http.ip_rate_limited", extra={"ip_address": client.ip_address, "blocked": blocked})
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(max(1, result.retry_after))},
        )
    return client


def get_optional_session(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
) -> Optional[ServerSession]:
    """Dependency: the caller's session when a valid bearer token is sent, else None."""
    if credentials is None:
        return None
    result = get_server_session(db, credentials.credentials, PUBLIC_OPTIONS, redis_client=redis_client)
    return result.session
