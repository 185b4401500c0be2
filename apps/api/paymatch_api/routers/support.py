"""Support request endpoint.

- POST /v1/support: Send a support request to the team; signed-in callers are
  limited per account, anonymous callers per email
"""

import logging
from typing import Optional

import redis
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.session import ServerSession
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.routers.common import action_response, enforce_ip_rate_limit, get_optional_session
from paymatch_api.schemas import ActionResponse, SupportRequest
from paymatch_api.support.tickets import SupportRequestData, submit_support_request

router = APIRouter(prefix="/v1/support", tags=["support"])
logger = logging.getLogger(__name__)


@router.post("", response_model=ActionResponse)
async def support_request(
    request: SupportRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    session: Optional[ServerSession] = Depends(get_optional_session),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = await submit_support_request(
        db,
        SupportRequestData(**request.model_dump()),
        client=client,
        redis_client=redis_client,
        user_id=session.user_id if session else None,
    )
    return action_response(result)
