"""Onboarding wizard endpoints.

All endpoints require a verified email and an organization; onboarding may
still be incomplete. The organization is the caller's active one.
"""

import logging

import redis
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo, get_client_info
from paymatch_api.auth.session import ONBOARDING_OPTIONS, ServerSession, require_session
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.onboarding.drafts import clear_draft, load_draft, save_draft
from paymatch_api.onboarding.steps import complete_onboarding, save_company_details, update_onboarding_step
from paymatch_api.routers.common import action_response
from paymatch_api.schemas import (
    ActionResponse,
    CompanyDetailsRequest,
    CompleteOnboardingRequest,
    DraftResponse,
    DraftSaveRequest,
    StepUpdateRequest,
)

router = APIRouter(prefix="/v1/onboarding", tags=["onboarding"])
logger = logging.getLogger(__name__)

onboarding_session = require_session(ONBOARDING_OPTIONS)


@router.get("/draft", response_model=DraftResponse)
def get_draft(
    session: ServerSession = Depends(onboarding_session),
    db: Session = Depends(get_db),
) -> DraftResponse:
    draft = load_draft(db, session.organization_id)
    return DraftResponse(**draft) if draft else DraftResponse()


@router.put("/draft", response_model=ActionResponse)
def put_draft(
    request: DraftSaveRequest,
    session: ServerSession = Depends(onboarding_session),
    db: Session = Depends(get_db),
):
    return action_response(save_draft(db, session.organization_id, request.data, request.step))


@router.delete("/draft", response_model=ActionResponse)
def delete_draft(
    session: ServerSession = Depends(onboarding_session),
    db: Session = Depends(get_db),
):
    return action_response(clear_draft(db, session.organization_id))


@router.post("/step", response_model=ActionResponse)
def post_step(
    request: StepUpdateRequest,
    session: ServerSession = Depends(onboarding_session),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    return action_response(
        update_onboarding_step(db, session.organization_id, request.step, redis_client)
    )


@router.post("/company", response_model=ActionResponse)
def post_company(
    request: CompanyDetailsRequest,
    session: ServerSession = Depends(onboarding_session),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    return action_response(
        save_company_details(db, session.organization_id, request.model_dump(), redis_client)
    )


@router.post("/complete", response_model=ActionResponse)
def post_complete(
    request: CompleteOnboardingRequest,
    session: ServerSession = Depends(onboarding_session),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = complete_onboarding(
        db, session.organization_id, session.user_id, request.settings, client, redis_client
    )
    return action_response(result)
