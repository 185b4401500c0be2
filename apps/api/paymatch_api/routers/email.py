"""Email preference, unsubscribe and newsletter endpoints.

Endpoints:
- GET  /v1/email/preferences: Subscription state per email type
- PUT  /v1/email/preferences: Update subscriptions (mandatory types ignored)
- POST /v1/email/unsubscribe: Unsubscribe with a signed link token
- POST /v1/email/newsletter: Subscribe from the public newsletter form
- POST /v1/email/newsletter/unsubscribe: Leave the newsletter and withdraw its consents
- POST /api/unsubscribe/one-click: RFC 8058 one-click unsubscribe

The one-click endpoint lives at the URL carried in List-Unsubscribe headers.
It always answers 200 so mail providers do not retry.
"""

import logging

import redis
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo
from paymatch_api.auth.session import PUBLIC_OPTIONS, ServerSession, require_session
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.email.newsletter import NewsletterSignup, subscribe_to_newsletter, unsubscribe_from_newsletter
from paymatch_api.email.preferences import EmailPreferencesService
from paymatch_api.email.types import EmailType
from paymatch_api.routers.common import action_response, enforce_ip_rate_limit
from paymatch_api.schemas import (
    ActionResponse,
    EmailPreferencesUpdateRequest,
    NewsletterSubscribeRequest,
    UnsubscribeRequest,
)

router = APIRouter(prefix="/v1/email", tags=["email"])
one_click_router = APIRouter(prefix="/api/unsubscribe", tags=["email"])
logger = logging.getLogger(__name__)


def _require_email(session: ServerSession) -> str:
    if not session.email:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Account has no email address")
    return session.email


@router.get("/preferences")
def get_preferences(
    session: ServerSession = Depends(require_session(PUBLIC_OPTIONS)),
    db: Session = Depends(get_db),
) -> dict[str, dict[str, bool]]:
    return {"preferences": EmailPreferencesService(db).get_preferences(_require_email(session))}


@router.put("/preferences")
def put_preferences(
    request: EmailPreferencesUpdateRequest,
    session: ServerSession = Depends(require_session(PUBLIC_OPTIONS)),
    db: Session = Depends(get_db),
) -> dict[str, dict[str, bool]]:
    valid_types = {t.value for t in EmailType}
    unknown = sorted(set(request.preferences) - valid_types)
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown email type(s): {', '.join(unknown)}",
        )
    preferences = EmailPreferencesService(db).update_preferences(
        _require_email(session), request.preferences, user_id=session.user_id
    )
    return {"preferences": preferences}


@router.post("/unsubscribe", response_model=ActionResponse)
def unsubscribe(request: UnsubscribeRequest, db: Session = Depends(get_db)):
    return action_response(EmailPreferencesService(db).unsubscribe_with_token(request.token))


@router.post("/newsletter", response_model=ActionResponse)
async def newsletter_subscribe(
    request: NewsletterSubscribeRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = await subscribe_to_newsletter(
        db, NewsletterSignup(**request.model_dump()), client=client, redis_client=redis_client
    )
    return action_response(result)


@router.post("/newsletter/unsubscribe", response_model=ActionResponse)
def newsletter_unsubscribe(
    request: UnsubscribeRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
):
    return action_response(unsubscribe_from_newsletter(db, request.token, client))


@one_click_router.post("/one-click")
def one_click_unsubscribe(
    token: str = Query(..., min_length=1, max_length=2048),
    db: Session = Depends(get_db),
) -> dict[str, str]:
    try:
        result = EmailPreferencesService(db).unsubscribe_with_token(token)
    except ValueError as e:
        # UNSUBSCRIBE_TOKEN_SECRET missing; the request cannot be verified
        logger.error("email.one_click_unsubscribe_unavailable", extra={"error": str(e)})
        return {"status": "ok"}
    if not result.success:
        logger.warning("email.one_click_unsubscribe_rejected", extra={"error": result.error})
    return {"status": "ok"}
