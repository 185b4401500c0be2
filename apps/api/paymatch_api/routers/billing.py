"""Billing endpoints (Stripe Checkout, Billing Portal, plans)."""

import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from paymatch_api.auth.session import DASHBOARD_OPTIONS, ONBOARDING_OPTIONS, ServerSession, require_session
from paymatch_api.billing.checkout import create_checkout_session, create_portal_session, get_upcoming_invoice
from paymatch_api.config.plans import PLANS, annual_savings_percent
from paymatch_api.db.session import get_db
from paymatch_api.routers.common import action_response
from paymatch_api.schemas import CheckoutRequest, PortalRequest, RedirectUrlResponse

router = APIRouter(prefix="/v1/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.get("/plans")
def list_plans() -> dict[str, Any]:
    """Public plan catalogue (prices in CHF cents)."""
    return {
        "plans": [
            {**plan.model_dump(), "annual_savings_percent": annual_savings_percent(name)}
            for name, plan in PLANS.items()
        ]
    }


@router.post("/checkout", response_model=RedirectUrlResponse)
async def checkout(
    request: CheckoutRequest,
    session: ServerSession = Depends(require_session(ONBOARDING_OPTIONS)),
    db: Session = Depends(get_db),
):
    result = await create_checkout_session(
        db,
        session.organization_id,
        session.user_id,
        request.plan,
        request.billing_cycle,
        request.success_url,
        request.cancel_url,
    )
    if not result.success:
        return action_response(result)
    return RedirectUrlResponse(url=result.data["url"], session_id=result.data.get("session_id"))


@router.post("/portal", response_model=RedirectUrlResponse)
async def portal(
    request: PortalRequest,
    session: ServerSession = Depends(require_session(DASHBOARD_OPTIONS)),
    db: Session = Depends(get_db),
):
    result = await create_portal_session(db, session.organization_id, request.return_url)
    if not result.success:
        return action_response(result)
    return RedirectUrlResponse(url=result.data["url"])


@router.get("/upcoming-invoice")
async def upcoming_invoice(
    session: ServerSession = Depends(require_session(DASHBOARD_OPTIONS)),
    db: Session = Depends(get_db),
) -> dict[str, Optional[dict[str, Any]]]:
    try:
        invoice = await get_upcoming_invoice(db, session.organization_id)
    except httpx.HTTPError as e:
        logger.error(
            "billing.upcoming_invoice_failed",
            extra={"org_id": session.organization_id, "error_type": type(e).__name__},
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to get upcoming invoice",
        ) from e
    return {"invoice": invoice}
