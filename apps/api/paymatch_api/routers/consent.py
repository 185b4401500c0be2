"""GDPR / FADP consent endpoints."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo, get_client_info
from paymatch_api.auth.session import PUBLIC_OPTIONS, ServerSession, require_session
from paymatch_api.consent.consent_service import (
    ConsentInput,
    ConsentMethod,
    ConsentRenewal,
    ConsentStatus,
    ConsentType,
    check_consent_renewal,
    generate_consent_proof,
    get_consent_status,
    record_consent,
    record_cookie_consent_change,
    withdraw_consent,
)
from paymatch_api.db.session import get_db
from paymatch_api.routers.common import get_optional_session
from paymatch_api.schemas import (
    ActionResponse,
    ConsentRecordRequest,
    ConsentWithdrawRequest,
    CookieConsentRequest,
)

router = APIRouter(prefix="/v1/consent", tags=["consent"])
logger = logging.getLogger(__name__)

authenticated = require_session(PUBLIC_OPTIONS)


def _parse_enum(enum_cls, value: str, field: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field}: {value}",
        ) from e


@router.post("/record", response_model=ActionResponse)
def record(
    request: ConsentRecordRequest,
    session: Optional[ServerSession] = Depends(get_optional_session),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
) -> ActionResponse:
    """Record a consent decision for the caller, or for an email when anonymous."""
    user_id = session.user_id if session else None
    email = request.email or (session.email if session else None)
    if not user_id and not email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An email is required when not signed in",
        )

    row = record_consent(
        db,
        ConsentInput(
            consent_type=_parse_enum(ConsentType, request.consent_type, "consent_type"),
            consent_given=request.consent_given,
            consent_method=_parse_enum(ConsentMethod, request.consent_method, "consent_method"),
            user_id=user_id,
            email=email,
            ip_address=client.ip_address,
            user_agent=client.user_agent,
            source=request.source,
        ),
    )
    return ActionResponse(success=True, message="Consent recorded", data={"id": row.id})


@router.get("/status")
def consent_status(
    session: ServerSession = Depends(authenticated),
    db: Session = Depends(get_db),
) -> dict[str, ConsentStatus]:
    return get_consent_status(db, session.user_id)


@router.get("/renewal")
def consent_renewal(
    session: ServerSession = Depends(authenticated),
    db: Session = Depends(get_db),
) -> list[ConsentRenewal]:
    return check_consent_renewal(db, session.user_id)


@router.post("/withdraw", response_model=ActionResponse)
def withdraw(
    request: ConsentWithdrawRequest,
    session: Optional[ServerSession] = Depends(get_optional_session),
    db: Session = Depends(get_db),
) -> ActionResponse:
    """Withdraw the caller's consents, or anonymous consents stored under an email."""
    if session is None and not request.email:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="An email is required when not signed in",
        )
    types = [_parse_enum(ConsentType, t, "consent_type") for t in request.consent_types]
    count = withdraw_consent(
        db,
        session.user_id if session else None,
        types,
        method=ConsentMethod.API_REQUEST if session is None else ConsentMethod.ACCOUNT_SETTINGS,
        reason=request.reason,
        email=None if session else request.email,
    )
    return ActionResponse(
        success=True, message=f"Withdrew {count} consent(s)", data={"withdrawn": count}
    )


@router.get("/proof")
def proof(
    session: ServerSession = Depends(authenticated),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    return generate_consent_proof(db, session.user_id)


@router.post("/cookies", response_model=ActionResponse)
def cookies(
    request: CookieConsentRequest,
    session: Optional[ServerSession] = Depends(get_optional_session),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
) -> ActionResponse:
    user_id = session.user_id if session else None
    email = request.email or (session.email if session else None)
    if not user_id and not email:
        # Anonymous banner choices without an email stay client-side
        return ActionResponse(success=True, message="Cookie preferences noted", data={"stored": False})

    record_cookie_consent_change(db, request.marketing, request.analytics, user_id, email, client)
    return ActionResponse(success=True, message="Cookie preferences saved", data={"stored": True})
