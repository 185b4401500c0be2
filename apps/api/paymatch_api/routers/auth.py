"""Auth endpoints.

Endpoints:
- POST /v1/auth/register: Create a pending registration and send the verification email
- POST /v1/auth/verify-email: Validate a verification link
- POST /v1/auth/complete-registration: Set the password and create the account
- POST /v1/auth/resend-verification: Rotate the verification token and resend
- POST /v1/auth/login: Email + password login
- POST /v1/auth/logout: Revoke the current session
- POST /v1/auth/magic-link: Send a passwordless sign-in link
- POST /v1/auth/magic-link/verify: Exchange a magic link token hash for a session
- POST /v1/auth/password-reset/request: Send a password reset link
- GET  /v1/auth/password-reset/verify: Check a reset token
- POST /v1/auth/password-reset/confirm: Set a new password with a reset token
- GET  /v1/auth/session: Current session and where the user belongs
- GET  /v1/auth/session/timeout: Inactivity / lifetime status of the current session
- POST /v1/auth/session/extend: Reset the inactivity timer

SECURITY:
- Mutating endpoints apply the per-IP IP_GENERAL limit on top of the action limits
- Responses never reveal whether an email has an account (magic link, reset)
- Passwords never logged
"""

import logging
from typing import Optional

import redis
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from paymatch_api.auth.client_ip import ClientInfo, get_client_info
from paymatch_api.auth.login import login_user, logout_user
from paymatch_api.auth.magic_link import send_magic_link, verify_magic_link
from paymatch_api.auth.password_reset import request_password_reset, reset_password, verify_reset_token
from paymatch_api.auth.registration import (
    RegisterUserData,
    complete_registration,
    register_user,
    resend_verification_email,
    verify_email,
)
from paymatch_api.auth.session import (
    PUBLIC_OPTIONS,
    ServerSession,
    get_public_session,
    require_session,
    session_security,
)
from paymatch_api.auth.session_timeout import SessionTimeoutInfo, SessionTimeoutService
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.routers.common import action_response, enforce_ip_rate_limit
from paymatch_api.schemas import (
    ActionResponse,
    CompleteRegistrationRequest,
    EmailRequest,
    LoginRequest,
    MagicLinkVerifyRequest,
    PasswordResetConfirmRequest,
    RegisterRequest,
    SessionResponse,
    TokenRequest,
)

router = APIRouter(prefix="/v1/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.post("/register", response_model=ActionResponse)
async def register(
    request: RegisterRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = await register_user(
        db, RegisterUserData(**request.model_dump()), client=client, redis_client=redis_client
    )
    return action_response(result)


@router.post("/verify-email", response_model=ActionResponse)
def verify_email_endpoint(
    request: TokenRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
):
    return action_response(verify_email(db, request.token, client))


@router.post("/complete-registration", response_model=ActionResponse)
def complete_registration_endpoint(
    request: CompleteRegistrationRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
):
    return action_response(complete_registration(db, request.token, request.password, client))


@router.post("/resend-verification", response_model=ActionResponse)
async def resend_verification(
    request: EmailRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = await resend_verification_email(db, request.email, client, redis_client)
    return action_response(result)


@router.post("/login", response_model=ActionResponse)
def login(
    request: LoginRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = login_user(
        db, request.email, request.password, request.remember_me, client, redis_client
    )
    return action_response(result)


@router.post("/logout", response_model=ActionResponse)
def logout(
    session: ServerSession = Depends(require_session(PUBLIC_OPTIONS)),
    client: ClientInfo = Depends(get_client_info),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = logout_user(db, session.access_token, session.user_id, client, redis_client)
    return action_response(result)


@router.post("/magic-link", response_model=ActionResponse)
async def magic_link(
    request: EmailRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = await send_magic_link(db, request.email, client, redis_client)
    return action_response(result)


@router.post("/magic-link/verify", response_model=ActionResponse)
def magic_link_verify(
    request: MagicLinkVerifyRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = verify_magic_link(
        db, request.token_hash, request.type, client, redis_client=redis_client
    )
    return action_response(result)


@router.post("/password-reset/request", response_model=ActionResponse)
async def password_reset_request(
    request: EmailRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = await request_password_reset(db, request.email, client, redis_client)
    return action_response(result)


@router.get("/password-reset/verify")
def password_reset_verify(
    token: str = Query(..., min_length=1, max_length=512),
    redis_client: redis.Redis = Depends(get_redis),
) -> dict:
    return verify_reset_token(redis_client, token)


@router.post("/password-reset/confirm", response_model=ActionResponse)
def password_reset_confirm(
    request: PasswordResetConfirmRequest,
    client: ClientInfo = Depends(enforce_ip_rate_limit),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    result = reset_password(db, request.token, request.new_password, client, redis_client)
    return action_response(result)


@router.get("/session", response_model=SessionResponse)
def session_endpoint(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
) -> SessionResponse:
    """Current session; anonymous callers get ``authenticated=false`` rather than 401."""
    token = credentials.credentials if credentials else None
    result = get_public_session(db, token, redis_client=redis_client)
    if result.session is None:
        return SessionResponse(authenticated=False, redirect_to="/login")

    session = result.session
    return SessionResponse(
        authenticated=True,
        user_id=session.user_id,
        email=session.email,
        is_email_verified=session.is_email_verified,
        has_organization=session.has_organization,
        has_completed_onboarding=session.has_completed_onboarding,
        organization=session.organization,
        profile=session.profile,
        redirect_to=result.redirect_to,
    )


@router.get("/session/timeout", response_model=SessionTimeoutInfo)
def session_timeout(
    session: ServerSession = Depends(require_session(PUBLIC_OPTIONS)),
    redis_client: redis.Redis = Depends(get_redis),
) -> SessionTimeoutInfo:
    return SessionTimeoutService(redis_client).check_session_timeout(session.session_id)


@router.post("/session/extend", response_model=ActionResponse)
def session_extend(
    session: ServerSession = Depends(require_session(PUBLIC_OPTIONS)),
    client: ClientInfo = Depends(get_client_info),
    redis_client: redis.Redis = Depends(get_redis),
) -> ActionResponse:
    if not SessionTimeoutService(redis_client).extend_session(session.session_id, session.user_id, client):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_type": "SESSION_EXPIRED",
                "message": "Session expired",
                "redirect_to": "/login",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )
    return ActionResponse(success=True, message="Session extended")
