"""Server session derivation with email / onboarding / organization gates.

FLOW:
1. Resolve the Supabase user from the access token (missing/invalid → UNAUTHENTICATED)
2. Profile: cache → user_profiles → cache
3. Active membership + organization: cache → organization_users ⋈ organizations → cache
4. Derive is_email_verified, has_organization, has_completed_onboarding
5. Apply the requested gates in order; the first failure wins

Gate failures are returned as typed errors with a redirect target, never raised.
The FastAPI dependency ``require_session`` turns them into 401/403 Problem Details.
"""

import logging
from enum import Enum
from typing import Any, Callable, Optional

import redis
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.orm import Session

from paymatch_api.auth.cache import CacheService
from paymatch_api.auth.rate_limiting import RateLimiter
from paymatch_api.auth.tokens import session_id_from_access_token
from paymatch_api.context import org_id_var, user_id_var
from paymatch_api.db.models import Organization, OrganizationUser, UserProfile
from paymatch_api.db.redis_client import get_redis
from paymatch_api.db.session import get_db
from paymatch_api.supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

session_security = HTTPBearer(auto_error=False, description="Supabase JWT Session Token")


class SessionErrorType(str, Enum):
    UNAUTHENTICATED = "UNAUTHENTICATED"
    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    ONBOARDING_INCOMPLETE = "ONBOARDING_INCOMPLETE"
    NO_ORGANIZATION = "NO_ORGANIZATION"


class SessionError(BaseModel):
    type: SessionErrorType
    message: str
    redirect_to: str


UNAUTHENTICATED_ERROR = SessionError(
    type=SessionErrorType.UNAUTHENTICATED,
    message="Authentication required",
    redirect_to="/login",
)
EMAIL_NOT_VERIFIED_ERROR = SessionError(
    type=SessionErrorType.EMAIL_NOT_VERIFIED,
    message="Email verification required",
    redirect_to="/verify-email",
)
ONBOARDING_INCOMPLETE_ERROR = SessionError(
    type=SessionErrorType.ONBOARDING_INCOMPLETE,
    message="Onboarding completion required",
    redirect_to="/onboarding",
)
NO_ORGANIZATION_ERROR = SessionError(
    type=SessionErrorType.NO_ORGANIZATION,
    message="Organization membership required",
    redirect_to="/onboarding",
)


class SessionOptions(BaseModel):
    require_email_verification: bool = False
    require_onboarding: bool = False
    require_organization: bool = False


DASHBOARD_OPTIONS = SessionOptions(
    require_email_verification=True, require_onboarding=True, require_organization=True
)
ONBOARDING_OPTIONS = SessionOptions(require_email_verification=True, require_organization=True)
PUBLIC_OPTIONS = SessionOptions()


class ServerSession(BaseModel):
    user_id: str
    email: Optional[str] = None
    session_id: Optional[str] = None
    access_token: Optional[str] = None
    profile: Optional[dict[str, Any]] = None
    organization: Optional[dict[str, Any]] = None
    role: Optional[str] = None
    is_email_verified: bool = False
    has_organization: bool = False
    has_completed_onboarding: bool = False

    @property
    def organization_id(self) -> Optional[str]:
        return self.organization["id"] if self.organization else None


class SessionResult(BaseModel):
    session: Optional[ServerSession] = None
    error: Optional[SessionError] = None
    redirect_to: Optional[str] = None


def _profile_to_dict(profile: UserProfile) -> dict[str, Any]:
    return {
        "id": profile.id,
        "email": profile.email,
        "first_name": profile.first_name,
        "last_name": profile.last_name,
        "language": profile.language,
        "avatar_url": profile.avatar_url,
    }


def organization_to_dict(org: Organization, role: Optional[str] = None) -> dict[str, Any]:
    return {
        "id": org.id,
        "name": org.name,
        "plan": org.plan,
        "billing_cycle": org.billing_cycle,
        "subscription_status": org.subscription_status,
        "stripe_customer_id": org.stripe_customer_id,
        "company_name": org.company_name,
        "canton": org.canton,
        "country": org.country,
        "onboarding_step": org.onboarding_step,
        "onboarding_completed": org.onboarding_completed,
        "role": role,
    }


def get_active_membership(
    db: Session, user_id: str
) -> Optional[tuple[OrganizationUser, Organization]]:
    """The user's active membership joined to its organization (owners first)."""
    row = (
        db.query(OrganizationUser, Organization)
        .join(Organization, Organization.id == OrganizationUser.organization_id)
        .filter(OrganizationUser.user_id == user_id, OrganizationUser.status == "active")
        .order_by(
            (OrganizationUser.role == "owner").desc(),
            OrganizationUser.created_at.asc(),
        )
        .first()
    )
    if row is None:
        return None
    return row[0], row[1]


def load_profile(db: Session, user_id: str, cache: CacheService) -> Optional[dict[str, Any]]:
    cached = cache.get_cached_user_profile(user_id)
    if cached is not None:
        return cached
    profile = db.query(UserProfile).filter(UserProfile.id == user_id).first()
    if profile is None:
        return None
    data = _profile_to_dict(profile)
    cache.cache_user_profile(user_id, data)
    return data


def load_organization(db: Session, user_id: str, cache: CacheService) -> Optional[dict[str, Any]]:
    cached = cache.get_cached_organization(user_id)
    if cached is not None:
        return cached
    membership = get_active_membership(db, user_id)
    if membership is None:
        return None
    member, org = membership
    data = organization_to_dict(org, member.role)
    cache.cache_organization(user_id, data)
    return data


def validate_session_requirements(
    session: ServerSession, options: SessionOptions
) -> Optional[SessionError]:
    """First failing gate, in the order email → onboarding → organization."""
    if options.require_email_verification and not session.is_email_verified:
        return EMAIL_NOT_VERIFIED_ERROR
    if options.require_onboarding and not session.has_completed_onboarding:
        return ONBOARDING_INCOMPLETE_ERROR
    if options.require_organization and not session.has_organization:
        return NO_ORGANIZATION_ERROR
    return None


def get_server_session(
    db: Session,
    access_token: Optional[str],
    options: Optional[SessionOptions] = None,
    redis_client: Optional[redis.Redis] = None,
    supabase_client: Any = None,
) -> SessionResult:
    """Derive the server session for an access token and apply the requested gates."""
    options = options or PUBLIC_OPTIONS
    if not access_token:
        return SessionResult(error=UNAUTHENTICATED_ERROR)

    try:
        client = supabase_client or get_supabase_client()
        user_response = client.auth.get_user(access_token)
    except Exception as e:
        logger.info(
            "session.token_rejected",
            extra={"error_type": type(e).__name__},
        )
        return SessionResult(error=UNAUTHENTICATED_ERROR)

    user = getattr(user_response, "user", None)
    if user is None:
        return SessionResult(error=UNAUTHENTICATED_ERROR)

    cache = CacheService(redis_client)
    profile = load_profile(db, user.id, cache)
    organization = load_organization(db, user.id, cache)

    session = ServerSession(
        user_id=user.id,
        email=getattr(user, "email", None),
        session_id=session_id_from_access_token(access_token),
        access_token=access_token,
        profile=profile,
        organization=organization,
        role=organization.get("role") if organization else None,
        is_email_verified=getattr(user, "email_confirmed_at", None) is not None,
        has_organization=organization is not None,
        has_completed_onboarding=bool(organization and organization.get("onboarding_completed")),
    )
    return SessionResult(session=session, error=validate_session_requirements(session, options))


def get_dashboard_session(db: Session, access_token: Optional[str], **kwargs: Any) -> SessionResult:
    return get_server_session(db, access_token, DASHBOARD_OPTIONS, **kwargs)


def get_onboarding_session(db: Session, access_token: Optional[str], **kwargs: Any) -> SessionResult:
    return get_server_session(db, access_token, ONBOARDING_OPTIONS, **kwargs)


def get_public_session(db: Session, access_token: Optional[str], **kwargs: Any) -> SessionResult:
    """Session for public pages.

    Never fails for a logged-in user; ``redirect_to`` carries where that user
    belongs (/verify-email, /onboarding or /dashboard). Anonymous callers get
    UNAUTHENTICATED.
    """
    result = get_server_session(db, access_token, PUBLIC_OPTIONS, **kwargs)
    if result.session is None:
        return result
    return SessionResult(session=result.session, redirect_to=public_redirect_for(result.session))


def public_redirect_for(session: ServerSession) -> str:
    """Where a logged-in user visiting a public page should be sent."""
    if not session.is_email_verified:
        return "/verify-email"
    if not session.has_completed_onboarding:
        return "/onboarding"
    return "/dashboard"


def _session_http_exception(error: SessionError) -> HTTPException:
    status_code = (
        status.HTTP_401_UNAUTHORIZED
        if error.type == SessionErrorType.UNAUTHENTICATED
        else status.HTTP_403_FORBIDDEN
    )
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(
        status_code=status_code,
        detail={
            "error_type": error.type.value,
            "message": error.message,
            "redirect_to": error.redirect_to,
        },
        headers=headers,
    )


def require_session(options: Optional[SessionOptions] = None) -> Callable[..., ServerSession]:
    """FastAPI dependency factory enforcing the given session gates.

    Usage::

        @router.get("/x")
        def handler(session: ServerSession = Depends(require_session(DASHBOARD_OPTIONS))): ...
    """
    options = options or PUBLIC_OPTIONS

    def dependency(
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
        db: Session = Depends(get_db),
        redis_client: redis.Redis = Depends(get_redis),
    ) -> ServerSession:
        token = credentials.credentials if credentials else None
        result = get_server_session(db, token, options, redis_client=redis_client)
        if result.error is not None:
            logger.info(
                "session.gate_failed",
                extra={"error_type": result.error.type.value, "path": request.url.path},
            )
            raise _session_http_exception(result.error)

        session = result.session
        limit = RateLimiter(redis_client).rate_limit_api_calls(session.user_id)
        if not limit.allowed:
            logger.warning("session.api_rate_limited", extra={"path": request.url.path})
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please slow down.",
                headers={"Retry-After": str(max(1, limit.retry_after))},
            )

        user_id_var.set(session.user_id)
        if session.organization_id:
            org_id_var.set(session.organization_id)
        return session

    return dependency
