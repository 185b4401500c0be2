"""Pydantic schemas for API requests/responses."""

from typing import Any, Literal, Optional

from pydantic import BaseModel, EmailStr, Field


class ProblemDetail(BaseModel):
    """RFC 9457 Problem Details for HTTP API errors.

    RFC 9457: detail can be either a string or a structured object (dict).
    """

    type: str = Field(..., description="URI reference identifying the problem type")
    title: str = Field(..., description="Short, human-readable summary")
    status: int = Field(..., description="HTTP status code")
    detail: str | dict[str, Any] = Field(..., description="Human-readable explanation or structured error details")
    instance: Optional[str] = Field(None, description="URI reference identifying the specific occurrence")


class ActionResponse(BaseModel):
    """Outcome of a domain action."""

    success: bool
    message: str
    error: Optional[str] = None
    redirect_to: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# /v1/auth
# ============================================================================


class RegisterRequest(BaseModel):
    """Request body for POST /v1/auth/register.

    Field rules (name length, password strength) are enforced by the action so
    that failures come back as an ActionResponse rather than a 422.
    """

    first_name: str = Field(..., max_length=200)
    last_name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=200)
    language: str = Field(default="de", pattern=r"^(de|fr|it|en)$")
    referral_source: Optional[str] = Field(None, max_length=100)
    browser_locale: Optional[str] = Field(None, max_length=35)


class TokenRequest(BaseModel):
    """Request body carrying a verification token."""

    token: str = Field(..., min_length=1, max_length=512)


class CompleteRegistrationRequest(BaseModel):
    """Request body for POST /v1/auth/complete-registration."""

    token: str = Field(..., min_length=1, max_length=512)
    password: str = Field(..., max_length=200)


class EmailRequest(BaseModel):
    """Request body carrying only an email address."""

    email: EmailStr


class LoginRequest(BaseModel):
    """Request body for POST /v1/auth/login."""

    email: EmailStr
    password: str = Field(..., min_length=1, max_length=200)
    remember_me: bool = False


class MagicLinkVerifyRequest(BaseModel):
    """Request body for POST /v1/auth/magic-link/verify."""

    token_hash: str = Field(..., min_length=1, max_length=512)
    type: Literal["magiclink", "email", "signup"] = "magiclink"


class PasswordResetConfirmRequest(BaseModel):
    """Request body for POST /v1/auth/password-reset/confirm."""

    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., max_length=200)


class SessionResponse(BaseModel):
    """Response for GET /v1/auth/session."""

    authenticated: bool
    user_id: Optional[str] = None
    email: Optional[str] = None
    is_email_verified: bool = False
    has_organization: bool = False
    has_completed_onboarding: bool = False
    organization: Optional[dict[str, Any]] = None
    profile: Optional[dict[str, Any]] = None
    redirect_to: Optional[str] = None


# ============================================================================
# /v1/onboarding
# ============================================================================


class DraftSaveRequest(BaseModel):
    """Request body for PUT /v1/onboarding/draft."""

    step: int = Field(..., ge=1, le=4)
    data: dict[str, Any] = Field(default_factory=dict)


class DraftResponse(BaseModel):
    """Stored onboarding draft (empty when none)."""

    data: dict[str, Any] = Field(default_factory=dict)
    step: int = 1
    last_saved: Optional[str] = None


class StepUpdateRequest(BaseModel):
    """Request body for POST /v1/onboarding/step."""

    step: int = Field(..., ge=1, le=4)


class CompanyDetailsRequest(BaseModel):
    """Request body for POST /v1/onboarding/company."""

    company_name: str
    street: str
    postal_code: str
    city: str
    canton: str
    country: str = "CH"
    iban: Optional[str] = None
    vat_number: Optional[str] = None


class OnboardingSettings(BaseModel):
    """Final onboarding step: notification and invoicing defaults."""

    email_notifications: bool = Field(True, alias="emailNotifications")
    auto_reminders: bool = Field(True, alias="autoReminders")
    reminder_days: Optional[str] = Field(None, alias="reminderDays")
    default_currency: str = Field("CHF", alias="defaultCurrency")
    default_payment_terms: int = Field(30, ge=0, le=365, alias="defaultPaymentTerms")

    model_config = {"populate_by_name": True}


class CompleteOnboardingRequest(BaseModel):
    """Request body for POST /v1/onboarding/complete."""

    settings: OnboardingSettings = Field(default_factory=OnboardingSettings)


# ============================================================================
# /v1/billing
# ============================================================================


class CheckoutRequest(BaseModel):
    """Request body for POST /v1/billing/checkout."""

    plan: str
    billing_cycle: Literal["monthly", "annual"] = "monthly"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class PortalRequest(BaseModel):
    """Request body for POST /v1/billing/portal."""

    return_url: Optional[str] = None


class RedirectUrlResponse(BaseModel):
    """Hosted Stripe page to redirect the browser to."""

    url: str
    session_id: Optional[str] = None


# ============================================================================
# /v1/consent
# ============================================================================


class ConsentRecordRequest(BaseModel):
    """Request body for POST /v1/consent/record."""

    consent_type: str
    consent_given: bool
    consent_method: str = "api_request"
    email: Optional[EmailStr] = None
    source: Optional[str] = None


class ConsentWithdrawRequest(BaseModel):
    """Request body for POST /v1/consent/withdraw."""

    consent_types: list[str] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)
    email: Optional[EmailStr] = None  # anonymous consents only


class CookieConsentRequest(BaseModel):
    """Request body for POST /v1/consent/cookies."""

    marketing: bool = False
    analytics: bool = False
    email: Optional[EmailStr] = None


# ============================================================================
# /v1/email
# ============================================================================


class EmailPreferencesUpdateRequest(BaseModel):
    """Request body for PUT /v1/email/preferences."""

    preferences: dict[str, bool]


class UnsubscribeRequest(BaseModel):
    """Request body for POST /v1/email/unsubscribe."""

    token: str = Field(..., min_length=1, max_length=2048)


class NewsletterSubscribeRequest(BaseModel):
    """Request body for POST /v1/email/newsletter.

    Name and consent rules are enforced by the action (ActionResponse, not 422).
    """

    first_name: str = Field(..., max_length=200)
    last_name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    consent: bool = False
    language: str = Field(default="de", pattern=r"^(de|fr|it|en)$")
    source: str = Field(default="newsletter_form", max_length=100)


# ============================================================================
# /v1/support
# ============================================================================


class SupportAttachmentRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    size_bytes: int = Field(..., ge=0)
    content_type: Optional[str] = Field(None, max_length=100)


class SupportRequest(BaseModel):
    """Request body for POST /v1/support.

    Length and character rules are enforced by the action; category and
    priority must be known values.
    """

    name: str = Field(..., max_length=200)
    email: str = Field(..., max_length=320)
    company: Optional[str] = Field(None, max_length=200)
    category: Literal[
        "general", "technical", "billing", "feature-request",
        "bug-report", "account", "integration", "other",
    ] = "general"
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    subject: str = Field(..., max_length=400)
    message: str = Field(..., max_length=4000)
    attachments: list[SupportAttachmentRequest] = Field(default_factory=list, max_length=20)
    consent: bool = False
