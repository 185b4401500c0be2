"""SQLAlchemy ORM Models for PayMatch."""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BIGINT,
    BOOLEAN,
    INTEGER,
    JSON,
    TEXT,
    TIMESTAMP,
    UUID,
    ForeignKey,
    Index,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Organization(Base):
    """Organization (tenant): plan, billing ids, Swiss invoicing fields and onboarding state.

    ``onboarding_completed`` is the only source of truth for the dashboard gate.
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(TEXT, nullable=False)

    # Billing
    plan: Mapped[str] = mapped_column(TEXT, nullable=False, default="free")
    billing_cycle: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)  # monthly | annual
    stripe_customer_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    stripe_subscription_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    subscription_status: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Swiss invoicing details
    company_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    street: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    city: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    canton: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    country: Mapped[str] = mapped_column(TEXT, nullable=False, default="CH")
    iban: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    vat_number: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    # Onboarding
    onboarding_step: Mapped[int] = mapped_column(INTEGER, nullable=False, default=1)
    onboarding_completed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    onboarding_draft: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_organizations_stripe_customer", "stripe_customer_id"),
        Index("idx_organizations_stripe_subscription", "stripe_subscription_id"),
    )


class OrganizationUser(Base):
    """Membership row: Supabase auth user -> organization."""

    __tablename__ = "organization_users"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(UUID(as_uuid=False), nullable=False)  # Supabase auth.users
    organization_id: Mapped[str] = mapped_column(
        UUID(as_uuid=False), ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False
    )

    role: Mapped[str] = mapped_column(TEXT, nullable=False, default="member")
    # owner | admin | member

    status: Mapped[str] = mapped_column(TEXT, nullable=False, default="active")
    # active | inactive

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("user_id", "organization_id", name="uq_organization_users_user_org"),
        Index("idx_organization_users_user_status", "user_id", "status"),
        Index("idx_organization_users_org", "organization_id"),
    )


class UserProfile(Base):
    """Application profile of a Supabase user (id = auth.users id)."""

    __tablename__ = "user_profiles"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True)
    email: Mapped[str] = mapped_column(TEXT, nullable=False)
    first_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    language: Mapped[str] = mapped_column(TEXT, nullable=False, default="de")
    avatar_url: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (Index("idx_user_profiles_email", "email"),)


class PendingRegistration(Base):
    """Deferred registration held until the email address is verified.

    No credentials are stored; the password is set when the link is consumed.
    """

    __tablename__ = "pending_registrations"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    first_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    last_name: Mapped[str] = mapped_column(TEXT, nullable=False)
    verification_token: Mapped[str] = mapped_column(TEXT, nullable=False, unique=True)
    expires_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    user_metadata: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_pending_registrations_expires", "expires_at"),)


class ConsentRecord(Base):
    """Consent decision (FADP/GDPR). Updated in place only by upsert or withdrawal."""

    __tablename__ = "consent_records"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    consent_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    consent_given: Mapped[bool] = mapped_column(BOOLEAN, nullable=False)
    consent_method: Mapped[str] = mapped_column(TEXT, nullable=False)
    consent_version: Mapped[str] = mapped_column(TEXT, nullable=False, default="1.0")

    ip_address: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    consent_date: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    withdrawn: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=False)
    withdrawn_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    __table_args__ = (
        UniqueConstraint("user_id", "consent_type", name="uq_consent_records_user_type"),
        # NULL user ids never collide in the constraint above
        Index(
            "uq_consent_records_anonymous_email_type",
            "email",
            "consent_type",
            unique=True,
            postgresql_where=text("user_id IS NULL"),
            sqlite_where=text("user_id IS NULL"),
        ),
        Index("idx_consent_records_email", "email"),
        Index("idx_consent_records_type", "consent_type"),
    )


class AuditLog(Base):
    """Append-only security audit entry."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(
        BIGINT().with_variant(INTEGER, "sqlite"), primary_key=True, autoincrement=True
    )
    user_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    action: Mapped[str] = mapped_column(TEXT, nullable=False)
    resource_type: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    resource_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(TEXT, nullable=False)  # success | failure | error
    error_message: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_audit_logs_user_created", "user_id", "created_at"),
        Index("idx_audit_logs_ip_created", "ip_address", "created_at"),
        Index("idx_audit_logs_action", "action"),
        Index("idx_audit_logs_created", "created_at"),
    )


class EmailPreference(Base):
    """Per-address, per-type email subscription state."""

    __tablename__ = "email_preferences"

    id: Mapped[str] = mapped_column(UUID(as_uuid=False), primary_key=True, default=_uuid)
    user_id: Mapped[Optional[str]] = mapped_column(UUID(as_uuid=False), nullable=True)
    email: Mapped[str] = mapped_column(TEXT, nullable=False)
    email_type: Mapped[str] = mapped_column(TEXT, nullable=False)
    subscribed: Mapped[bool] = mapped_column(BOOLEAN, nullable=False, default=True)
    unsubscribed_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("email", "email_type", name="uq_email_preferences_email_type"),
        Index("idx_email_preferences_user", "user_id"),
    )


class WebhookDedupEvent(Base):
    """Webhook dedup gate table for concurrent idempotency.

    Guarantees at most one business-processing per (provider, dedup_key) pair
    even under concurrent or repeated delivery.

    Atomic gate: INSERT ON CONFLICT (provider, dedup_key) DO NOTHING RETURNING id
      → row returned  : first/re-processing handler → continue
      → no row        : duplicate/concurrent → 200 immediately (zero side effects)
    """

    __tablename__ = "webhook_dedup_events"

    id: Mapped[int] = mapped_column(
        BIGINT().with_variant(INTEGER, "sqlite"), primary_key=True, autoincrement=True
    )

    provider: Mapped[str] = mapped_column(TEXT, nullable=False)     # stripe
    dedup_key: Mapped[str] = mapped_column(TEXT, nullable=False)    # ev_<event_id>

    first_seen_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=_utcnow
    )
    last_seen_at: Mapped[Optional[datetime]] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    status: Mapped[str] = mapped_column(
        TEXT, nullable=False, default="processing"
    )  # processing | done | failed

    # SHA-256 hex of request body (never the raw payload)
    request_hash: Mapped[Optional[str]] = mapped_column(TEXT, nullable=True)

    __table_args__ = (
        UniqueConstraint("provider", "dedup_key", name="uq_webhook_dedup_events"),
        Index("idx_webhook_dedup_status", "status"),
        Index("idx_webhook_dedup_first_seen", "first_seen_at"),
    )
