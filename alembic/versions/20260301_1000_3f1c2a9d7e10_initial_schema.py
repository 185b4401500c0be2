"""initial_schema

Revision ID: 3f1c2a9d7e10
Revises:
Create Date: 2026-03-01 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '3f1c2a9d7e10'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = False, default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=sa.text("now()") if default else None,
    )


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('name', sa.TEXT(), nullable=False),
        sa.Column('plan', sa.TEXT(), nullable=False, server_default='free'),
        sa.Column('billing_cycle', sa.TEXT(), nullable=True),
        sa.Column('stripe_customer_id', sa.TEXT(), nullable=True),
        sa.Column('stripe_subscription_id', sa.TEXT(), nullable=True),
        sa.Column('subscription_status', sa.TEXT(), nullable=True),
        sa.Column('company_name', sa.TEXT(), nullable=True),
        sa.Column('street', sa.TEXT(), nullable=True),
        sa.Column('postal_code', sa.TEXT(), nullable=True),
        sa.Column('city', sa.TEXT(), nullable=True),
        sa.Column('canton', sa.TEXT(), nullable=True),
        sa.Column('country', sa.TEXT(), nullable=False, server_default='CH'),
        sa.Column('iban', sa.TEXT(), nullable=True),
        sa.Column('vat_number', sa.TEXT(), nullable=True),
        sa.Column('onboarding_step', sa.INTEGER(), nullable=False, server_default='1'),
        sa.Column('onboarding_completed', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        sa.Column('onboarding_draft', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('idx_organizations_stripe_customer', 'organizations', ['stripe_customer_id'])
    op.create_index('idx_organizations_stripe_subscription', 'organizations', ['stripe_subscription_id'])

    op.create_table(
        'organization_users',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column(
            'organization_id',
            postgresql.UUID(as_uuid=False),
            sa.ForeignKey('organizations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('role', sa.TEXT(), nullable=False, server_default='member'),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='active'),
        _timestamp('created_at'),
        sa.UniqueConstraint('user_id', 'organization_id', name='uq_organization_users_user_org'),
    )
    op.create_index('idx_organization_users_user_status', 'organization_users', ['user_id', 'status'])
    op.create_index('idx_organization_users_org', 'organization_users', ['organization_id'])

    op.create_table(
        'user_profiles',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('email', sa.TEXT(), nullable=False),
        sa.Column('first_name', sa.TEXT(), nullable=True),
        sa.Column('last_name', sa.TEXT(), nullable=True),
        sa.Column('language', sa.TEXT(), nullable=False, server_default='de'),
        sa.Column('avatar_url', sa.TEXT(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('idx_user_profiles_email', 'user_profiles', ['email'])

    op.create_table(
        'pending_registrations',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('email', sa.TEXT(), nullable=False, unique=True),
        sa.Column('first_name', sa.TEXT(), nullable=False),
        sa.Column('last_name', sa.TEXT(), nullable=False),
        sa.Column('verification_token', sa.TEXT(), nullable=False, unique=True),
        _timestamp('expires_at', default=False),
        sa.Column('user_metadata', sa.JSON(), nullable=False, server_default='{}'),
        _timestamp('created_at'),
    )
    op.create_index('idx_pending_registrations_expires', 'pending_registrations', ['expires_at'])

    op.create_table(
        'consent_records',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column('email', sa.TEXT(), nullable=True),
        sa.Column('consent_type', sa.TEXT(), nullable=False),
        sa.Column('consent_given', sa.BOOLEAN(), nullable=False),
        sa.Column('consent_method', sa.TEXT(), nullable=False),
        sa.Column('consent_version', sa.TEXT(), nullable=False, server_default='1.0'),
        sa.Column('ip_address', sa.TEXT(), nullable=True),
        sa.Column('user_agent', sa.TEXT(), nullable=True),
        _timestamp('consent_date'),
        sa.Column('withdrawn', sa.BOOLEAN(), nullable=False, server_default=sa.false()),
        _timestamp('withdrawn_at', nullable=True, default=False),
        sa.Column('metadata', sa.JSON(), nullable=False, server_default='{}'),
        sa.UniqueConstraint('user_id', 'consent_type', name='uq_consent_records_user_type'),
    )
    op.create_index('idx_consent_records_email', 'consent_records', ['email'])
    op.create_index('idx_consent_records_type', 'consent_records', ['consent_type'])

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('email', sa.TEXT(), nullable=True),
        sa.Column('ip_address', sa.TEXT(), nullable=True),
        sa.Column('user_agent', sa.TEXT(), nullable=True),
        sa.Column('action', sa.TEXT(), nullable=False),
        sa.Column('resource_type', sa.TEXT(), nullable=True),
        sa.Column('resource_id', sa.TEXT(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('error_message', sa.TEXT(), nullable=True),
        sa.Column('session_id', sa.TEXT(), nullable=True),
        _timestamp('created_at'),
    )
    op.create_index('idx_audit_logs_user_created', 'audit_logs', ['user_id', 'created_at'])
    op.create_index('idx_audit_logs_ip_created', 'audit_logs', ['ip_address', 'created_at'])
    op.create_index('idx_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('idx_audit_logs_created', 'audit_logs', ['created_at'])

    op.create_table(
        'email_preferences',
        sa.Column('id', postgresql.UUID(as_uuid=False), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column('email', sa.TEXT(), nullable=False),
        sa.Column('email_type', sa.TEXT(), nullable=False),
        sa.Column('subscribed', sa.BOOLEAN(), nullable=False, server_default=sa.true()),
        _timestamp('unsubscribed_at', nullable=True, default=False),
        _timestamp('updated_at'),
        sa.UniqueConstraint('email', 'email_type', name='uq_email_preferences_email_type'),
    )
    op.create_index('idx_email_preferences_user', 'email_preferences', ['user_id'])

    op.create_table(
        'webhook_dedup_events',
        sa.Column('id', sa.BIGINT(), primary_key=True, autoincrement=True),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('dedup_key', sa.TEXT(), nullable=False),
        _timestamp('first_seen_at'),
        _timestamp('last_seen_at', nullable=True, default=False),
        sa.Column('status', sa.TEXT(), nullable=False, server_default='processing'),
        sa.Column('request_hash', sa.TEXT(), nullable=True),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])
    op.create_index('idx_webhook_dedup_first_seen', 'webhook_dedup_events', ['first_seen_at'])


def downgrade() -> None:
    op.drop_table('webhook_dedup_events')
    op.drop_table('email_preferences')
    op.drop_table('audit_logs')
    op.drop_table('consent_records')
    op.drop_table('pending_registrations')
    op.drop_table('user_profiles')
    op.drop_table('organization_users')
    op.drop_table('organizations')
