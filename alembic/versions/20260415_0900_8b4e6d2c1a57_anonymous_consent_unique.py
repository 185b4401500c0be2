"""anonymous_consent_unique

Revision ID: 8b4e6d2c1a57
Revises: 3f1c2a9d7e10
Create Date: 2026-04-15 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8b4e6d2c1a57'
down_revision = '3f1c2a9d7e10'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        "UPDATE consent_records SET email = lower(trim(email)) WHERE email IS NOT NULL"
    )
    # Keep the newest anonymous row per (email, consent_type) before enforcing uniqueness
    op.execute(
        """
        DELETE FROM consent_records older
        USING consent_records newer
        WHERE older.user_id IS NULL
          AND newer.user_id IS NULL
          AND older.email = newer.email
          AND older.consent_type = newer.consent_type
          AND older.consent_date < newer.consent_date
        """
    )
    op.create_index(
        'uq_consent_records_anonymous_email_type',
        'consent_records',
        ['email', 'consent_type'],
        unique=True,
        postgresql_where=sa.text('user_id IS NULL'),
    )


def downgrade() -> None:
    op.drop_index('uq_consent_records_anonymous_email_type', table_name='consent_records')
