"""phone verification tables

Revision ID: 20261018_01
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_01'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'sms_verifications',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('code_hash', sa.String(length=64), nullable=False),
        sa.Column('nonce', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('request_ip', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=256), nullable=True),
        sa.Column('fingerprint_hash', sa.String(length=128), nullable=True),
        sa.Column('session_id', sa.String(length=128), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('risk_flags', sa.JSON(), nullable=False),
        sa.Column('required_captcha', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint('attempts >= 0', name='ck_sms_verifications_attempts'),
    )
    op.create_index(
        'uq_sms_verifications_pending_phone',
        'sms_verifications',
        ['phone'],
        unique=True,
        postgresql_where=sa.text('NOT verified'),
        sqlite_where=sa.text('verified = 0'),
    )
    op.create_index('ix_sms_verifications_phone_created', 'sms_verifications', ['phone', 'created_at'])

    op.create_table(
        'rate_limit_counters',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('identifier_kind', sa.String(length=16), nullable=False),
        sa.Column('identifier_value', sa.String(length=128), nullable=False),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('ip', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index(
        'ix_rate_limit_counters_identifier',
        'rate_limit_counters',
        ['identifier_kind', 'identifier_value', 'created_at'],
    )
    op.create_index('ix_rate_limit_counters_created_at', 'rate_limit_counters', ['created_at'])

    op.create_table(
        'phone_number_intelligence',
        sa.Column('phone', sa.String(length=32), primary_key=True),
        sa.Column('is_valid', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('carrier', sa.String(length=128), nullable=True),
        sa.Column('line_type', sa.String(length=16), nullable=False, server_default='unknown'),
        sa.Column('country_code', sa.String(length=8), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('warnings', sa.JSON(), nullable=False),
        sa.Column('last_verification', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column('phone', sa.String(length=32), nullable=False),
        sa.Column('last_verified_at', sa.DateTime(), nullable=True),
        sa.Column('verification_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_phone', 'users', ['phone'], unique=True)

    op.create_table(
        'auth_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('phone_masked', sa.String(length=32), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('fingerprint_hash', sa.String(length=128), nullable=True),
        sa.Column('session_id', sa.String(length=128), nullable=True),
        sa.Column('attempt_type', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error_kind', sa.String(length=32), nullable=True),
        sa.Column('risk_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('risk_flags', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_auth_attempts_created_at', 'auth_attempts', ['created_at'])

    op.create_table(
        'device_fingerprints',
        sa.Column('fingerprint_hash', sa.String(length=128), primary_key=True),
        sa.Column('user_agent', sa.String(length=256), nullable=True),
        sa.Column('screen_resolution', sa.String(length=32), nullable=True),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('language', sa.String(length=32), nullable=True),
        sa.Column('platform', sa.String(length=64), nullable=True),
        sa.Column('trust_score', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('first_seen', sa.DateTime(), nullable=False),
        sa.Column('last_seen', sa.DateTime(), nullable=False),
    )


def downgrade() -> None:
    op.drop_table('device_fingerprints')
    op.drop_index('ix_auth_attempts_created_at', table_name='auth_attempts')
    op.drop_table('auth_attempts')
    op.drop_index('ix_users_phone', table_name='users')
    op.drop_table('users')
    op.drop_table('phone_number_intelligence')
    op.drop_index('ix_rate_limit_counters_created_at', table_name='rate_limit_counters')
    op.drop_index('ix_rate_limit_counters_identifier', table_name='rate_limit_counters')
    op.drop_table('rate_limit_counters')
    op.drop_index('ix_sms_verifications_phone_created', table_name='sms_verifications')
    op.drop_index('uq_sms_verifications_pending_phone', table_name='sms_verifications')
    op.drop_table('sms_verifications')
