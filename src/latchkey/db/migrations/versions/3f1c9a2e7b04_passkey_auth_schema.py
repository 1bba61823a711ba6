"""Passkey auth schema: users, auth methods, passkeys, challenges, email codes

Learn: Two unique indexes carry the duplicate-account guarantees:
- uq_auth_methods_type_external_active: one active row per
  (auth_type, external_id). Partial (WHERE active), so a deactivated
  passkey or Apple link doesn't block re-linking the same identity.
- passkey_credentials.credential_id: unique across all rows, active or not.

Revision ID: 3f1c9a2e7b04
Revises:
Create Date: 2026-10-19 10:12:41.518204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a2e7b04'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ─── Users ───────────────────────────────────────────
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('password', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
        sa.UniqueConstraint('external_id'),
    )

    op.create_table(
        'user_params',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('param', sa.String(length=50), nullable=False),
        sa.Column('value', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_user_params_user_param', 'user_params', ['user_id', 'param'])

    # ─── Auth methods + passkeys ─────────────────────────
    op.create_table(
        'auth_methods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('auth_type', sa.String(length=20), nullable=False),
        sa.Column('external_id', sa.String(length=512), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'uq_auth_methods_type_external_active',
        'auth_methods',
        ['auth_type', 'external_id'],
        unique=True,
        postgresql_where=sa.text('active'),
        sqlite_where=sa.text('active = 1'),
    )
    op.create_index('idx_auth_methods_user', 'auth_methods', ['user_id'])

    op.create_table(
        'passkey_credentials',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('auth_method_id', sa.Integer(), nullable=False),
        sa.Column('credential_id', sa.LargeBinary(), nullable=False),
        sa.Column('public_key', sa.LargeBinary(), nullable=False),
        sa.Column('counter', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('device_type', sa.String(length=32), nullable=False),
        sa.Column('backed_up', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('transports', sa.JSON(), nullable=False),
        sa.Column('device_name', sa.String(length=255), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['auth_method_id'], ['auth_methods.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('auth_method_id'),
        sa.UniqueConstraint('credential_id'),
    )

    # ─── Short-lived state ───────────────────────────────
    op.create_table(
        'webauthn_challenges',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('challenge', sa.LargeBinary(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('challenge_type', sa.String(length=20), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('challenge'),
    )
    op.create_index('idx_webauthn_challenges_expires', 'webauthn_challenges', ['expires_at'])

    op.create_table(
        'email_verification_codes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=12), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_email_codes_email_expires', 'email_verification_codes', ['email', 'expires_at'])
    op.create_index('idx_email_codes_email_created', 'email_verification_codes', ['email', 'created_at'])


def downgrade() -> None:
    op.drop_index('idx_email_codes_email_created', table_name='email_verification_codes')
    op.drop_index('idx_email_codes_email_expires', table_name='email_verification_codes')
    op.drop_table('email_verification_codes')
    op.drop_index('idx_webauthn_challenges_expires', table_name='webauthn_challenges')
    op.drop_table('webauthn_challenges')
    op.drop_table('passkey_credentials')
    op.drop_index('idx_auth_methods_user', table_name='auth_methods')
    op.drop_index('uq_auth_methods_type_external_active', table_name='auth_methods')
    op.drop_table('auth_methods')
    op.drop_index('idx_user_params_user_param', table_name='user_params')
    op.drop_table('user_params')
    op.drop_table('users')
