"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')

JOB_TABLES = ('ai_models', 'generations', 'image_edits', 'upscales', 'video_generations')


def _job_columns() -> list:
    return [
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('job_id', sa.String(length=128), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('provider_meta', JSON, nullable=False),
        sa.Column('result_urls', JSON, nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('cost_credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('reconciled_via', sa.String(length=16), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    ]


def _job_indexes(table: str) -> None:
    op.create_index(f'ix_{table}_account_id', table, ['account_id'])
    op.create_index(f'ix_{table}_job_id', table, ['job_id'])
    op.create_index(f'ix_{table}_status', table, ['status'])


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('plan', sa.String(length=16), nullable=False, server_default='STARTER'),
        sa.Column('billing_cycle', sa.String(length=16), nullable=False, server_default='MONTHLY'),
        sa.Column('credits_limit', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('credits_balance', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('credits_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_accounts_email', 'accounts', ['email'], unique=True)

    op.create_table(
        'credit_purchases',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('package_id', sa.String(length=64), nullable=True),
        sa.Column('package_name', sa.String(length=128), nullable=False),
        sa.Column('credit_amount', sa.Integer(), nullable=False),
        sa.Column('used_credits', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('valid_until', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_expired', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('payment_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('payment_id', name='uq_credit_purchases_payment_id'),
        sa.CheckConstraint('used_credits <= credit_amount', name='ck_credit_purchases_used_le_amount'),
    )
    op.create_index('ix_credit_purchases_account_id', 'credit_purchases', ['account_id'])
    op.create_index('ix_credit_purchases_valid_until', 'credit_purchases', ['valid_until'])

    op.create_table(
        'credit_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('account_id', sa.Integer(), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('reference_id', sa.String(length=64), nullable=True),
        sa.Column('credit_purchase_id', sa.Integer(), sa.ForeignKey('credit_purchases.id'), nullable=True),
        sa.Column('meta', JSON, nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_transactions_idempotency_key'),
    )
    op.create_index('ix_credit_transactions_account_id', 'credit_transactions', ['account_id'])
    op.create_index('ix_credit_transactions_reference_id', 'credit_transactions', ['reference_id'])
    op.create_index('ix_credit_transactions_created_at', 'credit_transactions', ['created_at'])

    op.create_table(
        'ai_models',
        *_job_columns(),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('class_word', sa.String(length=32), nullable=False),
        sa.Column('trigger_word', sa.String(length=32), nullable=False, server_default='ohwx'),
        sa.Column('photo_urls', JSON, nullable=False),
        sa.Column('model_version', sa.String(length=255), nullable=True),
    )
    op.create_table(
        'generations',
        *_job_columns(),
        sa.Column('model_id', sa.Integer(), sa.ForeignKey('ai_models.id'), nullable=True),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('aspect_ratio', sa.String(length=16), nullable=False, server_default='1:1'),
        sa.Column('variations', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('seed', sa.Integer(), nullable=True),
    )
    op.create_table(
        'image_edits',
        *_job_columns(),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('source_urls', JSON, nullable=False),
        sa.Column('aspect_ratio', sa.String(length=16), nullable=True),
    )
    op.create_table(
        'upscales',
        *_job_columns(),
        sa.Column('source_url', sa.Text(), nullable=False),
        sa.Column('scale_factor', sa.Integer(), nullable=False, server_default=sa.text('2')),
    )
    op.create_table(
        'video_generations',
        *_job_columns(),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('duration', sa.Integer(), nullable=False, server_default=sa.text('4')),
        sa.Column('source_image_url', sa.Text(), nullable=True),
    )
    for table in JOB_TABLES:
        _job_indexes(table)


def downgrade() -> None:
    for table in reversed(JOB_TABLES):
        op.drop_table(table)
    op.drop_table('credit_transactions')
    op.drop_table('credit_purchases')
    op.drop_table('accounts')
