"""add reconcile claim columns to job tables

Revision ID: 0002_reconcile_claims
Revises: 0001_initial
Create Date: 2026-10-19
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = '0002_reconcile_claims'
down_revision = '0001_initial'
branch_labels = None
depends_on = None

JOB_TABLES = ('ai_models', 'generations', 'image_edits', 'upscales', 'video_generations')


def upgrade() -> None:
    for table in JOB_TABLES:
        op.add_column(table, sa.Column('claim_token', sa.String(length=32), nullable=True))
        op.add_column(table, sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    for table in JOB_TABLES:
        op.drop_column(table, 'claimed_at')
        op.drop_column(table, 'claim_token')
