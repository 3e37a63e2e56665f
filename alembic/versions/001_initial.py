"""Initial migration

Revision ID: 001_initial
Revises:
Create Date: 2026-10-12

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create users table
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('credits_limit', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Create generations table (image generation, upscale, edit, video)
    op.create_table(
        'generations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'CANCELLED', name='generationstatus'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('external_job_id', sa.String(100), nullable=True, index=True),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('result_urls', sa.JSON(), nullable=False),
        sa.Column('thumbnail_urls', sa.JSON(), nullable=False),
        sa.Column('storage_category', sa.String(20), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
    )

    # Create ai_models table (training jobs)
    op.create_table(
        'ai_models',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column(
            'status',
            sa.Enum('DRAFT', 'TRAINING', 'READY', 'ERROR', name='trainingstatus'),
            nullable=False,
            server_default='DRAFT',
        ),
        sa.Column('external_job_id', sa.String(100), nullable=True, index=True),
        sa.Column('progress', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quality_score', sa.Integer(), nullable=True),
        sa.Column('model_url', sa.Text(), nullable=True),
        sa.Column('training_config', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('credits_charged', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('trained_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
    )

    # Create usage_logs table (credit ledger)
    op.create_table(
        'usage_logs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('job_id', sa.String(36), nullable=True, index=True),
        sa.Column('job_kind', sa.String(20), nullable=True),
        sa.Column('action', sa.String(50), nullable=False, index=True),
        sa.Column('credits_used', sa.Integer(), nullable=False),
        sa.Column('reverses_id', sa.String(36), sa.ForeignKey('usage_logs.id'), nullable=True, unique=True),
        sa.Column('idempotency_key', sa.String(150), nullable=True, unique=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Refund lookups scan a job's debits newest first
    op.create_index('idx_usage_logs_job_created', 'usage_logs', ['job_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('idx_usage_logs_job_created')
    op.drop_table('usage_logs')
    op.drop_table('ai_models')
    op.drop_table('generations')
    op.drop_table('users')
    op.execute('DROP TYPE IF EXISTS trainingstatus')
    op.execute('DROP TYPE IF EXISTS generationstatus')
