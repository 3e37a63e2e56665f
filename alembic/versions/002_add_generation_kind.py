"""Add explicit kind to generations

Revision ID: 002_add_generation_kind
Revises: 001_initial
Create Date: 2026-10-14

Upscale, edit and video jobs were previously told apart by a marker at the
start of the prompt. The marker is copied into the new column once here.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_add_generation_kind'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

jobkind = sa.Enum('GENERATION', 'UPSCALE', 'EDIT', 'VIDEO', 'TRAINING', name='jobkind')

PROMPT_MARKERS = {
    '[UPSCALED]': 'UPSCALE',
    '[EDITED]': 'EDIT',
    '[VIDEO]': 'VIDEO',
}


def upgrade() -> None:
    jobkind.create(op.get_bind(), checkfirst=True)

    op.add_column(
        'generations',
        sa.Column('kind', jobkind, nullable=False, server_default='GENERATION')
    )

    generations = sa.table(
        'generations',
        sa.column('kind', jobkind),
        sa.column('prompt', sa.Text()),
    )
    for marker, kind in PROMPT_MARKERS.items():
        op.execute(
            generations.update()
            .where(generations.c.prompt.like(f'{marker}%'))
            .values(kind=kind)
        )


def downgrade() -> None:
    op.drop_column('generations', 'kind')
    jobkind.drop(op.get_bind(), checkfirst=True)
