"""phone call fields on conversation sessions

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '20261019_0002'
down_revision: Union[str, None] = '20261019_0001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table('conversation_sessions') as batch:
        batch.add_column(sa.Column('channel', sa.String(length=16), nullable=False, server_default='web'))
        batch.add_column(sa.Column('caller_phone', sa.String(length=32), nullable=True))
        batch.add_column(sa.Column('ended_at', sa.DateTime(), nullable=True))
        batch.add_column(sa.Column('duration_seconds', sa.Integer(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('conversation_sessions') as batch:
        batch.drop_column('duration_seconds')
        batch.drop_column('ended_at')
        batch.drop_column('caller_phone')
        batch.drop_column('channel')
