"""Administrator summaries - notification tasks may belong to a reconciliation run

Revision ID: 002_admin_summaries
Revises: 001_initial
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002_admin_summaries'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # SQLite cannot alter columns in place
    with op.batch_alter_table('notification_tasks') as batch_op:
        batch_op.alter_column('payment_id', existing_type=sa.String(36), nullable=True)
        batch_op.add_column(sa.Column('run_id', sa.String(36), nullable=True))
        batch_op.create_foreign_key(
            'fk_notification_tasks_run_id',
            'reconciliation_runs',
            ['run_id'],
            ['id'],
        )
        batch_op.create_index('ix_notification_tasks_run_id', ['run_id'])


def downgrade() -> None:
    op.execute("DELETE FROM notification_tasks WHERE payment_id IS NULL")
    with op.batch_alter_table('notification_tasks') as batch_op:
        batch_op.drop_index('ix_notification_tasks_run_id')
        batch_op.drop_constraint('fk_notification_tasks_run_id', type_='foreignkey')
        batch_op.drop_column('run_id')
        batch_op.alter_column('payment_id', existing_type=sa.String(36), nullable=False)
