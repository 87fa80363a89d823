"""Initial migration - create payments, slips, transaction_claims, payment_history,
notification_tasks and reconciliation_runs tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

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
    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('member_id', sa.String(255), nullable=False),
        sa.Column('cohort_id', sa.String(255), nullable=False),
        sa.Column('expected_amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('due_date', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('matched_slip_id', sa.String(36), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('contact_ref', sa.String(255), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('matched_slip_id', name='uq_payments_matched_slip_id'),
    )

    # Create indexes for payments
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_member_status', 'payments', ['member_id', 'status'])
    op.create_index('ix_payments_due_date', 'payments', ['due_date'])
    op.create_index('ix_payments_cohort_id', 'payments', ['cohort_id'])

    # Create slips table
    op.create_table(
        'slips',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('claimed_payer_id', sa.String(255), nullable=False),
        sa.Column('image_ref', sa.String(512), nullable=False),
        sa.Column('content_type', sa.String(100), nullable=False),
        sa.Column('size_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('provider_transaction_ref', sa.String(255), nullable=True),
        sa.Column('verified_amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('settled_at', sa.DateTime(), nullable=True),
        sa.Column('sender_account_hint', sa.String(64), nullable=True),
        sa.Column('sender_name', sa.String(255), nullable=True),
        sa.Column('verified_at', sa.DateTime(), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('provider_response_json', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reverify_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('matched_payment_id', sa.String(36), nullable=True),
        sa.Column('duplicate_of_slip_id', sa.String(36), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Create indexes for slips
    op.create_index('ix_slips_status', 'slips', ['status'])
    op.create_index('ix_slips_payer_status', 'slips', ['claimed_payer_id', 'status'])
    op.create_index('ix_slips_provider_transaction_ref', 'slips', ['provider_transaction_ref'])
    op.create_index('ix_slips_updated_at', 'slips', ['updated_at'])

    # Create transaction_claims table
    op.create_table(
        'transaction_claims',
        sa.Column('provider_transaction_ref', sa.String(255), primary_key=True),
        sa.Column('slip_id', sa.String(36), sa.ForeignKey('slips.id'), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=False),
    )

    # Create payment_history table
    op.create_table(
        'payment_history',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('previous_status', sa.String(50), nullable=False),
        sa.Column('new_status', sa.String(50), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('slip_id', sa.String(36), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # Create indexes for payment_history
    op.create_index('ix_payment_history_payment_id', 'payment_history', ['payment_id'])
    op.create_index('ix_payment_history_new_status', 'payment_history', ['new_status'])
    op.create_index('ix_payment_history_created_at', 'payment_history', ['created_at'])

    # Create notification_tasks table
    op.create_table(
        'notification_tasks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('payments.id'), nullable=False),
        sa.Column('channel', sa.String(50), nullable=False, server_default='line'),
        sa.Column('payload_kind', sa.String(50), nullable=False),
        sa.Column('recipient', sa.String(255), nullable=True),
        sa.Column('payload_json', sa.Text(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(255), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('payment_id', 'payload_kind', name='uq_notification_tasks_payment_kind'),
    )
    op.create_index('ix_notification_tasks_status', 'notification_tasks', ['status'])

    # Create reconciliation_runs table
    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='running'),
        sa.Column('active_kind', sa.String(20), nullable=True, unique=True),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('items_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('items_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(), nullable=True),
        sa.Column('period_end', sa.DateTime(), nullable=True),
        sa.Column('summary_json', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
    )
    op.create_index(
        'ix_reconciliation_runs_kind_started', 'reconciliation_runs', ['kind', 'started_at']
    )


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_reconciliation_runs_kind_started', table_name='reconciliation_runs')
    op.drop_index('ix_notification_tasks_status', table_name='notification_tasks')

    op.drop_index('ix_payment_history_created_at', table_name='payment_history')
    op.drop_index('ix_payment_history_new_status', table_name='payment_history')
    op.drop_index('ix_payment_history_payment_id', table_name='payment_history')

    op.drop_index('ix_slips_updated_at', table_name='slips')
    op.drop_index('ix_slips_provider_transaction_ref', table_name='slips')
    op.drop_index('ix_slips_payer_status', table_name='slips')
    op.drop_index('ix_slips_status', table_name='slips')

    op.drop_index('ix_payments_cohort_id', table_name='payments')
    op.drop_index('ix_payments_due_date', table_name='payments')
    op.drop_index('ix_payments_member_status', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')

    # Drop tables
    op.drop_table('reconciliation_runs')
    op.drop_table('notification_tasks')
    op.drop_table('payment_history')
    op.drop_table('transaction_claims')
    op.drop_table('slips')
    op.drop_table('payments')
