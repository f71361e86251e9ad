"""Initial migration - create payments, reconciliation_runs, reconciliation_items and reconciliation_locks tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

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
    # Create payments table (app ledger)
    op.create_table(
        'payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('provider_transaction_id', sa.String(255), nullable=True),
        sa.Column('provider', sa.String(50), nullable=False, server_default='stripe'),
        sa.Column('status', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(20, 6), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('payer_name', sa.String(255), nullable=True),
        sa.Column('payer_phone', sa.String(50), nullable=True),
        sa.Column('payer_email', sa.String(255), nullable=True),
        sa.Column('county', sa.String(255), nullable=True),
        sa.Column('transaction_date', sa.DateTime(), nullable=True),
        sa.Column('extra_data_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )

    # Create indexes for payments
    op.create_index('ix_payments_reference', 'payments', ['reference'])
    op.create_index('ix_payments_provider_transaction_id', 'payments', ['provider_transaction_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_transaction_date', 'payments', ['transaction_date'])
    op.create_index('ix_payments_county', 'payments', ['county'])

    # Create reconciliation_runs table
    op.create_table(
        'reconciliation_runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('county', sa.String(255), nullable=True),
        sa.Column('dry_run', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('total_matched', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_unmatched_app', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_unmatched_gateway', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount_mismatch', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_duplicate', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_app_amount', sa.Numeric(20, 6), nullable=False, server_default='0'),
        sa.Column('total_gateway_amount', sa.Numeric(20, 6), nullable=False, server_default='0'),
        sa.Column('total_discrepancy', sa.Numeric(20, 6), nullable=False, server_default='0'),
        sa.Column('tolerance_config_json', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
    )

    # Create indexes for reconciliation_runs
    op.create_index('ix_reconciliation_runs_status', 'reconciliation_runs', ['status'])
    op.create_index('ix_reconciliation_runs_created_at', 'reconciliation_runs', ['created_at'])
    op.create_index('ix_reconciliation_runs_period', 'reconciliation_runs', ['period_start', 'period_end'])

    # Create reconciliation_items table
    op.create_table(
        'reconciliation_items',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'run_id',
            sa.String(36),
            sa.ForeignKey('reconciliation_runs.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('item_id', sa.String(64), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(20), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('amount', sa.Numeric(20, 6), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='KES'),
        sa.Column('transaction_date', sa.DateTime(), nullable=True),
        sa.Column('payer_name', sa.String(255), nullable=True),
        sa.Column('payer_phone', sa.String(50), nullable=True),
        sa.Column('payer_email', sa.String(255), nullable=True),
        sa.Column('county', sa.String(255), nullable=True),
        sa.Column('record_status', sa.String(50), nullable=True),
        sa.Column('reconciliation_status', sa.String(30), nullable=False),
        sa.Column('match_reference', sa.String(64), nullable=True),
        sa.Column('discrepancy_amount', sa.Numeric(20, 6), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('item_metadata_json', sa.Text(), nullable=True),
        sa.UniqueConstraint('run_id', 'item_id', name='uq_reconciliation_items_run_item'),
    )

    # Create indexes for reconciliation_items
    op.create_index('ix_reconciliation_items_run_id', 'reconciliation_items', ['run_id'])
    op.create_index('ix_reconciliation_items_status', 'reconciliation_items', ['reconciliation_status'])

    # Create reconciliation_locks table
    op.create_table(
        'reconciliation_locks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('window_key', sa.String(300), nullable=False),
        sa.Column('run_id', sa.String(36), nullable=False),
        sa.Column('acquired_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
    )

    # Create indexes for reconciliation_locks
    op.create_index('ix_reconciliation_locks_window_key', 'reconciliation_locks', ['window_key'], unique=True)
    op.create_index('ix_reconciliation_locks_expires_at', 'reconciliation_locks', ['expires_at'])


def downgrade() -> None:
    # Drop reconciliation_locks table
    op.drop_index('ix_reconciliation_locks_expires_at', table_name='reconciliation_locks')
    op.drop_index('ix_reconciliation_locks_window_key', table_name='reconciliation_locks')
    op.drop_table('reconciliation_locks')

    # Drop reconciliation_items table
    op.drop_index('ix_reconciliation_items_status', table_name='reconciliation_items')
    op.drop_index('ix_reconciliation_items_run_id', table_name='reconciliation_items')
    op.drop_table('reconciliation_items')

    # Drop reconciliation_runs table
    op.drop_index('ix_reconciliation_runs_period', table_name='reconciliation_runs')
    op.drop_index('ix_reconciliation_runs_created_at', table_name='reconciliation_runs')
    op.drop_index('ix_reconciliation_runs_status', table_name='reconciliation_runs')
    op.drop_table('reconciliation_runs')

    # Drop payments table
    op.drop_index('ix_payments_county', table_name='payments')
    op.drop_index('ix_payments_transaction_date', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_provider_transaction_id', table_name='payments')
    op.drop_index('ix_payments_reference', table_name='payments')
    op.drop_table('payments')
