"""Wallet analytics schema

Revision ID: 3f1a9c2d7e54
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a9c2d7e54'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ZEC = sa.Numeric(16, 8)


def upgrade() -> None:
    # -- Ownership chain --
    op.create_table(
        'projects',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=False, server_default='other'),
        sa.Column('status', sa.Text(), server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        'wallets',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('address', sa.Text(), nullable=False),
        sa.Column('wallet_type', sa.Text(), server_default='t'),
        sa.Column('privacy_mode', sa.Text(), nullable=False, server_default='private'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_wallets_project_id', 'wallets', ['project_id'])
    op.create_index('ix_wallets_privacy_mode', 'wallets', ['privacy_mode'])

    op.create_table(
        'alert_configurations',
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id'), primary_key=True),
        sa.Column('thresholds', sa.JSON()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        'privacy_audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('actor_id', sa.Text(), nullable=True),
        sa.Column('old_mode', sa.Text(), nullable=True),
        sa.Column('new_mode', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_privacy_audit_wallet', 'privacy_audit_log', ['wallet_id'])

    # -- Activity + scores --
    op.create_table(
        'wallet_activity_metrics',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('activity_date', sa.Date(), nullable=False),
        sa.Column('transaction_count', sa.Integer(), server_default='0'),
        sa.Column('total_volume_zatoshi', sa.BigInteger(), server_default='0'),
        sa.Column('total_fees_zatoshi', sa.BigInteger(), server_default='0'),
        sa.Column('shielded_count', sa.Integer(), server_default='0'),
        sa.Column('transparent_count', sa.Integer(), server_default='0'),
        sa.Column('shielded_volume_zatoshi', sa.BigInteger(), server_default='0'),
        sa.Column('transfers_count', sa.Integer(), server_default='0'),
        sa.Column('swaps_count', sa.Integer(), server_default='0'),
        sa.Column('bridges_count', sa.Integer(), server_default='0'),
        sa.Column('is_active', sa.Boolean(), server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('wallet_id', 'activity_date', name='uq_activity_wallet_date'),
    )
    op.create_table(
        'wallet_productivity_scores',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('total_score', sa.Float(), nullable=False),
        sa.Column('retention_score', sa.Float(), server_default='0.0'),
        sa.Column('adoption_score', sa.Float(), server_default='0.0'),
        sa.Column('activity_score', sa.Float(), server_default='0.0'),
        sa.Column('diversity_score', sa.Float(), server_default='0.0'),
        sa.Column('churn_score', sa.Float(), server_default='0.0'),
        sa.Column('status', sa.Text(), nullable=False),
        sa.Column('risk_level', sa.Text(), nullable=False),
        sa.Column('calculated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_scores_wallet_calculated', 'wallet_productivity_scores', ['wallet_id', 'calculated_at'])

    op.create_table(
        'wallet_cohorts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('cohort_type', sa.Text(), nullable=False, server_default='weekly'),
        sa.Column('cohort_period', sa.Date(), nullable=False),
        sa.Column('wallet_count', sa.Integer(), server_default='0'),
        sa.Column('retention_week_1', sa.Float(), nullable=True),
        sa.Column('retention_week_2', sa.Float(), nullable=True),
        sa.Column('retention_week_3', sa.Float(), nullable=True),
        sa.Column('retention_week_4', sa.Float(), nullable=True),
        sa.UniqueConstraint('project_id', 'cohort_type', 'cohort_period', name='uq_cohort_project_period'),
    )
    op.create_table(
        'wallet_adoption_stages',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('stage_name', sa.Text(), nullable=False),
        sa.Column('achieved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('time_to_achieve_hours', sa.Float(), nullable=True),
        sa.UniqueConstraint('wallet_id', 'stage_name', name='uq_adoption_wallet_stage'),
    )

    # -- Benchmarks --
    op.create_table(
        'benchmarks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('benchmark_type', sa.Text(), nullable=False),
        sa.Column('category', sa.Text(), nullable=False),
        sa.Column('as_of_date', sa.Date(), nullable=False),
        sa.Column('p25', sa.Float(), nullable=False),
        sa.Column('p50', sa.Float(), nullable=False),
        sa.Column('p75', sa.Float(), nullable=False),
        sa.Column('p90', sa.Float(), nullable=False),
        sa.Column('sample_size', sa.Integer(), server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('benchmark_type', 'category', 'as_of_date', name='uq_benchmark_type_category_date'),
    )
    op.create_index('ix_benchmarks_category', 'benchmarks', ['category'])

    # -- Recommendations + tasks --
    op.create_table(
        'recommendations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('project_id', sa.Text(), sa.ForeignKey('projects.id'), nullable=True),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=True),
        sa.Column('type', sa.Text(), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), server_default=''),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('current_state', sa.JSON()),
        sa.Column('target_state', sa.JSON()),
        sa.Column('timeline', sa.Text(), server_default=''),
        sa.Column('expected_impact', sa.Text(), server_default=''),
        sa.Column('effort_level', sa.Text(), server_default='Medium'),
        sa.Column('actions', sa.JSON()),
        sa.Column('completion_indicators', sa.JSON()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_recommendations_wallet', 'recommendations', ['wallet_id'])
    op.create_index('ix_recommendations_project', 'recommendations', ['project_id'])

    op.create_table(
        'recommendation_tasks',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('recommendation_id', sa.Integer(), sa.ForeignKey('recommendations.id'),
                  nullable=False, unique=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('baseline_metrics', sa.JSON()),
        sa.Column('completion_percentage', sa.Float(), server_default='0.0'),
        sa.Column('effectiveness_score', sa.Float(), nullable=True),
        sa.Column('effectiveness_level', sa.Text(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # -- Monetization --
    op.create_table(
        'data_access_payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.Text(), nullable=False, unique=True),
        sa.Column('requester_id', sa.Text(), nullable=False),
        sa.Column('requester_email', sa.Text(), nullable=True),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('amount_zec', ZEC, nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('payment_address', sa.Text(), nullable=True),
        sa.Column('txid', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_payments_requester_wallet', 'data_access_payments', ['requester_id', 'wallet_id'])

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('to_address', sa.Text(), nullable=False),
        sa.Column('amount_zec', ZEC, nullable=False),
        sa.Column('fee_zec', ZEC, nullable=False),
        sa.Column('net_zec', ZEC, nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='processing'),
        sa.Column('gateway_withdrawal_id', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_table(
        'earnings',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('owner_id', sa.Text(), nullable=False),
        sa.Column('wallet_id', sa.Text(), sa.ForeignKey('wallets.id'), nullable=False),
        sa.Column('payment_id', sa.Integer(), sa.ForeignKey('data_access_payments.id'), nullable=False),
        sa.Column('amount_zec', ZEC, nullable=False),
        sa.Column('platform_fee_zec', ZEC, nullable=False),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending'),
        sa.Column('withdrawal_id', sa.Integer(), sa.ForeignKey('withdrawals.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_earnings_owner_status', 'earnings', ['owner_id', 'status'])


def downgrade() -> None:
    op.drop_index('ix_earnings_owner_status', table_name='earnings')
    op.drop_table('earnings')
    op.drop_table('withdrawals')
    op.drop_index('ix_payments_requester_wallet', table_name='data_access_payments')
    op.drop_table('data_access_payments')
    op.drop_table('recommendation_tasks')
    op.drop_index('ix_recommendations_project', table_name='recommendations')
    op.drop_index('ix_recommendations_wallet', table_name='recommendations')
    op.drop_table('recommendations')
    op.drop_index('ix_benchmarks_category', table_name='benchmarks')
    op.drop_table('benchmarks')
    op.drop_table('wallet_adoption_stages')
    op.drop_table('wallet_cohorts')
    op.drop_index('ix_scores_wallet_calculated', table_name='wallet_productivity_scores')
    op.drop_table('wallet_productivity_scores')
    op.drop_table('wallet_activity_metrics')
    op.drop_index('ix_privacy_audit_wallet', table_name='privacy_audit_log')
    op.drop_table('privacy_audit_log')
    op.drop_table('alert_configurations')
    op.drop_index('ix_wallets_privacy_mode', table_name='wallets')
    op.drop_index('ix_wallets_project_id', table_name='wallets')
    op.drop_table('wallets')
    op.drop_table('projects')
