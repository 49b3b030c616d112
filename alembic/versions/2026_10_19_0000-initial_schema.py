"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id_column() -> sa.Column:
    return sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()'))


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()'))


def upgrade() -> None:
    """Create consensus audit schema."""

    # ========================================================================
    # Accounts: usage counters and credit ledgers
    # ========================================================================
    op.create_table(
        'user_usage',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('account_status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('is_banned', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('ban_reason', sa.Text(), nullable=True),
        sa.Column('banned_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('audit_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('audits_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_tier', sa.String(50), nullable=False, server_default='free'),
        sa.Column('is_premium', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('daily_cost_threshold', sa.Numeric(12, 4), nullable=True),
        sa.Column('per_audit_cost_threshold', sa.Numeric(12, 4), nullable=True),
        sa.Column('monthly_budget_limit', sa.Numeric(12, 4), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.UniqueConstraint('user_id', name='uq_user_usage_user_id'),
        sa.CheckConstraint('audit_count >= 0', name='ck_audit_count_non_negative'),
        sa.CheckConstraint('audits_this_month >= 0', name='ck_audits_this_month_non_negative'),
        sa.CheckConstraint("account_status IN ('active', 'inactive', 'disabled')", name='ck_account_status'),
    )

    op.create_table(
        'credit_ledgers',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('balance', sa.Numeric(14, 6), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('auto_recharge_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('auto_recharge_threshold', sa.Numeric(12, 2), nullable=False, server_default='5.00'),
        sa.Column('auto_recharge_amount', sa.Numeric(12, 2), nullable=False, server_default='20.00'),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.UniqueConstraint('user_id', name='uq_credit_ledgers_user_id'),
        sa.CheckConstraint('balance >= 0', name='ck_ledger_balance_non_negative'),
        sa.CheckConstraint('auto_recharge_amount > 0', name='ck_auto_recharge_amount_positive'),
    )

    op.create_table(
        'billing_transactions',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.Numeric(14, 6), nullable=False),
        sa.Column('transaction_type', sa.String(20), nullable=False),
        sa.Column('balance_after', sa.Numeric(14, 6), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp('created_at'),

        sa.CheckConstraint('balance_after >= 0', name='ck_transaction_balance_after_non_negative'),
        sa.CheckConstraint('amount <> 0', name='ck_transaction_amount_non_zero'),
        sa.CheckConstraint(
            "transaction_type IN ('usage', 'purchase', 'auto_recharge', 'refund', 'adjustment')",
            name='ck_transaction_type',
        ),
    )
    op.create_index('ix_billing_transactions_user_id', 'billing_transactions', ['user_id'])
    op.create_index('idx_billing_transactions_user_created', 'billing_transactions', ['user_id', 'created_at'])

    # ========================================================================
    # Pricing
    # ========================================================================
    op.create_table(
        'model_prices',
        sa.Column('model_id', sa.String(255), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, server_default='openrouter'),
        sa.Column('input_price', sa.Numeric(18, 12), nullable=False),
        sa.Column('output_price', sa.Numeric(18, 12), nullable=False),
        _timestamp('last_updated'),

        sa.CheckConstraint('input_price >= 0', name='ck_input_price_non_negative'),
        sa.CheckConstraint('output_price >= 0', name='ck_output_price_non_negative'),
    )

    # ========================================================================
    # Telemetry
    # ========================================================================
    op.create_table(
        'analytics_events',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('conversation_id', UUID(as_uuid=True), nullable=True),
        sa.Column('model_id', sa.String(255), nullable=False),
        sa.Column('model_name', sa.String(255), nullable=False),
        sa.Column('model_role', sa.String(20), nullable=False),
        sa.Column('slot_position', sa.Integer(), nullable=False),
        sa.Column('latency_ms', sa.Integer(), nullable=False),
        sa.Column('input_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('output_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('cost', sa.Numeric(14, 6), nullable=False, server_default='0'),
        _timestamp('created_at'),
    )
    op.create_index('idx_analytics_events_user_created', 'analytics_events', ['user_id', 'created_at'])
    op.create_index('idx_analytics_events_model_id', 'analytics_events', ['model_id'])

    op.create_table(
        'activity_logs',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('activity_type', sa.String(50), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp('created_at'),
    )
    op.create_index('idx_activity_logs_user_created', 'activity_logs', ['user_id', 'created_at'])
    op.create_index('idx_activity_logs_type', 'activity_logs', ['activity_type'])

    op.create_table(
        'cost_alerts',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('alert_type', sa.String(20), nullable=False),
        sa.Column('estimated_cost', sa.Numeric(14, 6), nullable=False),
        sa.Column('threshold', sa.Numeric(12, 4), nullable=False),
        sa.Column('alert_date', sa.Date(), nullable=False),
        sa.Column('notified_via_email', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('email_sent_at', sa.DateTime(timezone=True), nullable=True),
        _timestamp('created_at'),

        sa.CheckConstraint(
            "alert_type IN ('per_audit', 'daily_threshold', 'budget_forecast')",
            name='ck_cost_alert_type',
        ),
    )
    # At most one daily / budget alert per user and period
    op.create_index(
        'uq_cost_alerts_periodic',
        'cost_alerts',
        ['user_id', 'alert_type', 'alert_date'],
        unique=True,
        postgresql_where=sa.text("alert_type <> 'per_audit'"),
    )
    op.create_index('idx_cost_alerts_user_created', 'cost_alerts', ['user_id', 'created_at'])

    op.create_table(
        'security_logs',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('flag_category', sa.String(255), nullable=False),
        sa.Column('metadata', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp('flagged_at'),
    )
    op.create_index('idx_security_logs_user_flagged', 'security_logs', ['user_id', 'flagged_at'])

    op.create_table(
        'training_dataset',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=True),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('draft_a_model', sa.String(255), nullable=True),
        sa.Column('draft_a_response', sa.Text(), nullable=True),
        sa.Column('draft_b_model', sa.String(255), nullable=True),
        sa.Column('draft_b_response', sa.Text(), nullable=True),
        sa.Column('verdict_model', sa.String(255), nullable=True),
        sa.Column('verdict_response', sa.Text(), nullable=True),
        sa.Column('model_config', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('council_source', sa.String(100), nullable=True),
        sa.Column('human_rating', sa.Integer(), nullable=True),
        _timestamp('created_at'),
    )

    # ========================================================================
    # Context sources
    # ========================================================================
    op.create_table(
        'brand_documents',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('file_name', sa.String(255), nullable=False),
        sa.Column('file_url', sa.String(2048), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('idx_brand_documents_user_active', 'brand_documents', ['user_id', 'is_active'])

    op.create_table(
        'conversations',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('context', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
    )
    op.create_index('ix_conversations_user_id', 'conversations', ['user_id'])

    # ========================================================================
    # Background work
    # ========================================================================
    op.create_table(
        'email_logs',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('email_type', sa.String(50), nullable=False),
        sa.Column('recipient_email', sa.String(255), nullable=False),
        sa.Column('subject', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('message_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _timestamp('sent_at'),
    )
    op.create_index('idx_email_logs_user_sent', 'email_logs', ['user_id', 'sent_at'])

    op.create_table(
        'background_tasks',
        _id_column(),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('payload', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        _timestamp('next_attempt_at'),
        sa.Column('last_error', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),

        sa.CheckConstraint('attempts >= 0', name='ck_background_task_attempts_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'dead')",
            name='ck_background_task_status',
        ),
    )
    op.create_index('idx_background_tasks_due', 'background_tasks', ['status', 'next_attempt_at'])

    op.create_table(
        'auto_recharge_attempts',
        _id_column(),
        sa.Column('user_id', UUID(as_uuid=True), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('checkout_session_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        _timestamp('created_at'),
    )
    op.create_index(
        'idx_auto_recharge_attempts_user_status', 'auto_recharge_attempts', ['user_id', 'status']
    )


def downgrade() -> None:
    """Drop consensus audit schema."""
    op.drop_table('auto_recharge_attempts')
    op.drop_table('background_tasks')
    op.drop_table('email_logs')
    op.drop_table('conversations')
    op.drop_table('brand_documents')
    op.drop_table('training_dataset')
    op.drop_table('security_logs')
    op.drop_table('cost_alerts')
    op.drop_table('activity_logs')
    op.drop_table('analytics_events')
    op.drop_table('model_prices')
    op.drop_table('billing_transactions')
    op.drop_table('credit_ledgers')
    op.drop_table('user_usage')
