"""initial metering schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


json_payload = sa.JSON().with_variant(JSONB(), 'postgresql')
ledger_id = sa.BigInteger().with_variant(sa.Integer(), 'sqlite')


def upgrade() -> None:
    """Create wallets, ledger, payment and usage tables."""

    # ========================================================================
    # Create wallets table
    # ========================================================================
    op.create_table(
        'wallets',
        sa.Column('workspace_id', sa.String(64), primary_key=True),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('lifetime_debits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
        sa.CheckConstraint('lifetime_credits >= 0', name='ck_wallet_lifetime_credits_non_negative'),
        sa.CheckConstraint('lifetime_debits >= 0', name='ck_wallet_lifetime_debits_non_negative'),
    )

    # ========================================================================
    # Create ledger_entries table (append-only)
    # ========================================================================
    op.create_table(
        'ledger_entries',
        sa.Column('id', ledger_id, primary_key=True, autoincrement=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('delta', sa.BigInteger(), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=False),
        sa.Column('entry_type', sa.String(20), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('feature_key', sa.String(100), nullable=True),
        sa.Column('ref_type', sa.String(100), nullable=True),
        sa.Column('ref_id', sa.String(255), nullable=True),
        sa.Column('note', sa.String(500), nullable=True),
        sa.Column('meta', json_payload, nullable=False, server_default='{}'),
        sa.Column('created_by', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('delta <> 0', name='ck_ledger_delta_non_zero'),
        sa.CheckConstraint('balance_after >= 0', name='ck_ledger_balance_after_non_negative'),
    )

    # Indexes for ledger_entries
    op.create_index('idx_ledger_entries_workspace_id', 'ledger_entries', ['workspace_id', 'id'])
    op.create_index('idx_ledger_entries_created_at', 'ledger_entries', ['created_at'])

    # ========================================================================
    # Create payment_intents table
    # ========================================================================
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('workspace_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_ref', sa.String(255), nullable=True),
        sa.Column('meta', json_payload, nullable=False),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_payment_intent_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'paid', 'failed', 'expired')", name='ck_payment_intent_status'
        ),
        sa.CheckConstraint("kind IN ('topup', 'subscription')", name='ck_payment_intent_kind'),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_payment_intent_provider_ref'),
    )

    # Indexes for payment_intents
    op.create_index('idx_payment_intents_workspace_id', 'payment_intents', ['workspace_id'])
    op.create_index(
        'idx_payment_intents_status_created_at', 'payment_intents', ['status', 'created_at']
    )

    # ========================================================================
    # Create payment_events table (settlement de-duplication)
    # ========================================================================
    op.create_table(
        'payment_events',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        sa.Column('payment_intent_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=True),
        sa.Column('payload', json_payload, nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_payment_event_provider_event'),
    )

    op.create_index('idx_payment_events_payment_intent_id', 'payment_events', ['payment_intent_id'])

    # ========================================================================
    # Create usage_counters table
    # ========================================================================
    op.create_table(
        'usage_counters',
        sa.Column('workspace_id', sa.String(64), primary_key=True),
        sa.Column('year_month', sa.String(6), primary_key=True),
        sa.Column('event_type', sa.String(100), primary_key=True),
        sa.Column('total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint('total >= 0', name='ck_usage_counter_total_non_negative'),
    )

    # ========================================================================
    # Create token_settings table
    # ========================================================================
    op.create_table(
        'token_settings',
        sa.Column('workspace_id', sa.String(64), primary_key=True),
        sa.Column('monthly_cap', sa.BigInteger(), nullable=True),
        sa.Column('alert_threshold', sa.Integer(), nullable=False, server_default='80'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint(
            'alert_threshold BETWEEN 1 AND 100', name='ck_token_settings_alert_threshold'
        ),
    )


def downgrade() -> None:
    """Drop all metering tables."""
    op.drop_table('token_settings')
    op.drop_table('usage_counters')
    op.drop_index('idx_payment_events_payment_intent_id', table_name='payment_events')
    op.drop_table('payment_events')
    op.drop_index('idx_payment_intents_status_created_at', table_name='payment_intents')
    op.drop_index('idx_payment_intents_workspace_id', table_name='payment_intents')
    op.drop_table('payment_intents')
    op.drop_index('idx_ledger_entries_created_at', table_name='ledger_entries')
    op.drop_index('idx_ledger_entries_workspace_id', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_table('wallets')
