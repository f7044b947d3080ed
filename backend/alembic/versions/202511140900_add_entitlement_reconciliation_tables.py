"""add entitlement reconciliation tables

Revision ID: 202511140900
Revises: None (initial migration)
Create Date: 2025-11-14 09:00:00.000000

This migration creates the tables used by entitlement reconciliation:
- Payments events (append-only normalized provider ledger)
- Entitlements (materialized current tier per user)
- Reconciliation corrections (append-only audit, one row per correction id)
- Reconciliation runs (one row per run with its decided actions)
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# Revision identifiers, used by Alembic
revision = '202511140900'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # =========================================================================
    # Payments events - normalized ledger written by the webhook path
    # =========================================================================
    op.create_table(
        'payments_events',
        sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.Text(), nullable=False),  # 'paypal', 'paymongo', 'system_recon'
        sa.Column('provider_event_id', sa.Text(), nullable=False),
        sa.Column('type', sa.Text(), nullable=True),  # normalized type or legacy provider type
        sa.Column('status', sa.Text(), nullable=True),  # legacy free-text status
        sa.Column('plan_key', sa.Text(), nullable=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('currency', sa.Text(), nullable=True),
        sa.Column('customer_id', sa.Text(), nullable=True),
        sa.Column('subscription_id', sa.Text(), nullable=True),
        sa.Column('invoice_id', sa.Text(), nullable=True),
        sa.Column('request_id', sa.Text(), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column(
            'ingested_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('payments_events_created_idx', 'payments_events', ['created_at'])
    op.create_index(
        'payments_events_user_time_idx', 'payments_events', ['user_id', 'created_at']
    )
    # Provider event ids are the ingestion idempotency key
    op.create_index(
        'payments_events_provider_event_uniq',
        'payments_events',
        ['provider', 'provider_event_id'],
        unique=True,
    )

    # =========================================================================
    # Entitlements - one row per user
    # =========================================================================
    op.create_table(
        'entitlements',
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('tier', sa.Text(), nullable=False, server_default='free'),
        sa.Column('plan_key', sa.Text(), nullable=True),
        sa.Column('status', sa.Text(), nullable=False, server_default='none'),
        sa.Column('source', sa.Text(), nullable=False, server_default='webhook'),
        sa.Column(
            'created_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.Column(
            'updated_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('user_id'),
        sa.CheckConstraint("tier in ('free', 'pro', 'vip')", name='entitlements_tier_chk'),
        sa.CheckConstraint(
            "status in ('active', 'canceled', 'none')", name='entitlements_status_chk'
        ),
    )
    op.create_index('entitlements_paid_active_idx', 'entitlements', ['tier', 'status'])

    # =========================================================================
    # Reconciliation corrections - append-only, keyed by deterministic id
    # =========================================================================
    op.create_table(
        'reconciliation_corrections',
        sa.Column('correction_id', sa.Text(), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('before', postgresql.JSONB(), nullable=True),
        sa.Column('after', postgresql.JSONB(), nullable=True),
        sa.Column('related_event_id', sa.Text(), nullable=True),
        sa.Column('created_at', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('correction_id'),
    )
    op.create_index(
        'ix_reconciliation_corrections_user_id',
        'reconciliation_corrections',
        ['user_id'],
    )

    # =========================================================================
    # Reconciliation runs - one row per run
    # =========================================================================
    op.create_table(
        'reconciliation_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('since', postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('dry_run', sa.Boolean(), nullable=False),
        sa.Column('users_seen', sa.Integer(), nullable=False),
        sa.Column('applied', sa.Integer(), nullable=False),
        sa.Column('failed', sa.Integer(), nullable=False),
        sa.Column(
            'actions_json',
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("'[]'::jsonb"),
        ),
        sa.Column(
            'created_at',
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint('id'),
    )


def downgrade() -> None:
    op.drop_table('reconciliation_runs')

    op.drop_index('ix_reconciliation_corrections_user_id', table_name='reconciliation_corrections')
    op.drop_table('reconciliation_corrections')

    op.drop_index('entitlements_paid_active_idx', table_name='entitlements')
    op.drop_table('entitlements')

    op.drop_index('payments_events_provider_event_uniq', table_name='payments_events')
    op.drop_index('payments_events_user_time_idx', table_name='payments_events')
    op.drop_index('payments_events_created_idx', table_name='payments_events')
    op.drop_table('payments_events')
