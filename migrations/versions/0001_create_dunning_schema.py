"""create_dunning_schema

Revision ID: 0001_dunning_schema
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_dunning_schema'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('customer_id', sa.Uuid(), nullable=False),
        sa.Column('billing_interval', sa.String(length=20), nullable=False),
        sa.Column('interval_count', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('payment_method_ref', sa.String(length=255), nullable=True),
        sa.Column('customer_email', sa.String(length=320), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('next_billing_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('grace_period_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.String(length=32), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_subscriptions')),
    )
    op.create_index(op.f('ix_subscriptions_customer_id'), 'subscriptions', ['customer_id'], unique=False)
    op.create_index(op.f('ix_subscriptions_status'), 'subscriptions', ['status'], unique=False)

    op.create_table(
        'subscription_invoices',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dunning_cycle_offset', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_reason', sa.Text(), nullable=True),
        sa.Column('late_fee', sa.Numeric(18, 2), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name=op.f('fk_subscription_invoices_subscription_id_subscriptions'),
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_subscription_invoices')),
    )
    op.create_index(op.f('ix_subscription_invoices_subscription_id'), 'subscription_invoices', ['subscription_id'], unique=False)
    op.create_index('ix_subscription_invoices_status_next_retry', 'subscription_invoices', ['status', 'next_retry_at'], unique=False)

    op.create_table(
        'payment_retry_attempts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('attempted_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('error_code', sa.String(length=64), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_method_ref', sa.String(length=255), nullable=True),
        sa.Column('gateway_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['invoice_id'], ['subscription_invoices.id'],
            name=op.f('fk_payment_retry_attempts_invoice_id_subscription_invoices'),
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name=op.f('fk_payment_retry_attempts_subscription_id_subscriptions'),
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_payment_retry_attempts')),
        sa.UniqueConstraint('invoice_id', 'attempt_number', name='uix_payment_retry_attempt_invoice_attempt'),
    )
    op.create_index(op.f('ix_payment_retry_attempts_subscription_id'), 'payment_retry_attempts', ['subscription_id'], unique=False)
    op.create_index(op.f('ix_payment_retry_attempts_invoice_id'), 'payment_retry_attempts', ['invoice_id'], unique=False)
    op.create_index(op.f('ix_payment_retry_attempts_gateway_transaction_id'), 'payment_retry_attempts', ['gateway_transaction_id'], unique=False)

    op.create_table(
        'dunning_notifications',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('subscription_id', sa.Uuid(), nullable=False),
        sa.Column('invoice_id', sa.Uuid(), nullable=False),
        sa.Column('notification_type', sa.String(length=32), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['invoice_id'], ['subscription_invoices.id'],
            name=op.f('fk_dunning_notifications_invoice_id_subscription_invoices'),
            ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name=op.f('fk_dunning_notifications_subscription_id_subscriptions'),
            ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_dunning_notifications')),
        sa.UniqueConstraint(
            'subscription_id', 'invoice_id', 'notification_type',
            name='uix_dunning_notification_sub_invoice_type',
        ),
    )
    op.create_index(op.f('ix_dunning_notifications_subscription_id'), 'dunning_notifications', ['subscription_id'], unique=False)

    op.create_table(
        'background_jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('job_type', sa.String(length=50), nullable=False),
        sa.Column('payload', _JSON, nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_by', sa.String(length=255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('result', _JSON, nullable=True),
        sa.Column('deduplication_key', sa.String(length=255), nullable=True),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_background_jobs')),
        sa.UniqueConstraint('deduplication_key', name=op.f('uq_background_jobs_deduplication_key')),
    )
    op.create_index(op.f('ix_background_jobs_job_type'), 'background_jobs', ['job_type'], unique=False)
    op.create_index('ix_background_jobs_status_scheduled_for', 'background_jobs', ['status', 'scheduled_for'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_background_jobs_status_scheduled_for', table_name='background_jobs')
    op.drop_index(op.f('ix_background_jobs_job_type'), table_name='background_jobs')
    op.drop_table('background_jobs')
    op.drop_index(op.f('ix_dunning_notifications_subscription_id'), table_name='dunning_notifications')
    op.drop_table('dunning_notifications')
    op.drop_index(op.f('ix_payment_retry_attempts_gateway_transaction_id'), table_name='payment_retry_attempts')
    op.drop_index(op.f('ix_payment_retry_attempts_invoice_id'), table_name='payment_retry_attempts')
    op.drop_index(op.f('ix_payment_retry_attempts_subscription_id'), table_name='payment_retry_attempts')
    op.drop_table('payment_retry_attempts')
    op.drop_index('ix_subscription_invoices_status_next_retry', table_name='subscription_invoices')
    op.drop_index(op.f('ix_subscription_invoices_subscription_id'), table_name='subscription_invoices')
    op.drop_table('subscription_invoices')
    op.drop_index(op.f('ix_subscriptions_status'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_customer_id'), table_name='subscriptions')
    op.drop_table('subscriptions')
