"""create billing sync tables

Revision ID: a1c2e3f4b501
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c2e3f4b501'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # subscription_plans テーブル (プランカタログ)
    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('plan_id', sa.String(50), nullable=False, comment='内部プランID (essential/professional/enterprise)'),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stripe_product_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True, comment='月額Price ID'),
        sa.Column('stripe_annual_price_id', sa.String(255), nullable=True, comment='年額Price ID'),
        sa.Column('resource_limits', sa.JSON(), nullable=True),
        sa.Column('features', sa.JSON(), nullable=True),
        sa.Column('display_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('plan_id'),
        sa.UniqueConstraint('stripe_price_id'),
        sa.UniqueConstraint('stripe_annual_price_id'),
    )

    # tenant_subscriptions テーブル (組織ごとの購読)
    op.create_table(
        'tenant_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organization_id', sa.String(255), nullable=False),
        sa.Column('plan_id', sa.String(50), nullable=True),
        sa.Column(
            'status',
            sa.Enum('none', 'trialing', 'active', 'past_due', 'canceled', name='tenant_subscription_status'),
            nullable=False,
        ),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('stripe_price_id', sa.String(255), nullable=True),
        sa.Column('stripe_product_id', sa.String(255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancel_at', sa.DateTime(), nullable=True),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('last_event_at', sa.DateTime(), nullable=True, comment='最後に適用した購読イベントの発生日時'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.plan_id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_subscription_id'),
    )
    op.create_index('ix_tenant_subscriptions_organization_id', 'tenant_subscriptions', ['organization_id'], unique=True)
    op.create_index('ix_tenant_subscriptions_stripe_customer_id', 'tenant_subscriptions', ['stripe_customer_id'])

    # subscription_history テーブル (追記のみ)
    op.create_table(
        'subscription_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('from_plan_id', sa.String(50), nullable=True),
        sa.Column('to_plan_id', sa.String(50), nullable=True),
        sa.Column('from_status', sa.String(20), nullable=True),
        sa.Column('to_status', sa.String(20), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('changed_by', sa.String(255), nullable=False),
        sa.Column('changed_by_role', sa.String(50), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['tenant_subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscription_history_subscription_id', 'subscription_history', ['subscription_id'])
    op.create_index('ix_subscription_history_created_at', 'subscription_history', ['created_at'])

    # processed_stripe_events テーブル (webhook冪等性)
    op.create_table(
        'processed_stripe_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('organization_id', sa.String(255), nullable=True),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processed_stripe_events_event_id', 'processed_stripe_events', ['event_id'], unique=True)
    op.create_index('ix_processed_stripe_events_organization_id', 'processed_stripe_events', ['organization_id'])


def downgrade() -> None:
    op.drop_index('ix_processed_stripe_events_organization_id', 'processed_stripe_events')
    op.drop_index('ix_processed_stripe_events_event_id', 'processed_stripe_events')
    op.drop_table('processed_stripe_events')
    op.drop_index('ix_subscription_history_created_at', 'subscription_history')
    op.drop_index('ix_subscription_history_subscription_id', 'subscription_history')
    op.drop_table('subscription_history')
    op.drop_index('ix_tenant_subscriptions_stripe_customer_id', 'tenant_subscriptions')
    op.drop_index('ix_tenant_subscriptions_organization_id', 'tenant_subscriptions')
    op.drop_table('tenant_subscriptions')
    op.drop_table('subscription_plans')
