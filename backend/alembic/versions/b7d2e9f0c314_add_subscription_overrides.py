"""add per-organization overrides and event timestamps

Revision ID: b7d2e9f0c314
Revises: a1c2e3f4b501
Create Date: 2026-10-19 15:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b7d2e9f0c314'
down_revision = 'a1c2e3f4b501'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # 組織ごとの上限・機能の上書き
    with op.batch_alter_table('tenant_subscriptions') as batch_op:
        batch_op.add_column(sa.Column('custom_limits', sa.JSON(), nullable=True))
        batch_op.add_column(sa.Column('custom_features', sa.JSON(), nullable=True))

    with op.batch_alter_table('processed_stripe_events') as batch_op:
        batch_op.add_column(
            sa.Column('event_created_at', sa.DateTime(), nullable=True, comment='Stripe側のイベント発生日時')
        )


def downgrade() -> None:
    with op.batch_alter_table('processed_stripe_events') as batch_op:
        batch_op.drop_column('event_created_at')

    with op.batch_alter_table('tenant_subscriptions') as batch_op:
        batch_op.drop_column('custom_features')
        batch_op.drop_column('custom_limits')
