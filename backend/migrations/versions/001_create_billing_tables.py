"""Create billing tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Tables may already exist when Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.String(length=36), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=True),
            sa.Column('full_name', sa.String(length=255), nullable=True),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('is_admin', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('is_gift', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'])
        op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'])

    if 'products' not in existing_tables:
        op.create_table(
            'products',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_product_id', sa.String(length=255), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
            sa.Column('metadata', sa.JSON(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_products_id', 'products', ['id'])
        op.create_index('ix_products_stripe_product_id', 'products', ['stripe_product_id'], unique=True)

    if 'prices' not in existing_tables:
        op.create_table(
            'prices',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=False),
            sa.Column('stripe_product_id', sa.String(length=255), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=True),
            sa.Column('unit_amount', sa.Integer(), nullable=True),
            sa.Column('recurring_interval', sa.String(length=10), nullable=True),
            sa.Column('type', sa.String(length=20), nullable=True),
            sa.Column('active', sa.Boolean(), nullable=False, server_default='true'),
            sa.Column('metadata', sa.JSON(), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(['stripe_product_id'], ['products.stripe_product_id']),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_prices_id', 'prices', ['id'])
        op.create_index('ix_prices_stripe_price_id', 'prices', ['stripe_price_id'], unique=True)
        op.create_index('ix_prices_stripe_product_id', 'prices', ['stripe_product_id'])

    if 'features' not in existing_tables:
        op.create_table(
            'features',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('feature_key', sa.String(length=100), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_features_id', 'features', ['id'])
        op.create_index('ix_features_feature_key', 'features', ['feature_key'], unique=True)

    if 'product_features' not in existing_tables:
        op.create_table(
            'product_features',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_product_id', sa.String(length=255), nullable=False),
            sa.Column('feature_key', sa.String(length=100), nullable=False),
            sa.Column('enabled', sa.Boolean(), nullable=False, server_default='true'),
            sa.Column('limit', sa.Integer(), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(['stripe_product_id'], ['products.stripe_product_id']),
            sa.ForeignKeyConstraint(['feature_key'], ['features.feature_key']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('stripe_product_id', 'feature_key', name='uq_product_features_product_feature')
        )
        op.create_index('ix_product_features_id', 'product_features', ['id'])
        op.create_index('ix_product_features_stripe_product_id', 'product_features', ['stripe_product_id'])
        op.create_index('ix_product_features_feature_key', 'product_features', ['feature_key'])

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=36), nullable=False),
            sa.Column('stripe_subscription_id', sa.String(length=255), nullable=False),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=50), nullable=False),
            sa.Column('quantity', sa.Integer(), nullable=True),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('cancel_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('stripe_created_at', sa.DateTime(timezone=True), nullable=True),
            *_timestamps(),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('user_id', 'stripe_subscription_id', name='uq_subscriptions_user_subscription')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_user_id', 'subscriptions', ['user_id'])
        op.create_index('ix_subscriptions_stripe_subscription_id', 'subscriptions', ['stripe_subscription_id'], unique=True)
        op.create_index('ix_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('outcome', sa.String(length=20), nullable=False, server_default='received'),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('delivery_count', sa.Integer(), nullable=False, server_default='1'),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
        op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'], unique=True)
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])


def downgrade() -> None:
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    # Children before parents
    for table in ('webhook_events', 'subscriptions', 'product_features', 'features', 'prices', 'products', 'users'):
        if table in existing_tables:
            op.drop_table(table)
