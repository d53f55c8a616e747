"""Create users, subscriptions and checkout_sessions

Revision ID: create_billing_tables
Revises:
Create Date: 2026-10-01

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_billing_tables'
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_STATUSES = ('active', 'trialing', 'past_due', 'unpaid', 'incomplete', 'canceled')
CHECKOUT_STATUSES = ('pending', 'complete', 'expired')


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('name', sa.String(), nullable=False, server_default=''),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stripe_customer_id', sa.String(), nullable=True, unique=True),
        sa.Column('deleted_at', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.String(), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscription_status', native_enum=False), nullable=False),
        sa.Column('current_period_start', sa.BigInteger(), nullable=False),
        sa.Column('current_period_end', sa.BigInteger(), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('canceled_at', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('updated_at', sa.BigInteger(), nullable=False),
    )
    op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
    op.create_index('ix_subscriptions_user_created', 'subscriptions', ['user_id', 'created_at'])
    # Expiry sweep scans by status and period end
    op.create_index('ix_subscriptions_status_period_end', 'subscriptions', ['status', 'current_period_end'])

    op.create_table(
        'checkout_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.String(), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('subscription_id', sa.String(), nullable=True),
        sa.Column('status', sa.Enum(*CHECKOUT_STATUSES, name='checkout_session_status', native_enum=False), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
        sa.Column('completed_at', sa.BigInteger(), nullable=True),
    )
    op.create_index('ix_checkout_sessions_id', 'checkout_sessions', ['id'])
    op.create_index('ix_checkout_sessions_customer_id', 'checkout_sessions', ['customer_id'])
    op.create_index('ix_checkout_sessions_user_created', 'checkout_sessions', ['user_id', 'created_at'])


def downgrade():
    op.drop_index('ix_checkout_sessions_user_created', table_name='checkout_sessions')
    op.drop_index('ix_checkout_sessions_customer_id', table_name='checkout_sessions')
    op.drop_index('ix_checkout_sessions_id', table_name='checkout_sessions')
    op.drop_table('checkout_sessions')
    op.drop_index('ix_subscriptions_status_period_end', table_name='subscriptions')
    op.drop_index('ix_subscriptions_user_created', table_name='subscriptions')
    op.drop_index('ix_subscriptions_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')
