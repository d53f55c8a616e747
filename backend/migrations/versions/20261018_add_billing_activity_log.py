"""Add billing_activity_log for admin grant audit entries

Revision ID: add_billing_activity_log
Revises: create_billing_tables
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'add_billing_activity_log'
down_revision = 'create_billing_tables'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'billing_activity_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('actor_user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.BigInteger(), nullable=False),
    )
    op.create_index('ix_billing_activity_log_id', 'billing_activity_log', ['id'])
    op.create_index('ix_billing_activity_user_created', 'billing_activity_log', ['user_id', 'created_at'])


def downgrade():
    op.drop_index('ix_billing_activity_user_created', table_name='billing_activity_log')
    op.drop_index('ix_billing_activity_log_id', table_name='billing_activity_log')
    op.drop_table('billing_activity_log')
