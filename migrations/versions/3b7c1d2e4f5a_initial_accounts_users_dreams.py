"""initial schema: accounts, users (profiles) and dreams

Revision ID: 3b7c1d2e4f5a
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3b7c1d2e4f5a'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Identity records (email + bcrypt hash)
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('password', sa.String(length=128), nullable=False),
        sa.Column('signup_date', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('email', name='uq_accounts_email'),
    )

    # Profiles, keyed by account id
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('plan', sa.String(length=20), nullable=False, server_default='free'),
        sa.Column('trial_end_date', sa.DateTime(), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_users_stripe_customer_id', 'users', ['stripe_customer_id'], unique=False)

    op.create_table(
        'dreams',
        sa.Column('user_id', sa.String(length=36), sa.ForeignKey('users.id'), primary_key=True),
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('chat_history', sa.JSON(), nullable=True),
    )
    op.create_index('ix_dreams_user_timestamp', 'dreams', ['user_id', 'timestamp'], unique=False)


def downgrade():
    op.drop_index('ix_dreams_user_timestamp', table_name='dreams')
    op.drop_table('dreams')
    op.drop_index('ix_users_stripe_customer_id', table_name='users')
    op.drop_table('users')
    op.drop_table('accounts')
