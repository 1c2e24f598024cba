"""Initial schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19

Tables:
- users
- queues
- tokens
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

from queueflow.db.types import GUID


# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


ACTIVE_POSITION_PREDICATE = sa.text("status IN ('waiting', 'in_service')")


def upgrade() -> None:
    # ===========================================
    # TABLE: users
    # ===========================================
    op.create_table('users',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('username', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('full_name', sa.String(length=100), nullable=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    # ===========================================
    # TABLE: queues
    # ===========================================
    op.create_table('queues',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('manager_id', GUID(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.String(length=500), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('max_capacity', sa.Integer(), nullable=True),
        sa.Column('current_occupancy', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_served', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_cancelled', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['manager_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('current_occupancy >= 0', name='ck_queues_occupancy_non_negative'),
        sa.CheckConstraint('total_served >= 0', name='ck_queues_served_non_negative'),
        sa.CheckConstraint('total_cancelled >= 0', name='ck_queues_cancelled_non_negative'),
        sa.CheckConstraint(
            'max_capacity IS NULL OR (max_capacity >= 1 AND max_capacity <= 1000)',
            name='ck_queues_capacity_range'
        ),
    )
    op.create_index('ix_queues_manager_id', 'queues', ['manager_id'])
    op.create_index('ix_queues_manager_active', 'queues', ['manager_id', 'is_active'])
    op.create_index('ix_queues_created_at', 'queues', ['created_at'])

    # ===========================================
    # TABLE: tokens
    # ===========================================
    op.create_table('tokens',
        sa.Column('id', GUID(), nullable=False),
        sa.Column('queue_id', GUID(), nullable=False),
        sa.Column('token_number', sa.String(length=16), nullable=False),
        sa.Column('customer_name', sa.String(length=100), nullable=False),
        sa.Column('contact_email', sa.String(length=254), nullable=True),
        sa.Column('contact_phone', sa.String(length=20), nullable=True),
        sa.Column('priority', sa.Enum('normal', 'high', 'urgent', name='token_priority_enum'), nullable=False),
        sa.Column('status', sa.Enum('waiting', 'in_service', 'served', 'cancelled', 'no_show', name='token_status_enum'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('assigned_to', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('called_at', sa.DateTime(), nullable=True),
        sa.Column('served_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('wait_time', sa.Integer(), nullable=True),
        sa.Column('service_time', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['queue_id'], ['queues.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tokens_queue_status', 'tokens', ['queue_id', 'status'])
    op.create_index('ix_tokens_queue_status_position', 'tokens', ['queue_id', 'status', 'position'])
    op.create_index('ix_tokens_created_at', 'tokens', ['created_at'])
    # Two active tokens of one queue can never share a slot
    op.create_index(
        'uq_tokens_queue_active_position', 'tokens', ['queue_id', 'position'],
        unique=True,
        postgresql_where=ACTIVE_POSITION_PREDICATE,
        sqlite_where=ACTIVE_POSITION_PREDICATE,
    )


def downgrade() -> None:
    # Drop tables in reverse order (respecting foreign keys)
    op.drop_table('tokens')
    op.drop_table('queues')
    op.drop_table('users')

    if op.get_bind().dialect.name == 'postgresql':
        op.execute('DROP TYPE IF EXISTS token_status_enum')
        op.execute('DROP TYPE IF EXISTS token_priority_enum')
