"""
Alembic migration: Create orders and order_progress tables.

Creates the orders table with its lifecycle status and the order_progress
table holding one JSONB payload per fulfillment stage, with a unique
constraint on (order_id, stage).

Revision ID: 001
Revises:
Create Date: 2024-03-01 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUS_VALUES = (
    'pending',
    'warehouse',
    'shipped',
    'delivered',
    'applied',
    'completed',
    'cancelled',
    'amended',
)

PROGRESS_STAGE_VALUES = ('warehouse', 'shipping', 'applied', 'result')


def upgrade() -> None:
    """
    Create orders and order_progress with their enum types and indexes.
    """
    order_status = postgresql.ENUM(*ORDER_STATUS_VALUES, name='order_status')
    progress_stage = postgresql.ENUM(*PROGRESS_STAGE_VALUES, name='progress_stage')
    order_status.create(op.get_bind(), checkfirst=True)
    progress_stage.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'orders',
        sa.Column(
            'id',
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            nullable=False,
            comment='Unique identifier for the record',
        ),
        sa.Column(
            'order_number',
            sa.String(length=50),
            nullable=True,
            comment='Human-readable order number',
        ),
        sa.Column(
            'status',
            postgresql.ENUM(*ORDER_STATUS_VALUES, name='order_status', create_type=False),
            nullable=False,
            server_default='pending',
            comment='Current order status',
        ),
        sa.Column('notes', sa.Text(), nullable=True, comment='Additional order notes'),
        sa.Column(
            'completed_at',
            sa.DateTime(timezone=True),
            nullable=True,
            comment='Timestamp when the order was completed',
        ),
        sa.Column(
            'cancelled_at',
            sa.DateTime(timezone=True),
            nullable=True,
            comment='Timestamp when the order was cancelled',
        ),
        sa.Column(
            'cancellation_reason',
            sa.String(length=500),
            nullable=True,
            comment='Reason given for cancellation',
        ),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when record was last updated',
        ),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
        comment='Customer orders tracked through fulfillment stages',
    )
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_status_created', 'orders', ['status', 'created_at'])

    op.create_table(
        'order_progress',
        sa.Column(
            'id',
            postgresql.UUID(as_uuid=True),
            primary_key=True,
            nullable=False,
            comment='Unique identifier for the record',
        ),
        sa.Column(
            'order_id',
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey('orders.id', ondelete='CASCADE'),
            nullable=False,
            comment='Order this progress belongs to',
        ),
        sa.Column(
            'stage',
            postgresql.ENUM(*PROGRESS_STAGE_VALUES, name='progress_stage', create_type=False),
            nullable=False,
            comment='Fulfillment stage',
        ),
        sa.Column(
            'data',
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
            comment='Stage payload',
        ),
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('now()'),
            nullable=False,
            comment='Timestamp when the stage was recorded',
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            nullable=True,
            comment='Timestamp of the last payload update',
        ),
        sa.UniqueConstraint(
            'order_id',
            'stage',
            name='uq_order_progress_order_stage',
        ),
        comment='Per-stage fulfillment progress for orders',
    )
    op.create_index('ix_order_progress_order', 'order_progress', ['order_id'])


def downgrade() -> None:
    """
    Drop order_progress and orders with their enum types.
    """
    op.drop_index('ix_order_progress_order', table_name='order_progress')
    op.drop_table('order_progress')

    op.drop_index('ix_orders_status_created', table_name='orders')
    op.drop_index('ix_orders_status', table_name='orders')
    op.drop_table('orders')

    postgresql.ENUM(name='progress_stage').drop(op.get_bind(), checkfirst=True)
    postgresql.ENUM(name='order_status').drop(op.get_bind(), checkfirst=True)
