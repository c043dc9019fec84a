"""
Alembic migration: Initial settlement schema.

Creates the orders, order_items, notifications and outbox_tasks tables.
Status columns are stored as bounded strings rather than native enums so new
states can be added without an ALTER TYPE.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            'created_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
        sa.Column(
            'updated_at',
            sa.DateTime(timezone=True),
            server_default=sa.text('CURRENT_TIMESTAMP'),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """
    Create the settlement tables.

    ``orders.gateway_payment_id`` is unique so a verified payment can settle
    at most one order; ``orders.version`` backs optimistic locking.
    """
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('customer_email', sa.String(255), nullable=True),
        sa.Column('shipping_address', JSON_TYPE, nullable=False),
        sa.Column('payment_method', sa.String(32), nullable=False),
        sa.Column('payment_result', JSON_TYPE, nullable=True),
        sa.Column('gateway_order_id', sa.String(64), nullable=True),
        sa.Column('gateway_payment_id', sa.String(64), nullable=True),
        sa.Column('items_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('shipping_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_paid', sa.Boolean(), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_delivered', sa.Boolean(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_refunded', sa.Boolean(), nullable=False),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('is_cancelled', sa.Boolean(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('gateway_payment_id', name='uq_orders_gateway_payment_id'),
        sa.CheckConstraint('items_price >= 0', name='ck_orders_items_price_non_negative'),
        sa.CheckConstraint('tax_price >= 0', name='ck_orders_tax_price_non_negative'),
        sa.CheckConstraint('shipping_price >= 0', name='ck_orders_shipping_price_non_negative'),
        sa.CheckConstraint('total_price >= 0', name='ck_orders_total_price_non_negative'),
        comment='Customer orders spanning one or more sellers',
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_gateway_order_id', 'orders', ['gateway_order_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('seller_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('image', sa.String(1024), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('item_status', sa.String(32), nullable=False),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_order_items_order_id',
            ondelete='RESTRICT',
        ),
        sa.CheckConstraint('quantity >= 1', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('price >= 0', name='ck_order_items_price_non_negative'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])
    op.create_index('ix_order_items_seller_id', 'order_items', ['seller_id'])
    op.create_index(
        'ix_order_items_seller_status', 'order_items', ['seller_id', 'item_status']
    )

    op.create_table(
        'notifications',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('recipient_id', sa.String(64), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('read', sa.Boolean(), nullable=False),
        sa.Column('related_id', sa.String(64), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_notifications'),
        sa.CheckConstraint('length(title) >= 1', name='ck_notifications_title_not_empty'),
        comment='Seller inbox notifications',
    )
    op.create_index('ix_notifications_recipient_id', 'notifications', ['recipient_id'])
    op.create_index('ix_notifications_related_id', 'notifications', ['related_id'])
    op.create_index(
        'ix_notifications_recipient_read', 'notifications', ['recipient_id', 'read']
    )
    op.create_index(
        'ix_notifications_recipient_created', 'notifications', ['recipient_id', 'created_at']
    )

    op.create_table(
        'outbox_tasks',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('payload', JSON_TYPE, nullable=False),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('locked_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_outbox_tasks'),
        sa.ForeignKeyConstraint(
            ['order_id'],
            ['orders.id'],
            name='fk_outbox_tasks_order_id',
            ondelete='RESTRICT',
        ),
        sa.CheckConstraint('attempts >= 0', name='ck_outbox_tasks_attempts_non_negative'),
        sa.CheckConstraint('max_attempts >= 1', name='ck_outbox_tasks_max_attempts_positive'),
        comment='Durable queue of post-commit order side effects',
    )
    op.create_index('ix_outbox_tasks_order_id', 'outbox_tasks', ['order_id'])
    op.create_index(
        'ix_outbox_tasks_status_next_attempt', 'outbox_tasks', ['status', 'next_attempt_at']
    )


def downgrade() -> None:
    """Drop the settlement tables in reverse dependency order."""
    op.drop_table('outbox_tasks')
    op.drop_table('notifications')
    op.drop_table('order_items')
    op.drop_table('orders')
