from alembic import op
import sqlalchemy as sa

revision = '0001_init'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_number', sa.String(50), nullable=False),
        sa.Column('customer_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('payment_status', sa.String(30), nullable=False),
        sa.Column('payment_method', sa.String(20), nullable=False),
        sa.Column('transaction_id', sa.String(100), nullable=True),
        sa.Column('total_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('shipping_cost', sa.Numeric(12,2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('payable_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('coupon_code', sa.String(64), nullable=True),
        sa.Column('coupon_redeemed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('shipping_address', sa.JSON, nullable=False),
        sa.Column('billing_address', sa.JSON, nullable=False),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('booking_claimed_at', sa.DateTime, nullable=True),
        sa.Column('weight', sa.String(20), nullable=True),
        sa.Column('rto_number', sa.String(100), nullable=True),
        sa.Column('expected_delivery_date', sa.DateTime, nullable=True),
        sa.Column('rev_expected_delivery_date', sa.DateTime, nullable=True),
        sa.Column('cancellation_requested', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('cancellation_reason', sa.Text, nullable=True),
        sa.Column('refund_status', sa.String(20), nullable=True),
        sa.Column('refund_id', sa.String(100), nullable=True),
        sa.Column('refund_amount', sa.Numeric(12,2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
        sa.Column('version', sa.Integer, nullable=False),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'], unique=True)
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_transaction_id', 'orders', ['transaction_id'])
    op.create_index('ix_orders_tracking_number', 'orders', ['tracking_number'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False),
        sa.Column('product_id', sa.String(64), nullable=False),
        sa.Column('name', sa.String(200), nullable=False),
        sa.Column('unit_price', sa.Numeric(12,2), nullable=False),
        sa.Column('quantity', sa.Integer, nullable=False),
        sa.Column('thumbnail', sa.String(500), nullable=True),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'tracking_events',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('order_id', sa.Integer, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', sa.String(20), nullable=False),
        sa.Column('action_desc', sa.String(200), nullable=True),
        sa.Column('action_timestamp', sa.String(40), nullable=True),
        sa.Column('origin', sa.String(200), nullable=True),
        sa.Column('remarks', sa.Text, nullable=False),
        sa.Column('latitude', sa.String(30), nullable=False),
        sa.Column('longitude', sa.String(30), nullable=False),
        sa.Column('manifest_no', sa.String(100), nullable=False),
        sa.Column('tracking_number', sa.String(100), nullable=False),
        sa.Column('recorded_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_tracking_events_order_id', 'tracking_events', ['order_id'])

    op.create_table(
        'coupons',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('coupon_type', sa.String(30), nullable=False),
        sa.Column('discount_type', sa.String(20), nullable=False),
        sa.Column('discount_value', sa.Numeric(12,2), nullable=False),
        sa.Column('min_order_amount', sa.Numeric(12,2), nullable=False),
        sa.Column('max_discount_amount', sa.Numeric(12,2), nullable=True),
        sa.Column('combo_discount_amount', sa.Numeric(12,2), nullable=False, server_default='100'),
        sa.Column('buy_quantity', sa.Integer, nullable=False),
        sa.Column('get_quantity', sa.Integer, nullable=False),
        sa.Column('required_quantity', sa.Integer, nullable=False),
        sa.Column('applicable_products', sa.JSON, nullable=False),
        sa.Column('start_date', sa.DateTime, nullable=False),
        sa.Column('end_date', sa.DateTime, nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('usage_limit', sa.Integer, nullable=True),
        sa.Column('used_count', sa.Integer, nullable=False),
        sa.Column('first_time_users_only', sa.Boolean, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=False),
    )
    op.create_index('ix_coupons_code', 'coupons', ['code'], unique=True)

    op.create_table(
        'coupon_usages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('coupon_id', sa.Integer, sa.ForeignKey('coupons.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('order_number', sa.String(50), nullable=False),
        sa.Column('first_time_only', sa.Boolean, nullable=False),
        sa.Column('used_at', sa.DateTime, nullable=False),
        sa.UniqueConstraint('coupon_id', 'order_number', name='uq_coupon_usage_order'),
    )
    op.create_index('ix_coupon_usages_coupon_id', 'coupon_usages', ['coupon_id'])
    op.create_index('ix_coupon_usages_user_id', 'coupon_usages', ['user_id'])

    op.create_table(
        'sequences',
        sa.Column('name', sa.String(50), primary_key=True),
        sa.Column('value', sa.Integer, nullable=False),
    )

def downgrade():
    op.drop_table('sequences')
    op.drop_table('coupon_usages')
    op.drop_table('coupons')
    op.drop_table('tracking_events')
    op.drop_table('order_items')
    op.drop_table('orders')
