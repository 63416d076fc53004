"""add refunds and stock audits

Revision ID: ph002
Revises: ph001
Create Date: 2026-10-17 00:00:00.000000

- refunds: money returned against a sale (no stock effect)
- stock_audits / stock_audit_items: physical counts per branch
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'ph002'
down_revision = 'ph001'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False, index=True),
        sa.Column('sale_id', sa.Integer(), sa.ForeignKey('sales.id'), nullable=False, index=True),
        sa.Column('customer_id', sa.Integer(), sa.ForeignKey('customers.id'), nullable=True, index=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('refund_date', sa.Date(), nullable=False),
        sa.Column('refund_amount', sa.Integer(), nullable=False),
        sa.Column('refund_reason', sa.String(length=255), nullable=False),
        sa.Column('refund_method', sa.String(length=32), nullable=False, server_default='cash'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed', index=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_refunds_branch_date', 'refunds', ['branch_id', 'refund_date'])

    op.create_table(
        'stock_audits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tenant_id', sa.Integer(), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('branch_id', sa.Integer(), sa.ForeignKey('branches.id'), nullable=False, index=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('completed_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('audit_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sqlite_autoincrement=True,
    )
    op.create_index('ix_stock_audits_branch_status', 'stock_audits', ['branch_id', 'status'])

    op.create_table(
        'stock_audit_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('audit_id', sa.Integer(), sa.ForeignKey('stock_audits.id'), nullable=False, index=True),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('products.id'), nullable=True, index=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('expected_quantity', sa.Integer(), nullable=False),
        sa.Column('actual_quantity', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.UniqueConstraint('audit_id', 'product_id', name='uq_stock_audit_items_audit_product'),
        sqlite_autoincrement=True,
    )


def downgrade():
    op.drop_table('stock_audit_items')
    op.drop_index('ix_stock_audits_branch_status', table_name='stock_audits')
    op.drop_table('stock_audits')
    op.drop_index('ix_refunds_branch_date', table_name='refunds')
    op.drop_table('refunds')
