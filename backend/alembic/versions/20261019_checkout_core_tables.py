"""Checkout core tables: accounts, cart lines, orders, supplier credentials

Revision ID: 20261019_checkout_core
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_checkout_core"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("wallet_address", sa.String(255), nullable=True),
        sa.Column("kyc_status", sa.String(20), nullable=False, server_default="none"),
        sa.Column("kyc_verification_id", sa.String(255), nullable=True),
        sa.Column("kyc_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_accounts_email", "accounts", ["email"], unique=True)

    op.create_table(
        "cart_lines",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("account_id", sa.String(255), nullable=False),
        sa.Column("item_id", sa.String(64), nullable=False),
        sa.Column("sku", sa.String(255), nullable=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("base_price", sa.Numeric(14, 4), nullable=False),
        sa.Column("markup_percentage", sa.Numeric(6, 3), nullable=False),
        sa.Column("markup_amount", sa.Numeric(14, 4), nullable=False),
        sa.Column("final_price", sa.Numeric(14, 4), nullable=False),
        sa.Column("metal_symbol", sa.String(8), nullable=True),
        sa.Column("metal_oz", sa.Float(), nullable=True),
        sa.Column("manufacturer", sa.String(255), nullable=True),
        sa.Column("image", sa.Text(), nullable=True),
        sa.Column("added_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("account_id", "item_id", name="uq_cart_lines_account_item"),
    )
    op.create_index("ix_cart_lines_account_id", "cart_lines", ["account_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("account_id", sa.String(255), nullable=False),
        sa.Column("account_email", sa.String(255), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False),
        sa.Column("platform_gold_cost", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_markup", sa.Numeric(12, 2), nullable=False),
        sa.Column("delivery_fee", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("processing_fee", sa.Numeric(12, 2), nullable=True),
        sa.Column("total", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=False, server_default="stripe"),
        sa.Column("payment_method_type", sa.String(50), nullable=True),
        sa.Column("payment_status", sa.String(20), nullable=False),
        sa.Column("payment_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("supplier_order_id", sa.String(64), nullable=True),
        sa.Column("supplier_handle", sa.String(255), nullable=True),
        sa.Column("supplier_status", sa.String(100), nullable=True),
        sa.Column("supplier_mode", sa.String(20), nullable=True),
        sa.Column("supplier_transaction_id", sa.String(100), nullable=True),
        sa.Column("supplier_error", sa.Text(), nullable=True),
        sa.Column("supplier_last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("supplier_tracking_numbers", sa.JSON(), nullable=True),
        sa.Column("supplier_item_fulfillments", sa.JSON(), nullable=True),
        sa.Column("required_kyc", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("kyc_status", sa.String(20), nullable=True),
        sa.Column("tracking_numbers", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    # One order per captured payment.
    op.create_index("ix_orders_payment_id", "orders", ["payment_id"], unique=True)
    op.create_index("ix_orders_account_id", "orders", ["account_id"])
    op.create_index("ix_orders_status", "orders", ["status"])
    op.create_index("ix_orders_supplier_status", "orders", ["supplier_status"])
    op.create_index("ix_orders_created_at", "orders", ["created_at"])

    op.create_table(
        "supplier_credentials",
        sa.Column("name", sa.String(64), primary_key=True),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("supplier_credentials")
    op.drop_index("ix_orders_created_at", table_name="orders")
    op.drop_index("ix_orders_supplier_status", table_name="orders")
    op.drop_index("ix_orders_status", table_name="orders")
    op.drop_index("ix_orders_account_id", table_name="orders")
    op.drop_index("ix_orders_payment_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_cart_lines_account_id", table_name="cart_lines")
    op.drop_table("cart_lines")
    op.drop_index("ix_accounts_email", table_name="accounts")
    op.drop_table("accounts")
