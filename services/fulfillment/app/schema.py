"""
Fulfillment Service - テーブル定義

業務テーブル (customers / products / inventory / orders / order_items) と
監査テーブル (system_log / order_audit_log / inventory_change_log)。
在庫数の非負制約と注文ステータスの値域は DB の CHECK 制約でも保証する。
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

customers = Table(
    "customers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("full_name", String(100)),
    Column("email", String(100)),
)

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(150), nullable=False),
    Column("category", String(50), nullable=False, server_default=""),
    Column("price", Numeric(10, 2), nullable=False),
    CheckConstraint("price >= 0", name="ck_products_price"),
)

inventory = Table(
    "inventory",
    metadata,
    Column("product_id", Integer, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
    Column("quantity_on_hand", Integer, nullable=False, server_default="0"),
    CheckConstraint("quantity_on_hand >= 0", name="ck_inventory_quantity"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("customer_id", Integer, ForeignKey("customers.id"), nullable=False, index=True),
    Column("order_date", Date, nullable=False),
    Column("total_amount", Numeric(10, 2), nullable=False),
    Column("status", String(20), nullable=False, server_default="Pending", index=True),
    CheckConstraint("total_amount >= 0", name="ck_orders_total"),
    CheckConstraint(
        "status IN ('Pending', 'Shipped', 'Delivered', 'Cancelled')",
        name="ck_orders_status",
    ),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True),
    Column("product_id", Integer, ForeignKey("products.id"), nullable=False, index=True),
    Column("quantity", Integer, nullable=False),
    Column("price_at_purchase", Numeric(10, 2), nullable=False),
    CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
)

# ── 監査テーブル (業務テーブルへの外部キーは持たない) ──

system_log = Table(
    "system_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("log_time", DateTime(timezone=True), nullable=False, index=True),
    Column("log_level", String(10), nullable=False, index=True),
    Column("category", String(50), nullable=False),
    Column("message", Text, nullable=False),
    Column("table_name", String(50)),
    Column("record_id", Integer),
)

order_audit_log = Table(
    "order_audit_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("log_time", DateTime(timezone=True), nullable=False, index=True),
    Column("order_id", Integer, index=True),
    Column("customer_id", Integer),
    Column("product_id", Integer),
    Column("action", String(20), nullable=False),
    Column("quantity", Integer),
    Column("success", Boolean, nullable=False),
    Column("error_msg", Text),
    Column("inventory_before", Integer),
    Column("inventory_after", Integer),
    Column("processing_time_ms", Integer),
)

inventory_change_log = Table(
    "inventory_change_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("log_time", DateTime(timezone=True), nullable=False, index=True),
    Column("product_id", Integer, nullable=False, index=True),
    Column("change_type", String(20), nullable=False),
    Column("old_qty", Integer, nullable=False),
    Column("new_qty", Integer, nullable=False),
    Column("quantity_changed", Integer, nullable=False),
    Column("order_id", Integer),
    Column("reason", String(255)),
)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
