"""users, catalogue stock ledger, orders and deliveries

Revision ID: 0001_fulfillment_core
Revises:
Create Date: 2026-10-05 00:00:00.000000
"""
from alembic import op
import sqlalchemy as sa


revision = "0001_fulfillment_core"
down_revision = None
branch_labels = None
depends_on = None

ENUM_NAMES = (
    "user_role",
    "seller_plan_type",
    "seller_plan_payment_status",
    "product_status",
    "product_availability_status",
    "stock_movement_type",
    "order_payment_status",
    "order_status",
    "delivery_status",
    "delivery_verification_method",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("full_name", sa.String(length=200), nullable=True),
        sa.Column("phone", sa.String(length=50), nullable=True),
        sa.Column("role", sa.Enum("buyer", "seller", "agent", "admin", name="user_role"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("bank_name", sa.String(length=120), nullable=True),
        sa.Column("bank_account_name", sa.String(length=200), nullable=True),
        sa.Column("bank_account_number", sa.String(length=64), nullable=True),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("current_latitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("current_longitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("location_updated_at", sa.DateTime(), nullable=True),
        sa.Column("max_delivery_radius_km", sa.Numeric(8, 2), nullable=False, server_default="10"),
        sa.Column("total_deliveries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "seller_plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("plan_type", sa.Enum("commission", "subscription", name="seller_plan_type"), nullable=False),
        sa.Column("commission_rate", sa.Numeric(5, 2), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "payment_status",
            sa.Enum("pending", "paid", name="seller_plan_payment_status"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_seller_plans_seller_id", "seller_plans", ["seller_id"])

    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("price", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "status",
            sa.Enum("Pending", "Live", "Rejected", "Archived", name="product_status"),
            nullable=False,
            server_default="Live",
        ),
        sa.Column("stock_quantity", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reserved_stock", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("minimum_order_quantity", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("low_stock_threshold", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("enable_stock_management", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("allow_backorders", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "availability_status",
            sa.Enum(
                "available",
                "sold",
                "reserved",
                "pending_sale",
                "unavailable",
                name="product_availability_status",
            ),
            nullable=False,
            server_default="available",
        ),
        sa.Column("latitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("longitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("stock_quantity >= 0", name="ck_products_stock_non_negative"),
        sa.CheckConstraint("reserved_stock >= 0", name="ck_products_reserved_non_negative"),
        sa.CheckConstraint("reserved_stock <= stock_quantity", name="ck_products_reserved_within_stock"),
    )
    op.create_index("ix_products_seller_id", "products", ["seller_id"])

    op.create_table(
        "stock_movements",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column(
            "movement_type",
            sa.Enum(
                "sale",
                "restock",
                "adjustment",
                "return",
                "reservation",
                "reservation_release",
                name="stock_movement_type",
            ),
            nullable=False,
        ),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("previous_quantity", sa.Integer(), nullable=False),
        sa.Column("new_quantity", sa.Integer(), nullable=False),
        sa.Column("reserved_delta", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("reference_type", sa.String(length=50), nullable=True),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("performed_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_stock_movements_product_id_id", "stock_movements", ["product_id", "id"])
    op.create_index("ix_stock_movements_reference", "stock_movements", ["reference_type", "reference_id"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("buyer_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("total_amount", sa.Numeric(14, 2), nullable=False),
        sa.Column(
            "payment_status",
            sa.Enum("Pending", "Paid", "Failed", "Refunded", name="order_payment_status"),
            nullable=False,
            server_default="Pending",
        ),
        sa.Column(
            "order_status",
            sa.Enum(
                "Placed",
                "Approved",
                "Assigned",
                "In_Transit",
                "Delivered",
                "Cancelled",
                "Failed",
                name="order_status",
            ),
            nullable=False,
            server_default="Placed",
        ),
        sa.Column("payment_reference", sa.String(length=120), nullable=True),
        sa.Column("shipping_name", sa.String(length=200), nullable=True),
        sa.Column("shipping_phone", sa.String(length=50), nullable=True),
        sa.Column("shipping_address", sa.Text(), nullable=True),
        sa.Column("shipping_city", sa.String(length=120), nullable=True),
        sa.Column("pickup_latitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("pickup_longitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("dropoff_latitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("dropoff_longitude", sa.Numeric(10, 7), nullable=True),
        sa.Column("delivery_fee", sa.Numeric(14, 2), nullable=True),
        sa.Column("delivery_distance_km", sa.Numeric(8, 2), nullable=True),
        sa.Column("assigned_agent_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("approved_at", sa.DateTime(), nullable=True),
        sa.Column("paid_at", sa.DateTime(), nullable=True),
        sa.Column("picked_up_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_orders_buyer_id", "orders", ["buyer_id"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("seller_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("product_name", sa.String(length=200), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(14, 2), nullable=False),
        sa.Column("line_total", sa.Numeric(14, 2), nullable=False),
        sa.Column("is_backorder", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "deliveries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("order_id", sa.Integer(), sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("agent_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "Pending",
                "Assigned",
                "In_Transit",
                "Delivered",
                "Failed",
                "Cancelled",
                name="delivery_status",
            ),
            nullable=False,
            server_default="Pending",
        ),
        sa.Column("otp_code_hash", sa.String(length=255), nullable=True),
        sa.Column("qr_code_hash", sa.String(length=64), nullable=True),
        sa.Column("codes_issued_at", sa.DateTime(), nullable=True),
        sa.Column("codes_expires_at", sa.DateTime(), nullable=True),
        sa.Column("secret_version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("verification_method", sa.Enum("otp", "qr", name="delivery_verification_method"), nullable=True),
        sa.Column("assigned_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("assigned_at", sa.DateTime(), nullable=True),
        sa.Column("pickup_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("delivery_confirmed_at", sa.DateTime(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("delivery_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_deliveries_agent_id", "deliveries", ["agent_id"])

    op.create_table(
        "delivery_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("setting_key", sa.String(length=100), nullable=False, unique=True),
        sa.Column("setting_value", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("updated_by", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("entity_type", sa.String(length=100), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("event_metadata", sa.Text(), nullable=True),
    )
    op.create_index("ix_audit_events_entity", "audit_events", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("ix_audit_events_entity", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("delivery_settings")
    op.drop_index("ix_deliveries_agent_id", table_name="deliveries")
    op.drop_table("deliveries")
    op.drop_index("ix_order_items_order_id", table_name="order_items")
    op.drop_table("order_items")
    op.drop_index("ix_orders_buyer_id", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_stock_movements_reference", table_name="stock_movements")
    op.drop_index("ix_stock_movements_product_id_id", table_name="stock_movements")
    op.drop_table("stock_movements")
    op.drop_index("ix_products_seller_id", table_name="products")
    op.drop_table("products")
    op.drop_index("ix_seller_plans_seller_id", table_name="seller_plans")
    op.drop_table("seller_plans")
    op.drop_table("users")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for name in ENUM_NAMES:
            sa.Enum(name=name).drop(bind, checkfirst=True)
