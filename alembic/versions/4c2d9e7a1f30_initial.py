"""initial schema

Revision ID: 4c2d9e7a1f30
Revises:
Create Date: 2026-10-19 09:12:40.118274

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c2d9e7a1f30'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

PK_INT = sa.BigInteger().with_variant(sa.Integer(), "sqlite")

user_role_enum = sa.Enum("admin", "supervisor", "courier", "provider", "customer", name="user_role_enum")
delivery_status_enum = sa.Enum(
    "pending", "assigned", "ready_for_pickup", "picked_up", "in_transit", "delivered", "cancelled",
    name="delivery_status_enum",
)
order_type_enum = sa.Enum("app", "manual", name="order_type_enum")
parent_order_status_enum = sa.Enum(
    "pending", "confirmed", "ready_for_pickup", "picked_up", "delivered", "cancelled",
    name="parent_order_status_enum",
)
booking_status_enum = sa.Enum(
    "pending", "confirmed", "ready_for_pickup", "picked_up", "delivered", "cancelled", "rejected",
    name="booking_status_enum",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("phone", sa.String(50), nullable=True),
        sa.Column("email", sa.String(255), nullable=True, unique=True),
        sa.Column("role", user_role_enum, nullable=False),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_online", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_active_orders", sa.Integer(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("last_location_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("telegram_chat_id", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        comment="Customers, providers, couriers, supervisors and admins",
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "courier_supervisors",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column("courier_id", PK_INT, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("supervisor_id", PK_INT, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("courier_id", "supervisor_id", name="uq_courier_supervisor"),
    )
    op.create_index("ix_courier_supervisors_courier_id", "courier_supervisors", ["courier_id"])
    op.create_index("ix_courier_supervisors_supervisor_id", "courier_supervisors", ["supervisor_id"])

    op.create_table(
        "delivery_orders",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column("order_number", sa.String(50), nullable=False, unique=True),
        sa.Column("customer_name", sa.String(255), nullable=False),
        sa.Column("customer_phone", sa.String(50), nullable=False),
        sa.Column("pickup_address", sa.Text(), nullable=False),
        sa.Column("delivery_address", sa.Text(), nullable=False),
        sa.Column("pickup_lat", sa.Float(), nullable=True),
        sa.Column("pickup_lng", sa.Float(), nullable=True),
        sa.Column("delivery_lat", sa.Float(), nullable=True),
        sa.Column("delivery_lng", sa.Float(), nullable=True),
        sa.Column("courier_id", PK_INT, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("supervisor_id", PK_INT, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("status", delivery_status_enum, nullable=False, server_default="pending"),
        sa.Column("order_type", order_type_enum, nullable=False, server_default="manual"),
        sa.Column("source", sa.String(255), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("delivery_fee", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_edited", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        comment="Delivery orders handled by couriers",
    )
    op.create_index("ix_delivery_orders_courier_id", "delivery_orders", ["courier_id"])
    op.create_index("ix_delivery_orders_supervisor_id", "delivery_orders", ["supervisor_id"])
    op.create_index("ix_delivery_orders_status", "delivery_orders", ["status"])
    op.create_index("ix_delivery_orders_created_at", "delivery_orders", ["created_at"])
    op.create_index("ix_delivery_orders_courier_open", "delivery_orders", ["courier_id", "status", "is_deleted"])

    op.create_table(
        "parent_orders",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column("user_id", PK_INT, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("total_price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("status", parent_order_status_enum, nullable=False, server_default="pending"),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("address_info", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        comment="Bundled checkout spanning several providers",
    )
    op.create_index("ix_parent_orders_user_id", "parent_orders", ["user_id"])

    op.create_table(
        "bookings",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column("user_id", PK_INT, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("provider_id", PK_INT, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("user_name", sa.String(255), nullable=True),
        sa.Column("provider_name", sa.String(255), nullable=True),
        sa.Column("service_name", sa.String(255), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("status", booking_status_enum, nullable=False, server_default="pending"),
        sa.Column(
            "parent_order_id", PK_INT, sa.ForeignKey("parent_orders.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column(
            "delivery_order_id", PK_INT, sa.ForeignKey("delivery_orders.id", ondelete="SET NULL"), nullable=True
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        comment="Provider sub-orders",
    )
    op.create_index("ix_bookings_user_id", "bookings", ["user_id"])
    op.create_index("ix_bookings_provider_id", "bookings", ["provider_id"])
    op.create_index("ix_bookings_parent_order_id", "bookings", ["parent_order_id"])
    op.create_index("ix_bookings_delivery_order_id", "bookings", ["delivery_order_id"])

    op.create_table(
        "order_history",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column(
            "order_id", PK_INT, sa.ForeignKey("delivery_orders.id", ondelete="CASCADE"), nullable=False
        ),
        sa.Column("status", sa.String(50), nullable=False),
        sa.Column("changed_by", PK_INT, sa.ForeignKey("users.id"), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        comment="Append-only audit log of delivery order changes",
    )
    op.create_index("ix_order_history_order_id", "order_history", ["order_id"])

    op.create_table(
        "notifications",
        sa.Column("id", PK_INT, primary_key=True, autoincrement=True),
        sa.Column("user_id", PK_INT, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("type", sa.String(50), nullable=False, server_default="info"),
        sa.Column("reference_id", sa.Integer(), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])
    op.create_index("ix_notifications_created_at", "notifications", ["created_at"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("order_history")
    op.drop_table("bookings")
    op.drop_table("parent_orders")
    op.drop_table("delivery_orders")
    op.drop_table("courier_supervisors")
    op.drop_table("users")
    for enum_type in (
        booking_status_enum, parent_order_status_enum, order_type_enum, delivery_status_enum, user_role_enum,
    ):
        enum_type.drop(op.get_bind(), checkfirst=True)
