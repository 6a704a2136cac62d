import enum
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, List, Any

from sqlalchemy import (
    BigInteger, Integer, String, Text, Boolean, ForeignKey, DateTime, Float, Numeric, JSON,
    Enum as PgEnum, Index, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database.core import Base


# SQLite only autoincrements an INTEGER PRIMARY KEY (rowid), PostgreSQL gets BIGINT
PK_INT = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type[enum.Enum], name: str) -> PgEnum:
    # store the lowercase values ("pending"), not the member names
    return PgEnum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


# --- Enums ---
class UserRole(str, enum.Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    COURIER = "courier"
    PROVIDER = "provider"
    CUSTOMER = "customer"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    READY_FOR_PICKUP = "ready_for_pickup"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    READY_FOR_PICKUP = "ready_for_pickup"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"


# Allowed booking moves; cancelled, rejected and delivered are final
BOOKING_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({
        BookingStatus.CONFIRMED, BookingStatus.READY_FOR_PICKUP, BookingStatus.CANCELLED, BookingStatus.REJECTED,
    }),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.READY_FOR_PICKUP, BookingStatus.CANCELLED}),
    BookingStatus.READY_FOR_PICKUP: frozenset({BookingStatus.PICKED_UP, BookingStatus.DELIVERED}),
    BookingStatus.PICKED_UP: frozenset({BookingStatus.DELIVERED}),
    BookingStatus.DELIVERED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
}


class ParentOrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    READY_FOR_PICKUP = "ready_for_pickup"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class OrderType(str, enum.Enum):
    APP = "app"
    MANUAL = "manual"


# Statuses that count toward a courier's workload
OPEN_ORDER_STATUSES = frozenset({
    DeliveryStatus.PENDING,
    DeliveryStatus.ASSIGNED,
    DeliveryStatus.READY_FOR_PICKUP,
    DeliveryStatus.PICKED_UP,
    DeliveryStatus.IN_TRANSIT,
})


# --- Models ---

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    role: Mapped[UserRole] = mapped_column(_enum_column(UserRole, "user_role_enum"), nullable=False, index=True)

    # Courier fields
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_active_orders: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_location_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    telegram_chat_id: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        {"comment": "Customers, providers, couriers, supervisors and admins"},
    )


class CourierSupervisor(Base):
    __tablename__ = "courier_supervisors"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    courier_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    supervisor_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    courier: Mapped["User"] = relationship("User", foreign_keys=[courier_id])
    supervisor: Mapped["User"] = relationship("User", foreign_keys=[supervisor_id])

    __table_args__ = (
        UniqueConstraint("courier_id", "supervisor_id", name="uq_courier_supervisor"),
    )


class DeliveryOrder(Base):
    __tablename__ = "delivery_orders"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    order_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    customer_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_phone: Mapped[str] = mapped_column(String(50), nullable=False)
    pickup_address: Mapped[str] = mapped_column(Text, nullable=False)
    delivery_address: Mapped[str] = mapped_column(Text, nullable=False)
    pickup_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    pickup_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_lat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    delivery_lng: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    courier_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    supervisor_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)

    status: Mapped[DeliveryStatus] = mapped_column(
        _enum_column(DeliveryStatus, "delivery_status_enum"),
        default=DeliveryStatus.PENDING, nullable=False, index=True
    )
    order_type: Mapped[OrderType] = mapped_column(
        _enum_column(OrderType, "order_type_enum"), default=OrderType.MANUAL, nullable=False
    )
    source: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    items: Mapped[List[Any]] = mapped_column(JSON, default=list, nullable=False)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    courier: Mapped[Optional["User"]] = relationship("User", foreign_keys=[courier_id])
    supervisor: Mapped[Optional["User"]] = relationship("User", foreign_keys=[supervisor_id])
    bookings: Mapped[List["Booking"]] = relationship("Booking", back_populates="delivery_order")

    __table_args__ = (
        Index("ix_delivery_orders_courier_open", "courier_id", "status", "is_deleted"),
        {"comment": "Delivery orders handled by couriers"},
    )


class ParentOrder(Base):
    __tablename__ = "parent_orders"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    status: Mapped[ParentOrderStatus] = mapped_column(
        _enum_column(ParentOrderStatus, "parent_order_status_enum"),
        default=ParentOrderStatus.PENDING, nullable=False
    )
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    address_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user: Mapped[Optional["User"]] = relationship("User")
    bookings: Mapped[List["Booking"]] = relationship("Booking", back_populates="parent_order")

    __table_args__ = (
        {"comment": "Bundled checkout spanning several providers"},
    )


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    provider_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    user_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    provider_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    service_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    details: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    items: Mapped[List[Any]] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        _enum_column(BookingStatus, "booking_status_enum"),
        default=BookingStatus.PENDING, nullable=False
    )

    parent_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("parent_orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    delivery_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("delivery_orders.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    parent_order: Mapped[Optional["ParentOrder"]] = relationship("ParentOrder", back_populates="bookings")
    delivery_order: Mapped[Optional["DeliveryOrder"]] = relationship("DeliveryOrder", back_populates="bookings")

    __table_args__ = (
        {"comment": "Provider sub-orders"},
    )


class OrderHistory(Base):
    __tablename__ = "order_history"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("delivery_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    changed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        {"comment": "Append-only audit log of delivery order changes"},
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(PK_INT, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="info")
    reference_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
