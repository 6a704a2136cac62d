"""
Request and response schemas for the HTTP API.
"""
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from database.models import BookingStatus, DeliveryStatus, OrderType, ParentOrderStatus, UserRole


def _validate_phone(v: str) -> str:
    v = v.strip()
    # digits, +, -, spaces and brackets
    if not re.match(r'^[\d\s\+\-\(\)]+$', v):
        raise ValueError("Invalid phone number format")
    if len(v) < 7 or len(v) > 20:
        raise ValueError("Phone number must be 7 to 20 characters long")
    return v


class OrderItemInput(BaseModel):
    """One line of an order. Items with provider_id split the order per provider."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(default=1, gt=0, le=10000)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    provider_id: Optional[int] = Field(default=None, alias="providerId")
    provider_name: Optional[str] = Field(default=None, alias="providerName")


class OrderCreateInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_name: str = Field(..., min_length=1, max_length=255, alias="customerName")
    customer_phone: str = Field(..., alias="customerPhone")
    pickup_address: str = Field(..., min_length=1, alias="pickupAddress")
    delivery_address: Optional[str] = Field(default=None, alias="deliveryAddress")
    pickup_lat: Optional[float] = Field(default=None, ge=-90, le=90, alias="pickupLat")
    pickup_lng: Optional[float] = Field(default=None, ge=-180, le=180, alias="pickupLng")
    delivery_lat: Optional[float] = Field(default=None, ge=-90, le=90, alias="deliveryLat")
    delivery_lng: Optional[float] = Field(default=None, ge=-180, le=180, alias="deliveryLng")
    courier_id: Optional[int] = Field(default=None, alias="courierId")
    supervisor_id: Optional[int] = Field(default=None, alias="supervisorId")
    notes: Optional[str] = Field(default=None, max_length=2000)
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0, alias="deliveryFee")
    items: List[OrderItemInput] = Field(default_factory=list)
    source: str = Field(default="manual", max_length=255)
    order_type: Optional[OrderType] = Field(default=None, alias="orderType")

    @field_validator("customer_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _validate_phone(v)

    @field_validator("customer_name", "pickup_address")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Value cannot be blank")
        return v

    @property
    def is_split(self) -> bool:
        return any(item.provider_id for item in self.items)


class StatusUpdateInput(BaseModel):
    """Free-text status; legacy clients send Arabic or old English names."""

    status: str = Field(..., min_length=1, max_length=100)
    notes: Optional[str] = Field(default=None, max_length=2000)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


class AutoAssignInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: Optional[str] = Field(default=None, alias="targetStatus")


class AvailabilityInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_available: bool = Field(..., alias="isAvailable")


class SupervisorLinkInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    courier_id: int = Field(..., gt=0, alias="courierId")


class OrderFilters(BaseModel):
    status: Optional[str] = None
    courier_id: Optional[int] = None
    supervisor_id: Optional[int] = None
    source: Optional[str] = None
    search: Optional[str] = Field(default=None, max_length=100)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=50, ge=1, le=200)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


# --- Responses ---

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: Optional[str] = None
    role: UserRole


class CourierOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    phone: Optional[str] = None
    is_available: bool
    is_online: bool
    max_active_orders: Optional[int] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_location_update: Optional[datetime] = None
    workload: int = 0


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    customer_name: str
    customer_phone: str
    pickup_address: str
    delivery_address: str
    pickup_lat: Optional[float] = None
    pickup_lng: Optional[float] = None
    delivery_lat: Optional[float] = None
    delivery_lng: Optional[float] = None
    courier_id: Optional[int] = None
    supervisor_id: Optional[int] = None
    status: DeliveryStatus
    order_type: OrderType
    source: Optional[str] = None
    notes: Optional[str] = None
    delivery_fee: float
    items: List[Any] = Field(default_factory=list)
    is_deleted: bool
    is_edited: bool
    created_at: datetime
    updated_at: datetime


class OrderListOut(BaseModel):
    records: List[OrderOut]
    total: int
    page: int
    limit: int


class HistoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    status: str
    changed_by: Optional[int] = None
    notes: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime


class AssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    order_id: int
    courier_id: Optional[int] = None
    courier_name: Optional[str] = None
    workload: Optional[int] = None
    tier: Optional[str] = None
    status: DeliveryStatus


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    provider_id: Optional[int] = None
    provider_name: Optional[str] = None
    service_name: Optional[str] = None
    price: float
    status: BookingStatus
    parent_order_id: Optional[int] = None
    delivery_order_id: Optional[int] = None


class SubOrderOut(BookingOut):
    delivery_status: Optional[DeliveryStatus] = None
    courier_id: Optional[int] = None
    courier_name: Optional[str] = None
    level: int


class ParentOrderOut(BaseModel):
    id: int
    user_id: Optional[int] = None
    total_price: float
    status: ParentOrderStatus
    derived_status: ParentOrderStatus
    rule: str
    details: Optional[str] = None
    address_info: Optional[dict] = None
    sub_orders: List[SubOrderOut]
    created_at: datetime


class NotificationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    message: str
    type: str
    reference_id: Optional[int] = None
    is_read: bool
    created_at: datetime
