"""
Status vocabulary shared by delivery orders, bookings and parent orders.

Every free-text status the clients have ever sent (English and Arabic
variants) lives in ONE table, STATUS_ALIASES. Everything else maps through
it: incoming text is normalised to the closed enums in database.models, and
sub-order progress is compared by StatusLevel.
"""
import enum
from typing import Optional, Union

from database.models import BookingStatus, DeliveryStatus, ParentOrderStatus
from services.exceptions import ValidationException


class StatusLevel(enum.IntEnum):
    CANCELLED = 0
    PENDING = 1
    CONFIRMED = 2   # accepted / preparing
    READY = 3
    PICKED_UP = 4
    DELIVERED = 5


STATUS_ALIASES: dict[str, StatusLevel] = {
    # pending
    "pending": StatusLevel.PENDING,
    "new": StatusLevel.PENDING,
    "جديد": StatusLevel.PENDING,
    "قيد الانتظار": StatusLevel.PENDING,
    "تم استلام الطلب": StatusLevel.PENDING,
    # confirmed / preparing
    "confirmed": StatusLevel.CONFIRMED,
    "accepted": StatusLevel.CONFIRMED,
    "accepted_by_provider": StatusLevel.CONFIRMED,
    "processing": StatusLevel.CONFIRMED,
    "preparing": StatusLevel.CONFIRMED,
    "assigned": StatusLevel.CONFIRMED,
    "جاري التنفيذ": StatusLevel.CONFIRMED,
    "تم القبول": StatusLevel.CONFIRMED,
    "جاري التحضير": StatusLevel.CONFIRMED,
    # ready
    "ready": StatusLevel.READY,
    "ready_for_pickup": StatusLevel.READY,
    "completed": StatusLevel.READY,
    "archived": StatusLevel.READY,
    "arkived": StatusLevel.READY,
    "مكتمل": StatusLevel.READY,
    "مكتملة": StatusLevel.READY,
    "تم التجهيز": StatusLevel.READY,
    "تم التحضير": StatusLevel.READY,
    "جاهز للاستلام": StatusLevel.READY,
    # with the courier
    "picked_up": StatusLevel.PICKED_UP,
    "in_transit": StatusLevel.PICKED_UP,
    "جاري التوصيل": StatusLevel.PICKED_UP,
    "مع المندوب": StatusLevel.PICKED_UP,
    "تم استلام من المطعم": StatusLevel.PICKED_UP,
    "تم الاستلام من المطعم": StatusLevel.PICKED_UP,
    # delivered
    "delivered": StatusLevel.DELIVERED,
    "تم التوصيل": StatusLevel.DELIVERED,
    "وصل": StatusLevel.DELIVERED,
    # dropped out of the order
    "cancelled": StatusLevel.CANCELLED,
    "canceled": StatusLevel.CANCELLED,
    "rejected": StatusLevel.CANCELLED,
    "failed": StatusLevel.CANCELLED,
    "ملغي": StatusLevel.CANCELLED,
    "مرفوض": StatusLevel.CANCELLED,
}

_REJECTED_ALIASES = frozenset({"rejected", "مرفوض"})

LEVEL_TO_PARENT_STATUS: dict[StatusLevel, ParentOrderStatus] = {
    StatusLevel.CANCELLED: ParentOrderStatus.CANCELLED,
    StatusLevel.PENDING: ParentOrderStatus.PENDING,
    StatusLevel.CONFIRMED: ParentOrderStatus.CONFIRMED,
    StatusLevel.READY: ParentOrderStatus.READY_FOR_PICKUP,
    StatusLevel.PICKED_UP: ParentOrderStatus.PICKED_UP,
    StatusLevel.DELIVERED: ParentOrderStatus.DELIVERED,
}

_LEVEL_TO_BOOKING_STATUS: dict[StatusLevel, BookingStatus] = {
    StatusLevel.CANCELLED: BookingStatus.CANCELLED,
    StatusLevel.PENDING: BookingStatus.PENDING,
    StatusLevel.CONFIRMED: BookingStatus.CONFIRMED,
    StatusLevel.READY: BookingStatus.READY_FOR_PICKUP,
    StatusLevel.PICKED_UP: BookingStatus.PICKED_UP,
    StatusLevel.DELIVERED: BookingStatus.DELIVERED,
}

_LEVEL_TO_DELIVERY_STATUS: dict[StatusLevel, DeliveryStatus] = {
    StatusLevel.CANCELLED: DeliveryStatus.CANCELLED,
    StatusLevel.PENDING: DeliveryStatus.PENDING,
    StatusLevel.CONFIRMED: DeliveryStatus.ASSIGNED,
    StatusLevel.READY: DeliveryStatus.READY_FOR_PICKUP,
    StatusLevel.PICKED_UP: DeliveryStatus.PICKED_UP,
    StatusLevel.DELIVERED: DeliveryStatus.DELIVERED,
}


def _clean(value: Union[str, enum.Enum, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, enum.Enum):
        value = value.value
    return str(value).strip().lower()


def status_level(value: Union[str, enum.Enum, None]) -> Optional[StatusLevel]:
    """Level of a status in any spelling, None when the text is unknown."""
    return STATUS_ALIASES.get(_clean(value))


def normalize_booking_status(value: Union[str, BookingStatus]) -> BookingStatus:
    """Map free text onto BookingStatus, raising ValidationException for unknown text."""
    text = _clean(value)
    try:
        return BookingStatus(text)
    except ValueError:
        pass
    level = STATUS_ALIASES.get(text)
    if level is None:
        raise ValidationException(f"Unknown booking status: {value!r}", {"status": value})
    if text in _REJECTED_ALIASES:
        return BookingStatus.REJECTED
    return _LEVEL_TO_BOOKING_STATUS[level]


def normalize_delivery_status(value: Union[str, DeliveryStatus]) -> DeliveryStatus:
    """Map free text onto DeliveryStatus, raising ValidationException for unknown text."""
    text = _clean(value)
    try:
        return DeliveryStatus(text)
    except ValueError:
        pass
    level = STATUS_ALIASES.get(text)
    if level is None:
        raise ValidationException(f"Unknown delivery status: {value!r}", {"status": value})
    return _LEVEL_TO_DELIVERY_STATUS[level]


def sub_order_level(
    booking_status: Union[str, BookingStatus, None],
    delivery_status: Union[str, DeliveryStatus, None] = None,
) -> StatusLevel:
    """
    Progress of one sub-order.

    A cancelled or rejected booking is CANCELLED whatever its delivery says.
    Otherwise the furthest of the booking and its delivery order wins; an
    unknown booking status counts as PENDING and an unknown, missing or
    cancelled delivery status is ignored.
    """
    booking_level = status_level(booking_status)
    if booking_level == StatusLevel.CANCELLED:
        return StatusLevel.CANCELLED
    if booking_level is None:
        booking_level = StatusLevel.PENDING

    delivery_level = status_level(delivery_status)
    if delivery_level is None or delivery_level == StatusLevel.CANCELLED:
        return booking_level
    return max(booking_level, delivery_level)


def parent_status_for_level(level: Optional[int]) -> ParentOrderStatus:
    try:
        return LEVEL_TO_PARENT_STATUS[StatusLevel(level)]
    except (ValueError, TypeError):
        return ParentOrderStatus.PENDING
