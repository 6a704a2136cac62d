"""
Bookings (provider sub-orders) and the parent order view.
"""
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from aiogram import Bot
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    BOOKING_TRANSITIONS, Booking, BookingStatus, DeliveryOrder, DeliveryStatus, OrderHistory, OrderType,
    ParentOrder, User, UserRole,
)
from services.assignment import DEFAULT_MAX_ACTIVE_ORDERS, auto_assign_order
from services.exceptions import NoCouriersAvailableException, NotFoundException, PermissionDeniedException
from services.parent_sync import AggregationRule, aggregate_parent_status, sync_parent_order_status
from services.realtime import Broadcaster
from services.status_levels import StatusLevel, normalize_booking_status, status_level, sub_order_level

logger = logging.getLogger(__name__)

_STAFF_ROLES = (UserRole.ADMIN, UserRole.SUPERVISOR)
# Customers may only withdraw their own booking
_CUSTOMER_STATUSES = frozenset({BookingStatus.CANCELLED})
_DROPPED = frozenset({BookingStatus.CANCELLED, BookingStatus.REJECTED})

# Delivery status a booking status pushes its delivery order to
_DELIVERY_FOLLOWS: dict[BookingStatus, DeliveryStatus] = {
    BookingStatus.READY_FOR_PICKUP: DeliveryStatus.READY_FOR_PICKUP,
    BookingStatus.CANCELLED: DeliveryStatus.CANCELLED,
}
_DELIVERY_AT_OR_PAST_READY = frozenset({
    DeliveryStatus.READY_FOR_PICKUP, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT,
    DeliveryStatus.DELIVERED, DeliveryStatus.CANCELLED,
})


@dataclass(frozen=True, slots=True)
class DeliveryFollowUp:
    order_id: int
    status: DeliveryStatus
    auto_assign: bool = False


def _check_booking_access(booking: Booking, user: User, status: BookingStatus) -> None:
    if user.role in _STAFF_ROLES:
        return
    if user.role == UserRole.PROVIDER and booking.provider_id == user.id:
        return
    if booking.user_id == user.id and status in _CUSTOMER_STATUSES:
        return
    raise PermissionDeniedException("You cannot change this booking")


def _check_transition(booking: Booking, status: BookingStatus) -> None:
    if status not in BOOKING_TRANSITIONS[booking.status]:
        raise PermissionDeniedException(
            f"Booking cannot move from '{booking.status.value}' to '{status.value}'"
        )
    if status == BookingStatus.REJECTED and booking.delivery_order_id:
        raise PermissionDeniedException(
            "A booking already sent for delivery cannot be rejected, contact an administrator"
        )


def _record_delivery_status(
    session: AsyncSession,
    order: DeliveryOrder,
    status: DeliveryStatus,
    changed_by: Optional[int],
    notes: str,
) -> None:
    order.status = status
    session.add(OrderHistory(order_id=order.id, status=status.value, changed_by=changed_by, notes=notes))


async def _lock_delivery_order(session: AsyncSession, order_id: int) -> Optional[DeliveryOrder]:
    stmt = (
        select(DeliveryOrder)
        .where(DeliveryOrder.id == order_id, DeliveryOrder.is_deleted.is_(False))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def _follow_delivery_order(
    session: AsyncSession,
    booking: Booking,
    user: User,
) -> Optional[DeliveryFollowUp]:
    """
    Move the delivery order along with its bookings, inside the booking's transaction.

    The delivery order becomes ready for pickup once every active booking on
    it is ready, and cancelled once every booking on it dropped out. It never
    moves backwards. An app order without a courier is left for auto-assign
    (returned with auto_assign=True) instead of being updated here.
    """
    target = _DELIVERY_FOLLOWS.get(booking.status)
    if target is None or not booking.delivery_order_id:
        return None

    order = await _lock_delivery_order(session, booking.delivery_order_id)
    if order is None or order.status in _DELIVERY_AT_OR_PAST_READY:
        return None

    # autoflush is off, so the sibling query still sees this booking's old status
    rows = (await session.execute(
        select(Booking.id, Booking.status).where(Booking.delivery_order_id == order.id)
    )).all()
    statuses = [booking.status if row.id == booking.id else row.status for row in rows]
    active = [s for s in statuses if s not in _DROPPED]

    if target == DeliveryStatus.CANCELLED and active:
        return None
    if target == DeliveryStatus.READY_FOR_PICKUP:
        if any(status_level(s) < StatusLevel.READY for s in active):
            return None
        if order.courier_id is None and order.order_type == OrderType.APP:
            return DeliveryFollowUp(order.id, target, auto_assign=True)

    _record_delivery_status(session, order, target, user.id, f"Booking #{booking.id} {booking.status.value}")
    return DeliveryFollowUp(order.id, target)


async def _assign_ready_order(
    session: AsyncSession,
    follow_up: DeliveryFollowUp,
    changed_by: int,
    *,
    default_capacity: int,
    rng: Optional[random.Random],
    broadcaster: Optional[Broadcaster],
    parent_rule: AggregationRule,
    bot: Optional[Bot],
) -> None:
    """Hand a ready app order to a courier; without couriers it is only marked ready."""
    try:
        await auto_assign_order(
            session,
            follow_up.order_id,
            changed_by=changed_by,
            target_status=follow_up.status,
            default_capacity=default_capacity,
            rng=rng,
            broadcaster=broadcaster,
            parent_rule=parent_rule,
            bot=bot,
        )
        return
    except NoCouriersAvailableException:
        logger.warning("Order #%s is ready but has no courier to take it", follow_up.order_id)
    except Exception as e:
        logger.error("Auto-assign of ready order #%s failed: %s", follow_up.order_id, e, exc_info=True)
        return

    try:
        order = await _lock_delivery_order(session, follow_up.order_id)
        if order is None:
            await session.rollback()
            return
        _record_delivery_status(session, order, follow_up.status, changed_by, "All bookings ready")
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.error("Error marking order #%s ready: %s", follow_up.order_id, e, exc_info=True)
        return

    if broadcaster is not None:
        payload = {"orderId": follow_up.order_id, "status": follow_up.status.value}
        await broadcaster.emit("order-status-changed", payload)


async def update_booking_status(
    session: AsyncSession,
    booking_id: int,
    status_text: str,
    user: User,
    *,
    broadcaster: Optional[Broadcaster] = None,
    bot: Optional[Bot] = None,
    parent_rule: AggregationRule = AggregationRule.ALL,
    default_capacity: int = DEFAULT_MAX_ACTIVE_ORDERS,
    rng: Optional[random.Random] = None,
) -> Booking:
    """
    Set a booking status from free text, move its delivery order along and
    re-sync its parent order.

    Raises:
        ValidationException: unknown status text
        NotFoundException: booking does not exist
        PermissionDeniedException: user may not change this booking, or the move is not allowed
    """
    status = normalize_booking_status(status_text)

    try:
        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = (await session.execute(stmt)).scalar_one_or_none()
        if booking is None:
            raise NotFoundException("Booking", booking_id)
        _check_booking_access(booking, user, status)
        _check_transition(booking, status)

        old_status = booking.status
        booking.status = status
        follow_up = await _follow_delivery_order(session, booking, user)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    parent_id = booking.parent_order_id
    logger.info(
        "Booking #%s status %s -> %s by user %s (parent=%s)",
        booking_id, old_status.value, status.value, user.id, parent_id,
    )

    if broadcaster is not None:
        payload = {"id": booking_id, "status": status.value, "parentOrderId": parent_id}
        await broadcaster.emit("booking-updated", payload)
        if booking.user_id:
            await broadcaster.emit("booking-updated", payload, room=f"user-{booking.user_id}")

    if follow_up is not None and follow_up.auto_assign:
        await _assign_ready_order(
            session, follow_up, user.id,
            default_capacity=default_capacity, rng=rng, broadcaster=broadcaster, parent_rule=parent_rule, bot=bot,
        )
    elif follow_up is not None:
        logger.info("Order #%s follows booking #%s: %s", follow_up.order_id, booking_id, follow_up.status.value)
        if broadcaster is not None:
            payload = {"orderId": follow_up.order_id, "status": follow_up.status.value}
            await broadcaster.emit("order-status-changed", payload)

    try:
        await sync_parent_order_status(session, parent_id, parent_rule, broadcaster, bot)
    except Exception as e:
        logger.error("Parent re-sync after booking #%s failed: %s", booking_id, e, exc_info=True)
    await session.refresh(booking)
    return booking


async def get_parent_order_view(
    session: AsyncSession,
    parent_id: int,
    user: User,
    rule: AggregationRule = AggregationRule.ALL,
) -> Dict[str, Any]:
    """
    A parent order with its sub-orders and the status derived from them.

    Returns:
        dict shaped like ParentOrderOut
    """
    parent = await session.get(ParentOrder, parent_id, populate_existing=True)
    if parent is None:
        raise NotFoundException("Parent order", parent_id)

    rows = (await session.execute(
        select(Booking, DeliveryOrder.status, DeliveryOrder.courier_id, User.name)
        .outerjoin(DeliveryOrder, Booking.delivery_order_id == DeliveryOrder.id)
        .outerjoin(User, DeliveryOrder.courier_id == User.id)
        .where(Booking.parent_order_id == parent_id)
        .order_by(Booking.id)
    )).all()

    if user.role not in _STAFF_ROLES and parent.user_id != user.id:
        if not any(booking.provider_id == user.id for booking, *_ in rows):
            raise PermissionDeniedException("You cannot view this order")

    sub_orders = []
    levels = []
    for booking, delivery_status, courier_id, courier_name in rows:
        level = sub_order_level(booking.status, delivery_status)
        levels.append(level)
        sub_orders.append({
            "id": booking.id,
            "provider_id": booking.provider_id,
            "provider_name": booking.provider_name,
            "service_name": booking.service_name,
            "price": booking.price,
            "status": booking.status,
            "parent_order_id": booking.parent_order_id,
            "delivery_order_id": booking.delivery_order_id,
            "delivery_status": delivery_status,
            "courier_id": courier_id,
            "courier_name": courier_name,
            "level": int(level),
        })

    return {
        "id": parent.id,
        "user_id": parent.user_id,
        "total_price": parent.total_price,
        "status": parent.status,
        "derived_status": aggregate_parent_status(levels, rule),
        "rule": rule.value,
        "details": parent.details,
        "address_info": parent.address_info,
        "sub_orders": sub_orders,
        "created_at": parent.created_at,
    }
