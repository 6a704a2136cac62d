"""
Parent order status derived from its sub-orders (bookings).
"""
import enum
import logging
from typing import Iterable, Optional, Union

from aiogram import Bot
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Booking, DeliveryOrder, ParentOrder, ParentOrderStatus
from services.notifications import create_notification
from services.realtime import Broadcaster
from services.status_levels import StatusLevel, parent_status_for_level, sub_order_level

logger = logging.getLogger(__name__)


class AggregationRule(str, enum.Enum):
    # every active sub-order must reach a level before the parent does
    ALL = "all"
    # one accepted sub-order is enough for "confirmed"; later levels still need all
    ANY = "any"


def aggregate_parent_status(
    levels: Iterable[Union[StatusLevel, int]],
    rule: AggregationRule = AggregationRule.ALL,
) -> ParentOrderStatus:
    """
    Parent status as a pure function of the sub-order levels.

    Cancelled sub-orders do not hold the parent back. A parent without
    sub-orders is pending; one whose sub-orders were all cancelled is
    cancelled.
    """
    levels = [StatusLevel(level) for level in levels]
    if not levels:
        return ParentOrderStatus.PENDING

    active = [level for level in levels if level != StatusLevel.CANCELLED]
    if not active:
        return ParentOrderStatus.CANCELLED

    level = min(active)
    if rule == AggregationRule.ANY and level < StatusLevel.CONFIRMED:
        if any(lvl >= StatusLevel.CONFIRMED for lvl in active):
            level = StatusLevel.CONFIRMED

    return parent_status_for_level(level)


async def sync_parent_order_status(
    session: AsyncSession,
    parent_id: Optional[int],
    rule: AggregationRule = AggregationRule.ALL,
    broadcaster: Optional[Broadcaster] = None,
    bot: Optional[Bot] = None,
) -> Optional[ParentOrderStatus]:
    """
    Recompute and store the status of a parent order.

    The parent row is locked for the duration of the recomputation so two
    concurrent sub-order updates cannot interleave.

    Args:
        session: DB session
        parent_id: Parent order id
        rule: Aggregation rule
        broadcaster: Hub for "order-status-changed"
        bot: Telegram bot for the "order ready" push

    Returns:
        The derived status, or None when the parent does not exist
    """
    if not parent_id:
        return None

    try:
        stmt = (
            select(ParentOrder)
            .where(ParentOrder.id == parent_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        parent = (await session.execute(stmt)).scalar_one_or_none()
        if parent is None:
            await session.rollback()
            return None

        rows = await session.execute(
            select(Booking.status, DeliveryOrder.status)
            .outerjoin(DeliveryOrder, Booking.delivery_order_id == DeliveryOrder.id)
            .where(Booking.parent_order_id == parent_id)
        )
        levels = []
        for booking_status, delivery_status in rows:
            level = sub_order_level(booking_status, delivery_status)
            logger.debug(
                "[ParentSync] P%s booking=%s delivery=%s -> level=%s",
                parent_id, booking_status, delivery_status, int(level),
            )
            levels.append(level)

        new_status = aggregate_parent_status(levels, rule)
        old_status = parent.status
        user_id = parent.user_id
        changed = new_status != old_status
        if changed:
            parent.status = new_status

        await session.commit()
    except Exception:
        await session.rollback()
        logger.error("[ParentSync] Sync failed for parent %s", parent_id, exc_info=True)
        raise

    if not changed:
        logger.debug("[ParentSync] P%s already %s", parent_id, new_status.value)
        return new_status

    logger.info(
        "[ParentSync] P%s status %s -> %s (rule=%s, sub_orders=%s)",
        parent_id, old_status.value, new_status.value, rule.value, len(levels),
    )

    if broadcaster is not None:
        await broadcaster.emit("order-status-changed", {"orderId": f"P{parent_id}", "status": new_status.value})

    if new_status == ParentOrderStatus.READY_FOR_PICKUP and user_id:
        await create_notification(
            session,
            user_id,
            f"Order #{parent_id} is fully ready! All providers have finished preparing.",
            type="order_ready",
            reference_id=parent_id,
            broadcaster=broadcaster,
            bot=bot,
        )

    return new_status


async def sync_parents_of_delivery_order(
    session: AsyncSession,
    order_id: int,
    rule: AggregationRule = AggregationRule.ALL,
    broadcaster: Optional[Broadcaster] = None,
    bot: Optional[Bot] = None,
) -> dict[int, Optional[ParentOrderStatus]]:
    """Re-sync every parent order whose bookings ride on the given delivery order."""
    parent_ids = (await session.execute(
        select(Booking.parent_order_id)
        .where(Booking.delivery_order_id == order_id, Booking.parent_order_id.is_not(None))
        .distinct()
    )).scalars().all()

    results = {}
    for parent_id in parent_ids:
        results[parent_id] = await sync_parent_order_status(session, parent_id, rule, broadcaster, bot)
    return results


async def resync_after_commit(
    session: AsyncSession,
    order_id: int,
    rule: AggregationRule = AggregationRule.ALL,
    broadcaster: Optional[Broadcaster] = None,
    bot: Optional[Bot] = None,
) -> bool:
    """
    Re-sync the parents of a delivery order whose own change is already committed.

    A failure is logged and reported as False; the session was rolled back,
    so callers refresh the objects they hand out.
    """
    try:
        await sync_parents_of_delivery_order(session, order_id, rule, broadcaster, bot)
        return True
    except Exception as e:
        await session.rollback()
        logger.error("[ParentSync] Re-sync after order #%s failed: %s", order_id, e, exc_info=True)
        return False
