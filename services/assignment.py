"""
Automatic courier assignment: the least loaded courier takes the order.
"""
import enum
import logging
import random
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from aiogram import Bot
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import (
    DeliveryOrder, DeliveryStatus, OrderHistory, OrderType, User, UserRole, OPEN_ORDER_STATUSES,
)
from services.exceptions import NotFoundException, NoCouriersAvailableException
from services.parent_sync import AggregationRule, resync_after_commit
from services.realtime import Broadcaster

logger = logging.getLogger(__name__)

DEFAULT_MAX_ACTIVE_ORDERS = 10


class CandidateTier(str, enum.Enum):
    ONLINE_WITH_CAPACITY = "online_with_capacity"
    AVAILABLE = "available"
    ANY = "any"


@dataclass(frozen=True, slots=True)
class CourierCandidate:
    id: int
    name: str
    workload: int


@dataclass(frozen=True, slots=True)
class AssignmentResult:
    order_id: int
    courier_id: int
    courier_name: str
    workload: int
    tier: CandidateTier
    status: DeliveryStatus


def _open_orders_join():
    return and_(
        DeliveryOrder.courier_id == User.id,
        DeliveryOrder.status.in_(list(OPEN_ORDER_STATUSES)),
        DeliveryOrder.is_deleted.is_(False),
    )


def _workload_select():
    """Couriers with their open order count, in one grouped query."""
    workload = func.count(DeliveryOrder.id)
    stmt = (
        select(User.id, User.name, workload.label("workload"))
        .outerjoin(DeliveryOrder, _open_orders_join())
        .where(User.role == UserRole.COURIER)
        .group_by(User.id, User.name, User.max_active_orders)
        .order_by(User.id)
    )
    return stmt, workload


async def get_courier_workloads(
    session: AsyncSession,
    courier_ids: Optional[Iterable[int]] = None,
) -> dict[int, int]:
    """Open (non-deleted) order count per courier."""
    stmt, _ = _workload_select()
    if courier_ids is not None:
        stmt = stmt.where(User.id.in_(list(courier_ids)))
    result = await session.execute(stmt)
    return {row.id: row.workload for row in result}


async def _lock_couriers(session: AsyncSession) -> None:
    # concurrent assignments serialise on the courier rows
    await session.execute(
        select(User.id).where(User.role == UserRole.COURIER).with_for_update()
    )


async def find_candidates(
    session: AsyncSession,
    default_capacity: int = DEFAULT_MAX_ACTIVE_ORDERS,
) -> tuple[Optional[CandidateTier], list[CourierCandidate]]:
    """
    Candidate couriers for a new order, from the first non-empty tier:

    1. online or available couriers still under their capacity;
    2. available couriers;
    3. every courier.

    Returns:
        (tier, candidates); (None, []) when there are no couriers at all
    """
    stmt, workload = _workload_select()

    tiers = (
        (
            CandidateTier.ONLINE_WITH_CAPACITY,
            stmt.where(or_(User.is_online.is_(True), User.is_available.is_(True)))
            .having(workload < func.coalesce(User.max_active_orders, default_capacity)),
        ),
        (CandidateTier.AVAILABLE, stmt.where(User.is_available.is_(True))),
        (CandidateTier.ANY, stmt),
    )

    for tier, tier_stmt in tiers:
        rows = (await session.execute(tier_stmt)).all()
        if rows:
            logger.info("[Auto-Assign] %s courier(s) in tier %s", len(rows), tier.value)
            return tier, [CourierCandidate(id=r.id, name=r.name, workload=r.workload) for r in rows]
        logger.warning("[Auto-Assign] No couriers in tier %s, falling back", tier.value)

    return None, []


def select_least_loaded(
    candidates: Sequence[CourierCandidate],
    rng: Optional[random.Random] = None,
) -> CourierCandidate:
    """Uniform random pick among the candidates sharing the minimum workload."""
    if not candidates:
        raise ValueError("select_least_loaded() needs at least one candidate")
    rng = rng or random
    min_workload = min(c.workload for c in candidates)
    best = [c for c in candidates if c.workload == min_workload]
    return rng.choice(best)


async def auto_assign_order(
    session: AsyncSession,
    order_id: int,
    *,
    changed_by: Optional[int] = None,
    target_status: DeliveryStatus = DeliveryStatus.ASSIGNED,
    default_capacity: int = DEFAULT_MAX_ACTIVE_ORDERS,
    rng: Optional[random.Random] = None,
    broadcaster: Optional[Broadcaster] = None,
    parent_rule: AggregationRule = AggregationRule.ALL,
    bot: Optional[Bot] = None,
) -> Optional[AssignmentResult]:
    """
    Assign an order to the least loaded courier.

    The order update and its history row are written in one transaction,
    after locking the order and the courier pool.

    Args:
        session: DB session
        order_id: Delivery order id
        changed_by: User that triggered the assignment (history)
        target_status: Status the order moves to
        default_capacity: Capacity of couriers without max_active_orders
        rng: Random source for the tie-break
        broadcaster: Hub for the assignment events
        parent_rule: Rule used to re-sync linked parent orders
        bot: Telegram bot for parent "ready" pushes

    Returns:
        AssignmentResult, or None when a manual order keeps its courier

    Raises:
        NotFoundException: the order does not exist or is deleted
        NoCouriersAvailableException: there are no couriers at all
    """
    logger.info("[Auto-Assign] Looking for a courier for order #%s", order_id)

    try:
        stmt = (
            select(DeliveryOrder)
            .where(DeliveryOrder.id == order_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        order = (await session.execute(stmt)).scalar_one_or_none()
        if order is None or order.is_deleted:
            raise NotFoundException("Order", order_id)

        if order.order_type == OrderType.MANUAL and order.courier_id:
            order.status = target_status
            await session.commit()
            logger.info(
                "[Auto-Assign] Manual order #%s already has courier #%s, status set to %s",
                order_id, order.courier_id, target_status.value,
            )
            return None

        await _lock_couriers(session)
        tier, candidates = await find_candidates(session, default_capacity)
        if not candidates:
            raise NoCouriersAvailableException(order_id)

        chosen = select_least_loaded(candidates, rng)
        order.courier_id = chosen.id
        order.status = target_status
        session.add(OrderHistory(
            order_id=order_id,
            status=DeliveryStatus.ASSIGNED.value,
            changed_by=changed_by,
            notes=f"Auto-assigned to courier {chosen.name} (workload: {chosen.workload} orders)",
        ))
        await session.commit()
    except NoCouriersAvailableException:
        await session.rollback()
        logger.error("[Auto-Assign] No couriers in the system for order #%s", order_id)
        raise
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "[Auto-Assign] Order #%s -> courier %s #%s (workload: %s, tier: %s)",
        order_id, chosen.name, chosen.id, chosen.workload, tier.value,
    )

    if broadcaster is not None:
        await broadcaster.emit("order-assigned", {
            "orderId": order_id, "courierId": chosen.id, "courierName": chosen.name,
        })
        await broadcaster.emit("order-status-changed", {"orderId": order_id, "status": target_status.value})
        await broadcaster.emit("booking-updated", {"deliveryOrderId": order_id, "status": target_status.value})

    await resync_after_commit(session, order_id, parent_rule, broadcaster, bot)

    return AssignmentResult(
        order_id=order_id,
        courier_id=chosen.id,
        courier_name=chosen.name,
        workload=chosen.workload,
        tier=tier,
        status=target_status,
    )
