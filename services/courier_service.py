"""
Couriers, their availability and their supervisors.
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import CourierSupervisor, User, UserRole
from services.assignment import get_courier_workloads
from services.exceptions import NotFoundException, PermissionDeniedException, ValidationException
from services.realtime import Broadcaster

logger = logging.getLogger(__name__)


def _courier_dict(courier: User, workload: int) -> Dict[str, Any]:
    return {
        "id": courier.id,
        "name": courier.name,
        "phone": courier.phone,
        "is_available": courier.is_available,
        "is_online": courier.is_online,
        "max_active_orders": courier.max_active_orders,
        "latitude": courier.latitude,
        "longitude": courier.longitude,
        "last_location_update": courier.last_location_update,
        "workload": workload,
    }


async def get_courier(session: AsyncSession, courier_id: int) -> User:
    courier = await session.get(User, courier_id, populate_existing=True)
    if courier is None or courier.role != UserRole.COURIER:
        raise NotFoundException("Courier", courier_id)
    return courier


async def list_couriers(
    session: AsyncSession,
    supervisor_id: Optional[int] = None,
    available_only: bool = False,
) -> List[Dict[str, Any]]:
    """
    Couriers with their current workload.

    Args:
        session: DB session
        supervisor_id: Only couriers linked to this supervisor
        available_only: Only couriers marked available
    """
    stmt = select(User).where(User.role == UserRole.COURIER).order_by(User.name, User.id)
    if supervisor_id is not None:
        stmt = stmt.join(CourierSupervisor, CourierSupervisor.courier_id == User.id).where(
            CourierSupervisor.supervisor_id == supervisor_id
        )
    if available_only:
        stmt = stmt.where(User.is_available.is_(True))

    couriers = list((await session.execute(stmt)).scalars().all())
    workloads = await get_courier_workloads(session, [c.id for c in couriers])
    return [_courier_dict(c, workloads.get(c.id, 0)) for c in couriers]


async def set_availability(
    session: AsyncSession,
    courier_id: int,
    is_available: bool,
    user: User,
    broadcaster: Optional[Broadcaster] = None,
) -> User:
    if user.role == UserRole.COURIER and user.id != courier_id:
        raise PermissionDeniedException("Couriers can only change their own availability")
    if user.role not in (UserRole.COURIER, UserRole.ADMIN, UserRole.SUPERVISOR):
        raise PermissionDeniedException()

    courier = await get_courier(session, courier_id)
    courier.is_available = is_available
    await session.commit()

    logger.info("Courier #%s availability -> %s (by user %s)", courier_id, is_available, user.id)
    if broadcaster is not None:
        await broadcaster.emit("driver-status-changed", {
            "driverId": courier_id,
            "isAvailable": is_available,
            "status": "online" if courier.is_online else "offline",
        }, room="managers")
    return courier


async def _check_supervisor(session: AsyncSession, supervisor_id: int, user: User) -> User:
    if user.role == UserRole.SUPERVISOR and user.id != supervisor_id:
        raise PermissionDeniedException("Supervisors can only manage their own couriers")
    if user.role not in (UserRole.ADMIN, UserRole.SUPERVISOR):
        raise PermissionDeniedException()
    supervisor = await session.get(User, supervisor_id)
    if supervisor is None or supervisor.role != UserRole.SUPERVISOR:
        raise NotFoundException("Supervisor", supervisor_id)
    return supervisor


async def link_courier(session: AsyncSession, supervisor_id: int, courier_id: int, user: User) -> CourierSupervisor:
    await _check_supervisor(session, supervisor_id, user)
    await get_courier(session, courier_id)

    link = CourierSupervisor(courier_id=courier_id, supervisor_id=supervisor_id)
    session.add(link)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise ValidationException(
            "Courier is already linked to this supervisor",
            {"courier_id": courier_id, "supervisor_id": supervisor_id},
        )
    logger.info("Courier #%s linked to supervisor #%s", courier_id, supervisor_id)
    return link


async def unlink_courier(session: AsyncSession, supervisor_id: int, courier_id: int, user: User) -> None:
    await _check_supervisor(session, supervisor_id, user)
    result = await session.execute(
        delete(CourierSupervisor).where(
            CourierSupervisor.supervisor_id == supervisor_id,
            CourierSupervisor.courier_id == courier_id,
        )
    )
    if not result.rowcount:
        await session.rollback()
        raise NotFoundException("Courier link", f"{supervisor_id}/{courier_id}")
    await session.commit()
    logger.info("Courier #%s unlinked from supervisor #%s", courier_id, supervisor_id)


async def list_supervisor_couriers(session: AsyncSession, supervisor_id: int, user: User) -> List[Dict[str, Any]]:
    await _check_supervisor(session, supervisor_id, user)
    return await list_couriers(session, supervisor_id=supervisor_id)
