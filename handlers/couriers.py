from typing import List

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import User, UserRole
from handlers.deps import get_hub
from middlewares.auth_middleware import get_current_user, require_roles
from middlewares.db_middleware import get_session
from services import courier_service
from services.assignment import get_courier_workloads
from services.realtime import ConnectionHub
from services.validation import AvailabilityInput, CourierOut, SupervisorLinkInput

router = APIRouter(prefix="/api", tags=["couriers"])

_staff = require_roles(UserRole.ADMIN, UserRole.SUPERVISOR)


@router.get("/couriers", response_model=List[CourierOut])
async def list_couriers(
    available: bool = False,
    user: User = Depends(_staff),
    session: AsyncSession = Depends(get_session),
):
    return await courier_service.list_couriers(session, available_only=available)


@router.patch("/couriers/{courier_id}/availability", response_model=CourierOut)
async def set_courier_availability(
    courier_id: int,
    data: AvailabilityInput,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    hub: ConnectionHub = Depends(get_hub),
):
    courier = await courier_service.set_availability(session, courier_id, data.is_available, user, broadcaster=hub)
    workloads = await get_courier_workloads(session, [courier.id])
    out = CourierOut.model_validate(courier)
    out.workload = workloads.get(courier.id, 0)
    return out


@router.post("/supervisors/{supervisor_id}/couriers", status_code=status.HTTP_201_CREATED)
async def link_courier(
    supervisor_id: int,
    data: SupervisorLinkInput,
    user: User = Depends(_staff),
    session: AsyncSession = Depends(get_session),
):
    link = await courier_service.link_courier(session, supervisor_id, data.courier_id, user)
    return {"supervisorId": link.supervisor_id, "courierId": link.courier_id}


@router.delete("/supervisors/{supervisor_id}/couriers/{courier_id}", status_code=status.HTTP_204_NO_CONTENT)
async def unlink_courier(
    supervisor_id: int,
    courier_id: int,
    user: User = Depends(_staff),
    session: AsyncSession = Depends(get_session),
):
    await courier_service.unlink_courier(session, supervisor_id, courier_id, user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/supervisors/{supervisor_id}/couriers", response_model=List[CourierOut])
async def supervisor_couriers(
    supervisor_id: int,
    user: User = Depends(_staff),
    session: AsyncSession = Depends(get_session),
):
    return await courier_service.list_supervisor_couriers(session, supervisor_id, user)
