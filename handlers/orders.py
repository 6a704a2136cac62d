import logging
import random
from typing import List, Optional

from aiogram import Bot
from fastapi import APIRouter, Body, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database.models import DeliveryStatus, User, UserRole
from handlers.deps import get_bot, get_config, get_hub, get_parent_rule, get_rng
from middlewares.auth_middleware import get_current_user, require_roles
from middlewares.db_middleware import get_session
from services.assignment import auto_assign_order
from services.order_service import DeliveryOrderService
from services.parent_sync import AggregationRule
from services.realtime import ConnectionHub
from services.status_levels import normalize_delivery_status
from services.validation import (
    AssignmentOut, AutoAssignInput, HistoryOut, OrderCreateInput, OrderFilters, OrderListOut, OrderOut,
    StatusUpdateInput,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


@router.post("", response_model=OrderOut, status_code=status.HTTP_201_CREATED)
async def create_order(
    data: OrderCreateInput,
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.SUPERVISOR, UserRole.COURIER)),
    session: AsyncSession = Depends(get_session),
    config: Config = Depends(get_config),
    hub: ConnectionHub = Depends(get_hub),
    bot: Optional[Bot] = Depends(get_bot),
    rng: Optional[random.Random] = Depends(get_rng),
):
    return await DeliveryOrderService.create_order(
        session, user, data, config=config, broadcaster=hub, bot=bot, rng=rng,
    )


@router.get("", response_model=OrderListOut)
async def list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    courier_id: Optional[int] = Query(default=None, alias="courierId"),
    supervisor_id: Optional[int] = Query(default=None, alias="supervisorId"),
    source: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    filters = OrderFilters(
        status=status_filter, courier_id=courier_id, supervisor_id=supervisor_id,
        source=source, search=search, page=page, limit=limit,
    )
    records, total = await DeliveryOrderService.list_orders(session, user, filters)
    return {"records": records, "total": total, "page": page, "limit": limit}


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    return await DeliveryOrderService.get_order(session, order_id, user)


@router.patch("/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: int,
    data: StatusUpdateInput,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    hub: ConnectionHub = Depends(get_hub),
    bot: Optional[Bot] = Depends(get_bot),
    parent_rule: AggregationRule = Depends(get_parent_rule),
):
    return await DeliveryOrderService.update_status(
        session, order_id, user, data.status, data.notes, data.latitude, data.longitude,
        broadcaster=hub, bot=bot, parent_rule=parent_rule,
    )


@router.post("/{order_id}/auto-assign", response_model=AssignmentOut)
async def auto_assign(
    order_id: int,
    data: Optional[AutoAssignInput] = Body(default=None),
    user: User = Depends(require_roles(UserRole.ADMIN, UserRole.SUPERVISOR)),
    session: AsyncSession = Depends(get_session),
    config: Config = Depends(get_config),
    hub: ConnectionHub = Depends(get_hub),
    bot: Optional[Bot] = Depends(get_bot),
    rng: Optional[random.Random] = Depends(get_rng),
):
    target_status = DeliveryStatus.ASSIGNED
    if data is not None and data.status:
        target_status = normalize_delivery_status(data.status)
    # supervisors only assign orders of their own team
    await DeliveryOrderService.get_order(session, order_id, user)

    result = await auto_assign_order(
        session,
        order_id,
        changed_by=user.id,
        target_status=target_status,
        default_capacity=config.DEFAULT_MAX_ACTIVE_ORDERS,
        rng=rng,
        broadcaster=hub,
        parent_rule=AggregationRule(config.PARENT_STATUS_RULE),
        bot=bot,
    )
    if result is None:
        # manual order kept its courier
        order = await DeliveryOrderService.get_order(session, order_id, user)
        return {"order_id": order.id, "courier_id": order.courier_id, "status": order.status}
    return {
        "order_id": result.order_id,
        "courier_id": result.courier_id,
        "courier_name": result.courier_name,
        "workload": result.workload,
        "tier": result.tier.value,
        "status": result.status,
    }


@router.delete("/{order_id}", response_model=OrderOut)
async def delete_order(
    order_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    hub: ConnectionHub = Depends(get_hub),
):
    return await DeliveryOrderService.soft_delete(session, order_id, user, broadcaster=hub)


@router.get("/{order_id}/history", response_model=List[HistoryOut])
async def order_history(
    order_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    return await DeliveryOrderService.get_history(session, order_id, user)
