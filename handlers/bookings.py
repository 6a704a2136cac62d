import random
from typing import Optional

from aiogram import Bot
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database.models import User
from handlers.deps import get_bot, get_config, get_hub, get_parent_rule, get_rng
from middlewares.auth_middleware import get_current_user
from middlewares.db_middleware import get_session
from services.booking_service import get_parent_order_view, update_booking_status
from services.parent_sync import AggregationRule
from services.realtime import ConnectionHub
from services.validation import BookingOut, ParentOrderOut, StatusUpdateInput

router = APIRouter(prefix="/api", tags=["bookings"])


@router.patch("/bookings/{booking_id}/status", response_model=BookingOut)
async def set_booking_status(
    booking_id: int,
    data: StatusUpdateInput,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    config: Config = Depends(get_config),
    hub: ConnectionHub = Depends(get_hub),
    bot: Optional[Bot] = Depends(get_bot),
    rng: Optional[random.Random] = Depends(get_rng),
    parent_rule: AggregationRule = Depends(get_parent_rule),
):
    return await update_booking_status(
        session, booking_id, data.status, user,
        broadcaster=hub, bot=bot, parent_rule=parent_rule,
        default_capacity=config.DEFAULT_MAX_ACTIVE_ORDERS, rng=rng,
    )


@router.get("/parent-orders/{parent_id}", response_model=ParentOrderOut)
async def get_parent_order(
    parent_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    parent_rule: AggregationRule = Depends(get_parent_rule),
):
    return await get_parent_order_view(session, parent_id, user, parent_rule)
