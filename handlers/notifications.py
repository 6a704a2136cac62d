from typing import List

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import User
from middlewares.auth_middleware import get_current_user
from middlewares.db_middleware import get_session
from services import notifications
from services.exceptions import NotFoundException
from services.validation import NotificationOut

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationOut])
async def my_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    return await notifications.list_notifications(session, user.id, limit)


@router.patch("/{notification_id}/read", response_model=NotificationOut)
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    notification = await notifications.mark_read(session, notification_id, user.id)
    if notification is None:
        raise NotFoundException("Notification", notification_id)
    return notification
