"""
In-app notifications with optional Telegram push.
"""
import logging
from typing import Optional

from aiogram import Bot
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import Notification, User
from services.realtime import Broadcaster

logger = logging.getLogger(__name__)


async def push_telegram(bot: Bot, chat_id: int, text: str) -> bool:
    """
    Send a notification through Telegram.

    Returns:
        True if the message was sent, False otherwise
    """
    try:
        await bot.send_message(chat_id=chat_id, text=text)
        logger.info("Telegram push sent to chat %s", chat_id)
        return True
    except Exception as e:
        logger.error("Failed to push notification to chat %s: %s", chat_id, e, exc_info=True)
        return False


async def create_notification(
    session: AsyncSession,
    user_id: int,
    message: str,
    type: str = "info",
    reference_id: Optional[int] = None,
    broadcaster: Optional[Broadcaster] = None,
    bot: Optional[Bot] = None,
) -> Notification:
    """
    Store a notification for a user and deliver it live.

    The row is committed first; the socket event and the Telegram push are
    best effort and never undo it.

    Args:
        session: DB session
        user_id: Recipient
        message: Text shown to the user
        type: Notification kind (order_ready, order_assigned, ...)
        reference_id: Related order id
        broadcaster: Hub used for the "new-notification" event
        bot: Telegram bot, when push is configured

    Returns:
        The stored Notification
    """
    notification = Notification(
        user_id=user_id,
        message=message,
        type=type,
        reference_id=reference_id,
    )
    session.add(notification)
    await session.commit()
    await session.refresh(notification)

    logger.info("Notification %s created for user %s (%s)", notification.id, user_id, type)

    if broadcaster is not None:
        await broadcaster.emit("new-notification", {
            "id": notification.id,
            "message": message,
            "type": type,
            "referenceId": reference_id,
        }, room=f"user-{user_id}")

    if bot is not None:
        chat_id = await session.scalar(select(User.telegram_chat_id).where(User.id == user_id))
        if chat_id:
            await push_telegram(bot, chat_id, message)

    return notification


async def list_notifications(session: AsyncSession, user_id: int, limit: int = 50) -> list[Notification]:
    stmt = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def mark_read(session: AsyncSession, notification_id: int, user_id: int) -> Optional[Notification]:
    stmt = select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    notification = (await session.execute(stmt)).scalar_one_or_none()
    if notification is None:
        return None
    notification.is_read = True
    await session.commit()
    return notification
