"""
Dependency injection of DB sessions.
"""
import logging
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from services.exceptions import BusinessException

logger = logging.getLogger(__name__)


class DatabaseUnavailableException(BusinessException):
    status_code = 503

    def __init__(self):
        super().__init__("Database connection error. Try again later.", "DB_UNAVAILABLE")


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    """One session per request, closed when the response is done."""
    session_maker = request.app.state.session_maker
    async with session_maker() as session:
        try:
            yield session
        except (OperationalError, ConnectionRefusedError) as e:
            logger.error("Database connection error: %s", e, exc_info=True)
            await session.rollback()
            raise DatabaseUnavailableException() from e
