import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from handlers.deps import get_config, get_hub
from middlewares.db_middleware import get_session
from services.realtime import ConnectionHub

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health(
    session: AsyncSession = Depends(get_session),
    config: Config = Depends(get_config),
    hub: ConnectionHub = Depends(get_hub),
):
    """Liveness plus a DB ping."""
    try:
        await session.execute(text("SELECT 1"))
        db_ok = True
    except Exception as e:
        logger.error("Health check DB ping failed: %s", e, exc_info=True)
        db_ok = False

    body = {
        "status": "ok" if db_ok else "degraded",
        "database": "up" if db_ok else "down",
        "socketUrl": config.SOCKET_URL,
        "connections": len(hub),
    }
    return JSONResponse(body, status_code=200 if db_ok else 503)
