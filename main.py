"""
Qareeblak delivery backend.
Run: uvicorn main:app --host 0.0.0.0 --port 8000
"""
import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager, suppress
from logging.handlers import RotatingFileHandler
from typing import Optional

from aiogram import Bot
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from sqlalchemy import text
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from config import Config, config as default_config
from database.core import Base, create_engine, create_session_maker
from handlers import bookings, couriers, health, notifications, orders, tracking
from middlewares.logging_middleware import LoggingMiddleware
from middlewares.rate_limit import RateLimitMiddleware, create_rate_limiter
from services.exceptions import BusinessException
from services.locations import init_location_store, run_stale_location_sweep
from services.realtime import ConnectionHub

logger = logging.getLogger(__name__)


def setup_logging(config: Config) -> None:
    """Root logging: stdout plus a rotating file."""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    handlers = [logging.StreamHandler(sys.stdout)]
    if config.LOG_FILE:
        handlers.append(
            RotatingFileHandler(
                config.LOG_FILE,
                maxBytes=10*1024*1024,  # 10 MB
                backupCount=5,
                encoding='utf-8'
            )
        )
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format=log_format,
        handlers=handlers,
    )


async def wait_for_db(engine: AsyncEngine, config: Config, max_wait: float = 60, max_delay: float = 10) -> None:
    """
    Wait for the DB at startup so the server does not die while PostgreSQL is still coming up.
    """
    deadline = time.monotonic() + max_wait
    attempt = 0

    while True:
        attempt += 1
        try:
            async with engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return
        except Exception as e:
            # retry only connection/engine errors, not logic errors
            retryable = isinstance(e, (OperationalError, SQLAlchemyError, ConnectionRefusedError, OSError)) or (
                e.__class__.__module__.startswith("asyncpg.")
            )
            if not retryable:
                raise
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error("Database is unreachable: %s", e, exc_info=True)
                logger.error(
                    "Connection settings: DB_DIALECT=%s DB_HOST=%s DB_PORT=%s DB_NAME=%s DB_USER=%s",
                    config.DB_DIALECT, config.DB_HOST, config.DB_PORT, config.DB_NAME, config.DB_USER,
                )
                logger.error("Check that the server is running and the .env settings, then run: python check_db.py")
                raise

            delay = min(max_delay, 1.0 * (2 ** min(attempt - 1, 6)))
            delay = min(delay, max(1.0, remaining))
            logger.warning(
                "DB not ready (attempt=%s). Retry in %.1fs (remaining=%.1fs). err=%s",
                attempt,
                delay,
                remaining,
                repr(e),
            )
            await asyncio.sleep(delay)


async def _connect_redis(config: Config):
    if not config.REDIS_ENABLED:
        return None
    try:
        import redis.asyncio as redis
        redis_client = redis.Redis(
            host=config.REDIS_HOST,
            port=config.REDIS_PORT,
            db=config.REDIS_DB,
            password=config.REDIS_PASSWORD,
            decode_responses=True
        )
        await redis_client.ping()
        logger.info("Connected to Redis at %s:%s", config.REDIS_HOST, config.REDIS_PORT)
        return redis_client
    except Exception as e:
        logger.warning("Redis not available, using in-memory state: %s", e)
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    config: Config = app.state.config
    setup_logging(config)
    logger.info("Starting server...")
    logger.info("DB_DIALECT=%s DATABASE_URL=%s", config.DB_DIALECT, config.DATABASE_URL)

    engine = create_engine(config)
    app.state.engine = engine
    app.state.session_maker = create_session_maker(engine)

    await wait_for_db(engine, config)

    # SQLite always gets its tables so the project works out of the box
    if config.IS_SQLITE:
        logger.info("SQLite mode: ensuring tables exist (create_all)...")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    redis_client = await _connect_redis(config)
    app.state.location_store = await init_location_store(redis_client, config.LOCATION_TTL_SECONDS)
    app.state.rate_limiter = await create_rate_limiter(
        redis_client=redis_client,
        max_calls=config.RATE_LIMIT_MAX,
        period=config.RATE_LIMIT_PERIOD
    )
    app.state.hub = ConnectionHub()

    bot: Optional[Bot] = None
    if config.BOT_TOKEN:
        bot = Bot(token=config.BOT_TOKEN)
        logger.info("Telegram push notifications enabled")
    app.state.bot = bot

    sweep = asyncio.create_task(run_stale_location_sweep(
        app.state.session_maker,
        hours=config.STALE_LOCATION_HOURS,
        interval_seconds=config.STALE_LOCATION_SWEEP_SECONDS,
        store=app.state.location_store,
    ))
    logger.info("Server started")

    try:
        yield
    finally:
        sweep.cancel()
        with suppress(asyncio.CancelledError):
            await sweep
        if bot is not None:
            await bot.session.close()
        if redis_client is not None:
            await redis_client.aclose()
        await engine.dispose()
        logger.info("Server stopped")


async def business_exception_handler(request: Request, exc: BusinessException) -> JSONResponse:
    logger.info("%s %s -> %s %s: %s", request.method, request.url.path, exc.status_code, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"status": "fail", "error": exc.message, "code": exc.code, "details": exc.details}),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "status": "fail",
            "error": "Validation failed",
            "code": "VALIDATION_ERROR",
            "details": {"errors": exc.errors()},
        }),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "UNHANDLED %s %s trace=%s err=%s",
        request.method,
        request.url.path,
        getattr(request.state, "trace_id", None),
        repr(exc),
        exc_info=(type(exc), exc, exc.__traceback__),
    )
    return JSONResponse(status_code=500, content={"status": "error", "error": "Internal server error"})


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Application factory; tests pass their own Config."""
    config = config or default_config
    app = FastAPI(title="Qareeblak Delivery API", lifespan=lifespan, debug=config.DEBUG)
    app.state.config = config

    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(LoggingMiddleware, log_success=True)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS_LIST,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(BusinessException, business_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(orders.router)
    app.include_router(bookings.router)
    app.include_router(couriers.router)
    app.include_router(notifications.router)
    app.include_router(tracking.router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    try:
        uvicorn.run(app, host="0.0.0.0", port=8000)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
