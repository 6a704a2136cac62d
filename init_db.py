import asyncio
import logging

from config import config
from database.core import Base, create_engine
# Importing models ensures they are registered with Base.metadata
from database import models  # noqa: F401

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_db():
    engine = create_engine(config)
    try:
        async with engine.begin() as conn:
            # Production schemas go through Alembic; this is for quick setups.
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Tables created successfully.")
    finally:
        await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_db())
