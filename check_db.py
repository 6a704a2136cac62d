"""
Check the database connection.

Supports:
- PostgreSQL (postgresql+asyncpg)
- SQLite (sqlite+aiosqlite)

Usage: python check_db.py
"""
import asyncio
import logging
import sys

from sqlalchemy import func, inspect, select, text
from sqlalchemy.exc import OperationalError

from config import config
from database.core import create_engine, create_session_maker
from database.models import DeliveryOrder, ParentOrder, User, UserRole

logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')
logger = logging.getLogger(__name__)


async def check_connection() -> bool:
    """Connection, tables and a few counters."""
    print("=" * 60)
    print("Database connection check")
    print("=" * 60)
    print(f"Dialect: {config.DB_DIALECT}")
    if config.IS_SQLITE:
        print(f"URL: {config.DATABASE_URL}")
    else:
        print(f"Host: {config.DB_HOST}")
        print(f"Port: {config.DB_PORT}")
        print(f"Database: {config.DB_NAME}")
        print(f"User: {config.DB_USER}")
    print("-" * 60)

    engine = create_engine(config)
    session_maker = create_session_maker(engine)
    try:
        try:
            print("1. Connecting...", end=" ")
            async with engine.begin() as conn:
                if config.IS_SQLITE:
                    result = await conn.execute(text("SELECT sqlite_version()"))
                else:
                    result = await conn.execute(text("SELECT version()"))
                version = result.scalar()
                print("OK")
                if version:
                    print(f"   Version: {str(version).split(',')[0]}")
        except ConnectionRefusedError:
            print("FAILED")
            if config.IS_SQLITE:
                print("   Cannot open the SQLite file")
                print("   Fix: check SQLITE_PATH and file permissions")
            else:
                print("   PostgreSQL server is not running or unreachable")
                print("   Fix: start the PostgreSQL server")
            return False
        except OperationalError as e:
            print("FAILED")
            print(f"   {e}")
            if "password" in str(e).lower() or "authentication" in str(e).lower():
                print("   Authentication problem")
                print("   Fix: check DB_USER and DB_PASS in .env")
            elif "database" in str(e).lower() and "does not exist" in str(e).lower():
                print("   Database does not exist")
                print("   Fix: create it, then run 'python init_db.py'")
            return False
        except Exception as e:
            print("FAILED")
            print(f"   Unexpected error: {e}")
            return False

        try:
            print("\n2. Tables...", end=" ")
            async with engine.connect() as conn:
                tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
            if tables:
                print(f"found {len(tables)}")
                print(f"   Tables: {', '.join(tables)}")
            else:
                print("none found")
                print("   Fix: run 'python init_db.py' or 'alembic upgrade head'")
        except Exception as e:
            print(f"error while listing tables: {e}")

        try:
            print("\n3. Data...", end=" ")
            async with session_maker() as session:
                couriers = await session.scalar(
                    select(func.count(User.id)).where(User.role == UserRole.COURIER)
                )
                orders = await session.scalar(
                    select(func.count(DeliveryOrder.id)).where(DeliveryOrder.is_deleted.is_(False))
                )
                parents = await session.scalar(select(func.count(ParentOrder.id)))
            print("OK")
            print(f"   Couriers: {couriers}")
            print(f"   Delivery orders: {orders}")
            print(f"   Parent orders: {parents}")
        except Exception as e:
            print(f"error while counting rows: {e}")
    finally:
        await engine.dispose()

    print("\n" + "=" * 60)
    print("All checks passed")
    print("=" * 60)
    return True


async def main():
    success = await check_connection()
    if not success:
        print("\nUseful commands:")
        print("   - Create tables: python init_db.py")
        print("   - Run migrations: alembic upgrade head")
        sys.exit(1)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Critical error: {e}", exc_info=True)
        sys.exit(1)
