"""
Application configuration validated with Pydantic.
"""
from typing import List, Optional
from pathlib import Path
from pydantic import Field, field_validator, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Config(BaseSettings):
    """Application configuration with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DB_DIALECT: str = Field(default="sqlite", description="Database type: postgres or sqlite")
    DB_POOL_SIZE: int = Field(default=10, description="PostgreSQL connection pool size")
    DB_MAX_OVERFLOW: int = Field(default=10, description="Extra connections above pool_size")
    DB_USER: str = Field(default="postgres", description="Database user")
    DB_PASS: str = Field(default="postgres", description="Database password")
    DB_HOST: str = Field(default="localhost", description="Database host")
    DB_PORT: str = Field(default="5432", description="Database port")
    DB_NAME: str = Field(default="qareeblak", description="Database name")
    SQLITE_PATH: str = Field(default="qareeblak.sqlite3", description="SQLite file path")
    # Hosting platforms pass a single DATABASE_URL; it wins over the DB_* fields
    DATABASE_URL_OVERRIDE: Optional[str] = Field(default=None, description="Database URL", validation_alias="DATABASE_URL")

    @field_validator("DB_DIALECT")
    @classmethod
    def validate_db_dialect(cls, v: str) -> str:
        v = v.lower()
        if v not in ("postgres", "postgresql", "sqlite", "sqlite3"):
            raise ValueError(f"Unsupported database type: {v}")
        return v

    @computed_field
    @property
    def IS_SQLITE(self) -> bool:
        url = self.DATABASE_URL_OVERRIDE
        if url:
            return url.strip().startswith("sqlite")
        return self.DB_DIALECT in ("sqlite", "sqlite3")

    @computed_field
    @property
    def DATABASE_URL(self) -> str:
        """Connection URL. An explicit DATABASE_URL is used as-is, except for the asyncpg driver suffix."""
        raw = self.DATABASE_URL_OVERRIDE
        if raw:
            raw = raw.strip()
            # postgresql://... needs postgresql+asyncpg:// for the async engine
            if raw.startswith("postgresql://") and "+asyncpg" not in raw:
                return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
            return raw
        if self.DB_DIALECT in ("sqlite", "sqlite3"):
            base_dir = Path(__file__).resolve().parent
            db_path = Path(self.SQLITE_PATH)
            if not db_path.is_absolute():
                db_path = base_dir / db_path
            return f"sqlite+aiosqlite:///{db_path.resolve().as_posix()}"
        return f"postgresql+asyncpg://{self.DB_USER}:{self.DB_PASS}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    # Auth
    JWT_SECRET: str = Field(default="change-me-in-production", description="Secret used to sign access tokens")
    JWT_ALGORITHM: str = Field(default="HS256", description="JWT signing algorithm")
    TOKEN_EXP_HOURS: int = Field(default=24, description="Access token lifetime in hours")

    # Realtime
    SOCKET_URL: str = Field(default="ws://localhost:8000/ws", description="Public URL of the tracking WebSocket")
    CORS_ORIGINS: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Allowed CORS origins, comma separated"
    )

    @computed_field
    @property
    def CORS_ORIGINS_LIST(self) -> List[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    # Telegram push (optional)
    BOT_TOKEN: str = Field(default="", description="Telegram bot token for push notifications")

    # Redis
    REDIS_ENABLED: bool = Field(default=False, description="Use Redis for shared location state and rate limits")
    REDIS_HOST: str = Field(default="localhost", description="Redis host")
    REDIS_PORT: int = Field(default=6379, description="Redis port")
    REDIS_DB: int = Field(default=0, description="Redis database number")
    REDIS_PASSWORD: Optional[str] = Field(default=None, description="Redis password")
    LOCATION_TTL_SECONDS: int = Field(default=24 * 60 * 60, description="TTL of a cached courier location")

    # Dispatch
    DEFAULT_MAX_ACTIVE_ORDERS: int = Field(default=10, ge=1, description="Courier capacity when the user row has none")
    PARENT_STATUS_RULE: str = Field(default="all", description="Parent status rule: all or any")

    @field_validator("PARENT_STATUS_RULE")
    @classmethod
    def validate_parent_status_rule(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("all", "any"):
            raise ValueError(f"Unsupported parent status rule: {v}. Allowed: all, any")
        return v

    # Tracking
    LOCATION_ACCURACY_THRESHOLD_M: float = Field(default=520.0, gt=0, description="GPS readings less accurate than this are dropped")
    STALE_LOCATION_HOURS: int = Field(default=24, description="Courier locations older than this are cleared")
    STALE_LOCATION_SWEEP_SECONDS: int = Field(default=60 * 60, description="Interval of the stale location sweep")

    # Rate limiting (per client address)
    RATE_LIMIT_MAX: int = Field(default=300, description="Maximum requests per period")
    RATE_LIMIT_PERIOD: float = Field(default=60.0, description="Rate limit period in seconds")

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FILE: str = Field(default="server.log", description="Rotating log file, empty to disable")
    DEBUG: bool = Field(default=False, description="Debug mode")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        valid_levels = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        if v not in valid_levels:
            raise ValueError(f"Unsupported log level: {v}. Allowed: {valid_levels}")
        return v


try:
    config = Config()
except Exception as e:
    import sys
    print(f"Failed to load configuration: {e}", file=sys.stderr)
    sys.exit(1)
