"""Settings resolved from the environment (and a local .env file)."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _value_from_sources(key: str, default: Any = None) -> Any:
    env_val = os.getenv(key)
    if env_val is not None:
        return env_val
    return default


def _as_str(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value
    return str(value)


def _as_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        normalized = value.strip().lower()
        return normalized in {"1", "true", "yes", "on"}
    return default


def _as_int(value: Any, default: int = 0) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    try:
        return int(str(value).strip())
    except (ValueError, TypeError):
        return default


def _as_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (ValueError, TypeError):
        return default


class Settings:
    """Database settings resolved from the environment."""

    DBCORE_DATABASE_URL: str = "sqlite:///.dbcore/dbcore.db"
    DBCORE_DATABASE_PATH: str = ""  # Read by PoolConfig.from_env()
    DBCORE_POOLED: bool = False
    DBCORE_POOL_MAX_SIZE: int = 16
    DBCORE_POOL_ACQUIRE_TIMEOUT: float = 5.0
    DBCORE_OPERATION_TIMEOUT: float = 30.0
    DBCORE_DEBUG_SQL: bool = False

    LOG_LEVEL: str = "INFO"

    @classmethod
    def _populate(cls) -> None:
        cls.DBCORE_DATABASE_URL = _as_str(
            _value_from_sources("DBCORE_DATABASE_URL", "sqlite:///.dbcore/dbcore.db")
        )
        cls.DBCORE_DATABASE_PATH = _as_str(_value_from_sources("DBCORE_DATABASE_PATH"), "")
        cls.DBCORE_POOLED = _as_bool(_value_from_sources("DBCORE_POOLED"), False)
        cls.DBCORE_POOL_MAX_SIZE = _as_int(_value_from_sources("DBCORE_POOL_MAX_SIZE"), 16)
        cls.DBCORE_POOL_ACQUIRE_TIMEOUT = _as_float(
            _value_from_sources("DBCORE_POOL_ACQUIRE_TIMEOUT"), 5.0
        )
        cls.DBCORE_OPERATION_TIMEOUT = _as_float(
            _value_from_sources("DBCORE_OPERATION_TIMEOUT"), 30.0
        )
        cls.DBCORE_DEBUG_SQL = _as_bool(_value_from_sources("DBCORE_DEBUG_SQL"), False)
        cls.LOG_LEVEL = _as_str(_value_from_sources("LOG_LEVEL", "INFO")).upper()

    @classmethod
    def refresh_from_env(cls) -> None:
        cls._populate()

    @classmethod
    def validate(cls) -> bool:
        errors = []

        if cls.DBCORE_POOL_MAX_SIZE < 1:
            errors.append("DBCORE_POOL_MAX_SIZE must be at least 1")
        if cls.DBCORE_POOL_ACQUIRE_TIMEOUT <= 0:
            errors.append("DBCORE_POOL_ACQUIRE_TIMEOUT must be positive")
        if cls.DBCORE_OPERATION_TIMEOUT <= 0:
            errors.append("DBCORE_OPERATION_TIMEOUT must be positive")

        if errors:
            logger.error("Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            return False

        return True

    @classmethod
    def log_config(cls) -> None:
        from ..db.base import sanitize_connection_string

        logger.info("dbcore configuration:")
        logger.info(f"  Database URL: {sanitize_connection_string(cls.DBCORE_DATABASE_URL)}")
        logger.info(f"  Pooled: {'yes' if cls.DBCORE_POOLED else 'no'}")
        logger.info(
            f"  Pool: max={cls.DBCORE_POOL_MAX_SIZE} acquire_timeout={cls.DBCORE_POOL_ACQUIRE_TIMEOUT}s"
        )
        logger.info(f"  Operation timeout: {cls.DBCORE_OPERATION_TIMEOUT}s")
        logger.info(f"  SQL debug logging: {'Enabled' if cls.DBCORE_DEBUG_SQL else 'Disabled'}")


# Populate class attributes on import
Settings.refresh_from_env()


def setup_logging(level_override: Optional[str] = None) -> None:
    """Configure root logging from LOG_LEVEL or an explicit override."""

    level_name = (level_override or Settings.LOG_LEVEL or "WARNING").upper()

    if level_name in {"NO", "NONE", "OFF"}:
        # Use a level above CRITICAL to ensure all logging is effectively disabled
        level = logging.CRITICAL + 10
    else:
        level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )

    logging.getLogger("dbcore").setLevel(level)

    # Driver loggers stay at INFO or higher
    noisy_logger_level = max(level, logging.INFO)
    for name in ("aiosqlite", "asyncpg"):
        logging.getLogger(name).setLevel(noisy_logger_level)
