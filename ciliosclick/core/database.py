"""
Database connection management for PostgreSQL (async for the service, sync for scripts).
"""
import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ciliosclick.core.config import get_settings
from ciliosclick.core.exceptions import StorageUnavailableError
from ciliosclick.core.prometheus_metrics import storage_retries_total
from ciliosclick.models.accounts import AllocationRecord, Base, PreProvisionedAccount  # noqa: F401
from ciliosclick.models.webhook_event import WebhookEvent  # noqa: F401

settings = get_settings()
logger = logging.getLogger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, lock_not_available, query_canceled
TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014"})

# PostgreSQL async engine
pg_engine = create_async_engine(
    settings.DATABASE_URL,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_MAX_OVERFLOW,
    pool_pre_ping=True,
    pool_recycle=3600,
    echo=settings.DEBUG,
)

AsyncSessionLocal = async_sessionmaker(
    pg_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False,
)


@asynccontextmanager
async def get_db_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Get async PostgreSQL database session as context manager."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def is_transient_error(exc: BaseException) -> bool:
    """
    Whether a storage error is worth retrying.

    Deadlocks, serialization failures, lock/statement timeouts and dropped
    connections are transient; constraint violations and programming
    errors are not.
    """
    if isinstance(exc, asyncio.TimeoutError):
        return True
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = exc.orig
        error_code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if error_code in TRANSIENT_SQLSTATES:
            return True
        message = str(exc).lower()
        return "deadlock" in message or "serialization" in message
    return False


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    operation_name: str,
    max_retries: Optional[int] = None,
    base_delay: Optional[float] = None,
    timeout_seconds: Optional[float] = None,
) -> T:
    """
    Execute a database operation with bounded retry on transient errors.

    Each attempt runs in its own transaction (the operation opens and closes
    its session) and is cancelled after timeout_seconds.

    Args:
        operation: Async callable to execute
        operation_name: Name used in logs and metrics
        max_retries: Maximum number of attempts (defaults to DB_RETRY_ATTEMPTS)
        base_delay: Base delay in seconds for exponential backoff
        timeout_seconds: Per-attempt timeout (defaults to DB_TRANSACTION_TIMEOUT)

    Returns:
        Result of the operation

    Raises:
        StorageUnavailableError: If the operation keeps failing transiently
    """
    attempts = max_retries or settings.DB_RETRY_ATTEMPTS
    delay_base = settings.DB_RETRY_BASE_DELAY if base_delay is None else base_delay
    timeout = timeout_seconds or settings.DB_TRANSACTION_TIMEOUT

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(operation(), timeout=timeout)
        except Exception as e:
            if not is_transient_error(e):
                raise

            if attempt < attempts - 1:
                # Exponential backoff with jitter
                delay = delay_base * (2 ** attempt) + random.uniform(0, delay_base)
                storage_retries_total.labels(operation=operation_name).inc()
                logger.warning(
                    f"Transient storage error in {operation_name} "
                    f"(attempt {attempt + 1}/{attempts}): {type(e).__name__}. "
                    f"Retrying after {delay:.2f}s..."
                )
                await asyncio.sleep(delay)
                continue

            logger.error(
                f"{operation_name} failed after {attempts} attempts: {type(e).__name__}: {e}"
            )
            raise StorageUnavailableError(
                detail=f"Storage unavailable during {operation_name}",
                operation=operation_name,
            ) from e

    raise StorageUnavailableError(operation=operation_name)


# Synchronous PostgreSQL engine (for operational scripts)
_sync_pg_engine: Optional[Engine] = None


def get_sync_db_engine() -> Engine:
    """Get synchronous PostgreSQL engine for maintenance scripts."""
    global _sync_pg_engine
    if _sync_pg_engine is None:
        _sync_pg_engine = create_engine(
            settings.sync_database_url,
            pool_size=2,
            max_overflow=2,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=settings.DEBUG,
        )
        logger.info("Synchronous PostgreSQL engine created (psycopg2)")
    return _sync_pg_engine


async def close_db_engine() -> None:
    """Dispose the async engine pool."""
    await pg_engine.dispose()
    logger.info("PostgreSQL connection pool closed")
