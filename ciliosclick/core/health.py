"""
Health check utilities for the CíliosClick provisioning service.

Provides health checks for PostgreSQL and the level of the account pool,
and aggregated health status.
"""
import asyncio
from typing import Any, Dict

from sqlalchemy import func, select, text

from ciliosclick.core.config import get_settings
from ciliosclick.core.database import get_db_session_context
from ciliosclick.core.logging import get_logger
from ciliosclick.core.prometheus_metrics import pool_accounts
from ciliosclick.models.accounts import AccountStatusEnum, PreProvisionedAccount

settings = get_settings()
logger = get_logger(__name__)


async def check_postgresql() -> Dict[str, Any]:
    """
    Check PostgreSQL connection.

    Returns:
        Dict with status and details
    """
    try:
        async with get_db_session_context() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()

            return {
                "status": "healthy",
                "message": "PostgreSQL connection successful",
            }
    except Exception as e:
        logger.error(f"PostgreSQL health check failed: {e}", exc_info=True)
        return {
            "status": "unhealthy",
            "message": f"PostgreSQL connection failed: {str(e)}",
            "error": str(e),
        }


async def check_pool() -> Dict[str, Any]:
    """
    Check how many pre-provisioned accounts are left.

    Degraded below POOL_LOW_WATERMARK, unhealthy when empty: new buyers
    would get no account.
    """
    try:
        async with get_db_session_context() as session:
            rows = await session.execute(
                select(PreProvisionedAccount.status, func.count())
                .group_by(PreProvisionedAccount.status)
            )
            counts = {status: count for status, count in rows.all()}
    except Exception as e:
        logger.error(f"Pool health check failed: {e}", exc_info=True)
        return {
            "status": "unhealthy",
            "message": f"Pool check failed: {str(e)}",
            "error": str(e),
        }

    for account_status in AccountStatusEnum:
        pool_accounts.labels(status=account_status.value).set(counts.get(account_status.value, 0))

    available = counts.get(AccountStatusEnum.AVAILABLE.value, 0)
    if available == 0:
        status = "unhealthy"
        message = "Account pool exhausted"
    elif available < settings.POOL_LOW_WATERMARK:
        status = "degraded"
        message = f"Only {available} accounts available"
    else:
        status = "healthy"
        message = f"{available} accounts available"

    return {
        "status": status,
        "message": message,
        "available": available,
        "occupied": counts.get(AccountStatusEnum.OCCUPIED.value, 0),
        "suspended": counts.get(AccountStatusEnum.SUSPENDED.value, 0),
        "low_watermark": settings.POOL_LOW_WATERMARK,
    }


async def get_health_status() -> Dict[str, Any]:
    """
    Get aggregated health status for all components.

    Returns:
        Dict with overall status and component statuses
    """
    postgresql_status, pool_status = await asyncio.gather(
        check_postgresql(),
        check_pool(),
        return_exceptions=True,
    )

    if isinstance(postgresql_status, Exception):
        postgresql_status = {
            "status": "unhealthy",
            "message": f"PostgreSQL check raised exception: {str(postgresql_status)}",
        }

    if isinstance(pool_status, Exception):
        pool_status = {
            "status": "unhealthy",
            "message": f"Pool check raised exception: {str(pool_status)}",
        }

    # The database decides readiness; an empty pool only degrades it
    if postgresql_status.get("status") != "healthy":
        overall_status = "unhealthy"
    elif pool_status.get("status") == "healthy":
        overall_status = "healthy"
    else:
        overall_status = "degraded"

    return {
        "status": overall_status,
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "components": {
            "postgresql": postgresql_status,
            "pool": pool_status,
        },
    }
