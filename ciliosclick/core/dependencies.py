"""
Dependency injection functions for FastAPI.

Provides reusable dependency functions for common use cases. Services are
built from get_session_factory so tests can swap the database with
app.dependency_overrides.
"""
import uuid
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import async_sessionmaker

from ciliosclick.core.database import AsyncSessionLocal
from ciliosclick.core.logging import LogContext, get_logger
from ciliosclick.core.validators import validate_uuid
from ciliosclick.services.allocator import UserAllocator
from ciliosclick.services.audit_log import AuditLog
from ciliosclick.services.event_router import EventRouter
from ciliosclick.services.notifications import EmailNotifier, get_email_notifier

logger = get_logger(__name__)


def get_trace_id(
    x_trace_id: Optional[str] = Header(None, alias="X-Trace-Id"),
    x_request_id: Optional[str] = Header(None, alias="X-Request-Id"),
) -> str:
    """
    Extract or generate trace ID from request headers.

    Args:
        x_trace_id: X-Trace-Id header
        x_request_id: X-Request-Id header (fallback)

    Returns:
        Trace ID string
    """
    trace_id = x_trace_id or x_request_id

    if not trace_id:
        trace_id = str(uuid.uuid4())

    return trace_id


def get_log_context(
    trace_id: str = Depends(get_trace_id),
) -> LogContext:
    """Create log context for request."""
    return LogContext(trace_id=trace_id)


def get_account_id_from_path(account_id: str) -> uuid.UUID:
    """Validate and parse account_id from path parameter."""
    return validate_uuid(account_id, field_name="account_id")


def get_event_id_from_path(event_id: str) -> uuid.UUID:
    """Validate and parse event_id from path parameter."""
    return validate_uuid(event_id, field_name="event_id")


def get_session_factory() -> async_sessionmaker:
    """Session factory for the pool database."""
    return AsyncSessionLocal


def get_allocator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> UserAllocator:
    return UserAllocator(session_factory)


def get_audit_log(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AuditLog:
    return AuditLog(session_factory)


def get_event_router(
    allocator: UserAllocator = Depends(get_allocator),
) -> EventRouter:
    return EventRouter(allocator)


def get_notifier() -> EmailNotifier:
    return get_email_notifier()
