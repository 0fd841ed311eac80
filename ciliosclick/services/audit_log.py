"""
Audit Log: append-only record of every webhook delivery.

Deliveries are stored exactly as received, before authentication gates any
processing, so rejected and malformed requests stay visible for forensics
and replay.
"""
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ciliosclick.core.exceptions import DatabaseError, NotFoundError
from ciliosclick.core.logging import get_logger
from ciliosclick.models.accounts import utcnow
from ciliosclick.models.webhook_event import WebhookEvent

logger = get_logger(__name__)

UNKNOWN_EVENT = "UNKNOWN"


class AuditLog:
    """Writes and reads WebhookEvent rows."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def record(
        self,
        source: str,
        event_type: Optional[str],
        raw_payload: bytes,
        signature_valid: bool,
    ) -> uuid.UUID:
        """
        Store a delivery before it is processed.

        Args:
            source: Sending system (e.g. "hotmart")
            event_type: Best-effort event name, UNKNOWN when it cannot be read
            raw_payload: Request body exactly as received
            signature_valid: Outcome of authentication

        Returns:
            Id of the audit record

        Raises:
            DatabaseError: If the record cannot be written; the request must fail
        """
        event = WebhookEvent(
            id=uuid.uuid4(),
            source=source,
            event_type=(event_type or UNKNOWN_EVENT)[:100],
            raw_payload=bytes(raw_payload),
            signature_valid=signature_valid,
            received_at=utcnow(),
            processed=False,
        )
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    session.add(event)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to write webhook audit record: {e}",
                extra={"source": source, "event_type": event.event_type},
                exc_info=True,
            )
            raise DatabaseError(
                detail="Failed to record webhook delivery",
                operation="audit_record",
            ) from e

        logger.info(
            f"Recorded {source} delivery {event.event_type} (signature_valid={signature_valid})",
            extra={
                "webhook_event_id": str(event.id),
                "source": source,
                "event_type": event.event_type,
                "signature_valid": signature_valid,
                "payload_bytes": len(event.raw_payload),
            },
        )
        return event.id

    async def mark_processed(self, event_id: uuid.UUID, error_message: Optional[str] = None) -> None:
        """Set the processing outcome; only processed, processed_at and error_message change."""
        await self._set_outcome(event_id, processed=True, error_message=error_message)

    async def mark_rejected(self, event_id: uuid.UUID, reason: str) -> None:
        """Record why a delivery was not processed (bad signature, malformed body)."""
        await self._set_outcome(event_id, processed=False, error_message=reason)

    async def _set_outcome(
        self,
        event_id: uuid.UUID,
        processed: bool,
        error_message: Optional[str],
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(WebhookEvent)
                        .where(WebhookEvent.id == event_id)
                        .values(
                            processed=processed,
                            processed_at=utcnow() if processed else None,
                            error_message=error_message[:2000] if error_message else None,
                        )
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError as e:
            raise DatabaseError(
                detail=f"Failed to update webhook audit record {event_id}",
                operation="audit_outcome",
            ) from e

        if result.rowcount == 0:
            raise NotFoundError("WebhookEvent", event_id)

    async def get(self, event_id: uuid.UUID) -> WebhookEvent:
        async with self._session_factory() as session:
            event = await session.get(WebhookEvent, event_id)
        if event is None:
            raise NotFoundError("WebhookEvent", event_id)
        return event

    async def list_events(
        self,
        source: Optional[str] = None,
        event_type: Optional[str] = None,
        processed: Optional[bool] = None,
        signature_valid: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookEvent], int]:
        """List deliveries newest first. Returns (page, total)."""
        filters = []
        if source:
            filters.append(WebhookEvent.source == source)
        if event_type:
            filters.append(WebhookEvent.event_type == event_type)
        if processed is not None:
            filters.append(WebhookEvent.processed == processed)
        if signature_valid is not None:
            filters.append(WebhookEvent.signature_valid == signature_valid)

        query = select(WebhookEvent)
        count_query = select(func.count()).select_from(WebhookEvent)
        if filters:
            query = query.where(*filters)
            count_query = count_query.where(*filters)

        async with self._session_factory() as session:
            total = await session.scalar(count_query)
            result = await session.execute(
                query.order_by(WebhookEvent.received_at.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all()), total or 0
