"""
Event Router: dispatches Hotmart notifications to the User Allocator.

Only a fixed allow-list of events touches the pool. Anything else is
acknowledged without processing so the provider does not keep retrying.
"""
import json
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from ciliosclick.api.v1.schemas import WebhookPayload
from ciliosclick.core.exceptions import (
    AllocationNotFoundError,
    PayloadMalformedError,
    PoolExhaustedError,
    ValidationError,
)
from ciliosclick.core.logging import LogContext, get_logger
from ciliosclick.services.allocator import AllocationResult, UserAllocator

logger = get_logger(__name__)

APPROVAL_EVENTS = frozenset({
    "PURCHASE_APPROVED",
    "PURCHASE_COMPLETE",
})

RELEASE_EVENTS = frozenset({
    "PURCHASE_CANCELED",
    "PURCHASE_CANCELLED",
    "PURCHASE_REFUNDED",
    "PURCHASE_CHARGEBACK",
})

OUTCOME_ALLOCATED = "allocated"
OUTCOME_DUPLICATE = "duplicate"
OUTCOME_RELEASED = "released"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_POOL_EXHAUSTED = "pool_exhausted"
OUTCOME_IGNORED = "ignored"


@dataclass
class HandlerResult:
    """What the router did with one notification."""
    event: str
    outcome: str
    transaction_id: Optional[str] = None
    username: Optional[str] = None
    warning: Optional[str] = None
    allocation: Optional[AllocationResult] = None

    @property
    def needs_welcome_email(self) -> bool:
        return self.outcome == OUTCOME_ALLOCATED and self.allocation is not None


def peek_event_type(raw_body: bytes) -> Optional[str]:
    """Event name for the audit record, or None if the body does not carry one."""
    try:
        document = json.loads(raw_body)
    except (ValueError, TypeError):
        return None
    if not isinstance(document, dict):
        return None
    event = document.get("event")
    return event if isinstance(event, str) and event else None


def parse_payload(raw_body: bytes) -> WebhookPayload:
    """
    Parse the raw request body into a WebhookPayload.

    Raises:
        PayloadMalformedError: Not UTF-8 JSON, not an object, or no event string
    """
    try:
        document = json.loads(raw_body)
    except (ValueError, TypeError) as e:
        raise PayloadMalformedError("Body is not valid JSON") from e

    if not isinstance(document, dict):
        raise PayloadMalformedError("Body must be a JSON object")

    event = document.get("event")
    if not isinstance(event, str) or not event.strip():
        raise PayloadMalformedError("Missing 'event' field", field="event")

    try:
        return WebhookPayload.model_validate(document)
    except PydanticValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ())) or None
        raise PayloadMalformedError(
            f"Invalid payload: {first.get('msg', 'validation failed')}",
            field=field,
        ) from e


def _require_purchase_fields(payload: WebhookPayload):
    buyer = payload.data.buyer
    purchase = payload.data.purchase
    if buyer is None or not buyer.email:
        raise PayloadMalformedError("Missing buyer email", field="data.buyer.email")
    if purchase is None or not purchase.transaction:
        raise PayloadMalformedError("Missing transaction id", field="data.purchase.transaction")
    return buyer, purchase


class EventRouter:
    """Maps an event name to an allocator operation and reports the outcome."""

    def __init__(self, allocator: UserAllocator):
        self.allocator = allocator

    async def route(self, payload: WebhookPayload) -> HandlerResult:
        """
        Dispatch one notification.

        Pool exhaustion and releases of unknown transactions are reported in
        the result rather than raised: neither is fixed by a redelivery.

        Raises:
            PayloadMalformedError: A routed event lacks buyer email or transaction id
            StorageUnavailableError: Transient storage failure, safe to redeliver
        """
        event = payload.event.strip().upper()

        if event in APPROVAL_EVENTS:
            return await self._handle_approval(event, payload)
        if event in RELEASE_EVENTS:
            return await self._handle_release(event, payload)

        logger.info(f"Ignoring Hotmart event {event}", extra={"event": event})
        return HandlerResult(event=event, outcome=OUTCOME_IGNORED)

    async def _handle_approval(self, event: str, payload: WebhookPayload) -> HandlerResult:
        buyer, purchase = _require_purchase_fields(payload)
        transaction_id = purchase.transaction

        with LogContext(transaction_id=transaction_id):
            try:
                allocation = await self.allocator.allocate(
                    buyer_email=buyer.email,
                    buyer_name=buyer.name,
                    transaction_id=transaction_id,
                    event=event,
                    notification_id=payload.id,
                )
            except PoolExhaustedError:
                return HandlerResult(
                    event=event,
                    outcome=OUTCOME_POOL_EXHAUSTED,
                    transaction_id=transaction_id,
                    warning="No pre-provisioned account available; provision more accounts and replay",
                )
            except ValidationError as e:
                raise PayloadMalformedError(e.detail, field=e.context.get("field")) from e

        return HandlerResult(
            event=event,
            outcome=OUTCOME_DUPLICATE if allocation.duplicate else OUTCOME_ALLOCATED,
            transaction_id=transaction_id,
            username=allocation.username,
            allocation=allocation,
        )

    async def _handle_release(self, event: str, payload: WebhookPayload) -> HandlerResult:
        buyer, purchase = _require_purchase_fields(payload)
        transaction_id = purchase.transaction

        with LogContext(transaction_id=transaction_id):
            try:
                released = await self.allocator.release(
                    buyer_email=buyer.email,
                    transaction_id=transaction_id,
                    event=event,
                )
            except AllocationNotFoundError:
                logger.warning(
                    f"{event} for transaction {transaction_id} has no open allocation",
                    extra={"event": event},
                )
                return HandlerResult(
                    event=event,
                    outcome=OUTCOME_NOT_FOUND,
                    transaction_id=transaction_id,
                )
            except ValidationError as e:
                raise PayloadMalformedError(e.detail, field=e.context.get("field")) from e

        return HandlerResult(
            event=event,
            outcome=OUTCOME_RELEASED,
            transaction_id=transaction_id,
            username=released.username,
        )
