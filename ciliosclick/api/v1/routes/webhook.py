"""
Hotmart webhook endpoint.

Deliveries are authenticated against the raw body, recorded in the audit
log whatever the outcome, then routed to the account pool.
"""
import time
import uuid

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status

from ciliosclick.api.v1.schemas import WebhookAckResponse
from ciliosclick.core.config import get_settings
from ciliosclick.core.dependencies import (
    get_audit_log,
    get_event_router,
    get_log_context,
    get_notifier,
)
from ciliosclick.core.exceptions import PayloadMalformedError, SignatureInvalidError
from ciliosclick.core.logging import LogContext, get_logger, log_performance
from ciliosclick.core.prometheus_metrics import (
    webhook_deliveries_total,
    webhook_processing_duration_seconds,
    webhook_signature_failures_total,
)
from ciliosclick.core.webhook_validator import authenticate_delivery
from ciliosclick.services.audit_log import UNKNOWN_EVENT, AuditLog
from ciliosclick.services.event_router import (
    APPROVAL_EVENTS,
    RELEASE_EVENTS,
    EventRouter,
    HandlerResult,
    parse_payload,
    peek_event_type,
)
from ciliosclick.services.notifications import EmailNotifier

settings = get_settings()
logger = get_logger(__name__)
router = APIRouter(tags=["webhook"])


def _metric_event(event_type: str) -> str:
    # Keep label cardinality bounded: event names come from the request body
    if event_type in APPROVAL_EVENTS or event_type in RELEASE_EVENTS:
        return event_type
    return "other"


async def dispatch_recorded_delivery(
    event_id: uuid.UUID,
    body: bytes,
    audit: AuditLog,
    event_router: EventRouter,
    notifier: EmailNotifier,
    background_tasks: BackgroundTasks,
) -> HandlerResult:
    """
    Parse and route a delivery that is already in the audit log.

    Used for live deliveries and for admin replays.

    Raises:
        PayloadMalformedError: Body is not a valid notification (recorded on the audit row)
        StorageUnavailableError: Transient storage failure; the audit row stays unprocessed
    """
    try:
        payload = parse_payload(body)
        result = await event_router.route(payload)
    except PayloadMalformedError as e:
        await audit.mark_rejected(event_id, f"Malformed payload: {e.detail}")
        raise

    try:
        await audit.mark_processed(event_id, error_message=result.warning)
    except Exception:
        # Redeliveries come back as duplicates without the temporary password,
        # and background tasks are dropped with an error response
        if result.needs_welcome_email:
            logger.error(
                f"Audit update failed after allocating {result.username}, "
                f"sending credentials before failing the request",
                extra={"webhook_event_id": str(event_id), "transaction_id": result.transaction_id},
            )
            await notifier.send_welcome(result.allocation)
        raise

    if result.needs_welcome_email:
        background_tasks.add_task(notifier.send_welcome, result.allocation)

    return result


@router.post(
    "/webhook",
    response_model=WebhookAckResponse,
    status_code=status.HTTP_200_OK,
)
@router.post(
    f"{settings.API_V1_STR}/hotmart/webhook",
    response_model=WebhookAckResponse,
    status_code=status.HTTP_200_OK,
)
async def receive_hotmart_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    log_context: LogContext = Depends(get_log_context),
    audit: AuditLog = Depends(get_audit_log),
    event_router: EventRouter = Depends(get_event_router),
    notifier: EmailNotifier = Depends(get_notifier),
) -> WebhookAckResponse:
    """
    Receive a Hotmart purchase notification.

    Headers: X-Signature / X-Hotmart-Signature (sha256=<hex>, prefix optional)
    or X-Hotmart-Hottok.

    Responses:
        200: Processed, ignored, duplicate, unknown release, or pool exhausted (with warning)
        401: Authentication failed (delivery still recorded)
        400: Malformed payload
        503: Transient storage failure, safe to redeliver
    """
    start_time = time.time()

    # Exact bytes on the wire; never re-serialize before verification
    body = await request.body()

    with log_context:
        signature_valid = authenticate_delivery(
            body,
            request.headers,
            webhook_secret=settings.webhook_secret,
            hottok=settings.hottok,
            signature_headers=settings.signature_headers,
            hottok_header=settings.WEBHOOK_HOTTOK_HEADER,
        )
        event_type = peek_event_type(body) or UNKNOWN_EVENT

        event_id = await audit.record(
            source=settings.WEBHOOK_SOURCE,
            event_type=event_type,
            raw_payload=body,
            signature_valid=signature_valid,
        )

        if not signature_valid:
            webhook_signature_failures_total.labels(source=settings.WEBHOOK_SOURCE).inc()
            webhook_deliveries_total.labels(event=_metric_event(event_type), outcome="rejected").inc()
            await audit.mark_rejected(event_id, "Signature validation failed")
            raise SignatureInvalidError(context={"webhook_event_id": str(event_id)})

        try:
            result = await dispatch_recorded_delivery(
                event_id, body, audit, event_router, notifier, background_tasks
            )
        except PayloadMalformedError as e:
            webhook_deliveries_total.labels(event=_metric_event(event_type), outcome="malformed").inc()
            e.context["webhook_event_id"] = str(event_id)
            raise

        elapsed = time.time() - start_time
        webhook_deliveries_total.labels(event=_metric_event(result.event), outcome=result.outcome).inc()
        webhook_processing_duration_seconds.labels(event=_metric_event(result.event)).observe(elapsed)
        log_performance(
            logger,
            f"webhook {result.event} -> {result.outcome}",
            elapsed,
            webhook_event_id=str(event_id),
            event=result.event,
            outcome=result.outcome,
            transaction_id=result.transaction_id,
        )

    return WebhookAckResponse(
        event=result.event,
        outcome=result.outcome,
        webhook_event_id=event_id,
        transaction_id=result.transaction_id,
        username=result.username,
        warning=result.warning,
    )
