"""
Admin API for the account pool and the webhook audit log.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status

from ciliosclick.api.dependencies import get_current_admin_id
from ciliosclick.api.v1.routes.webhook import dispatch_recorded_delivery
from ciliosclick.api.v1.schemas import (
    AccountListResponse,
    AccountResponse,
    AllocationListResponse,
    AllocationResponse,
    ManualReleaseRequest,
    PoolStatsResponse,
    ReleaseResponse,
    SeedAccountsRequest,
    SeedAccountsResponse,
    WebhookAckResponse,
    WebhookEventListResponse,
    WebhookEventResponse,
)
from ciliosclick.core.dependencies import (
    get_account_id_from_path,
    get_allocator,
    get_audit_log,
    get_event_id_from_path,
    get_event_router,
    get_notifier,
)
from ciliosclick.core.exceptions import ValidationError
from ciliosclick.core.logging import log_operation
from ciliosclick.models.accounts import AccountStatusEnum
from ciliosclick.models.webhook_event import WebhookEvent
from ciliosclick.services.allocator import UserAllocator
from ciliosclick.services.audit_log import AuditLog
from ciliosclick.services.event_router import EventRouter
from ciliosclick.services.notifications import EmailNotifier

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["admin"])

ACCOUNT_STATUSES = {s.value for s in AccountStatusEnum}


def _event_response(event: WebhookEvent, include_payload: bool = False) -> WebhookEventResponse:
    return WebhookEventResponse(
        id=event.id,
        source=event.source,
        event_type=event.event_type,
        signature_valid=event.signature_valid,
        received_at=event.received_at,
        processed=event.processed,
        processed_at=event.processed_at,
        error_message=event.error_message,
        raw_payload=event.raw_payload.decode("utf-8", errors="replace") if include_payload else None,
    )


@router.get("/pool/stats", response_model=PoolStatsResponse)
async def get_pool_stats(
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> PoolStatsResponse:
    """Number of accounts per status and open allocations."""
    stats = await allocator.pool_stats()
    return PoolStatsResponse(
        available=stats.available,
        occupied=stats.occupied,
        suspended=stats.suspended,
        total=stats.total,
        open_allocations=stats.open_allocations,
        low_watermark=stats.low_watermark,
        is_low=stats.is_low,
    )


@router.get("/accounts", response_model=AccountListResponse)
async def list_accounts(
    status_filter: Optional[str] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> AccountListResponse:
    if status_filter is not None and status_filter not in ACCOUNT_STATUSES:
        raise ValidationError(
            detail=f"status must be one of {sorted(ACCOUNT_STATUSES)}",
            field="status",
            value=status_filter,
        )

    accounts, total = await allocator.list_accounts(status=status_filter, limit=limit, offset=offset)
    return AccountListResponse(
        items=[AccountResponse.model_validate(a) for a in accounts],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/accounts/seed", response_model=SeedAccountsResponse, status_code=status.HTTP_201_CREATED)
async def seed_accounts(
    request: SeedAccountsRequest,
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> SeedAccountsResponse:
    """Add available accounts to the pool."""
    result = await allocator.seed_accounts(
        count=request.count,
        prefix=request.prefix,
        email_domain=request.email_domain,
    )
    log_operation(logger, "admin_seed_accounts", admin_id=admin_id, seeded=result.created)
    return SeedAccountsResponse(
        created=result.created,
        first_username=result.first_username,
        last_username=result.last_username,
    )


@router.post("/accounts/{account_id}/suspend", response_model=AccountResponse)
async def suspend_account(
    account_id: uuid.UUID = Depends(get_account_id_from_path),
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> AccountResponse:
    account = await allocator.suspend(account_id)
    log_operation(logger, "admin_suspend_account", admin_id=admin_id, account_id=str(account_id))
    return AccountResponse.model_validate(account)


@router.post("/accounts/{account_id}/restore", response_model=AccountResponse)
async def restore_account(
    account_id: uuid.UUID = Depends(get_account_id_from_path),
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> AccountResponse:
    account = await allocator.restore(account_id)
    log_operation(logger, "admin_restore_account", admin_id=admin_id, account_id=str(account_id))
    return AccountResponse.model_validate(account)


@router.get("/allocations", response_model=AllocationListResponse)
async def list_allocations(
    active_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> AllocationListResponse:
    rows, total = await allocator.list_allocations(active_only=active_only, limit=limit, offset=offset)
    return AllocationListResponse(
        items=[
            AllocationResponse(
                id=record.id,
                account_id=record.pre_user_id,
                username=username,
                buyer_email=record.buyer_email,
                buyer_name=record.buyer_name,
                transaction_id=record.transaction_id,
                notification_id=record.notification_id,
                event=record.event,
                assigned_at=record.assigned_at,
                expires_at=record.expires_at,
                released_at=record.released_at,
                release_event=record.release_event,
                note=record.note,
            )
            for record, username in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/allocations/release", response_model=ReleaseResponse)
async def release_allocation(
    request: ManualReleaseRequest,
    admin_id: str = Depends(get_current_admin_id),
    allocator: UserAllocator = Depends(get_allocator),
) -> ReleaseResponse:
    """Release an allocation by hand (404 if it has no open allocation)."""
    result = await allocator.release(
        buyer_email=request.buyer_email,
        transaction_id=request.transaction_id,
        event=request.reason or "MANUAL_RELEASE",
    )
    log_operation(
        logger,
        "admin_release_allocation",
        admin_id=admin_id,
        transaction_id=request.transaction_id,
    )
    return ReleaseResponse(
        allocation_id=result.allocation_id,
        account_id=result.account_id,
        username=result.username,
        transaction_id=result.transaction_id,
        released_at=result.released_at,
        account_status=result.account_status,
    )


@router.get("/webhook-events", response_model=WebhookEventListResponse)
async def list_webhook_events(
    source: Optional[str] = Query(None),
    event_type: Optional[str] = Query(None),
    processed: Optional[bool] = Query(None),
    signature_valid: Optional[bool] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    admin_id: str = Depends(get_current_admin_id),
    audit: AuditLog = Depends(get_audit_log),
) -> WebhookEventListResponse:
    events, total = await audit.list_events(
        source=source,
        event_type=event_type,
        processed=processed,
        signature_valid=signature_valid,
        limit=limit,
        offset=offset,
    )
    return WebhookEventListResponse(
        items=[_event_response(e) for e in events],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/webhook-events/{event_id}", response_model=WebhookEventResponse)
async def get_webhook_event(
    event_id: uuid.UUID = Depends(get_event_id_from_path),
    admin_id: str = Depends(get_current_admin_id),
    audit: AuditLog = Depends(get_audit_log),
) -> WebhookEventResponse:
    event = await audit.get(event_id)
    return _event_response(event, include_payload=True)


@router.post("/webhook-events/{event_id}/replay", response_model=WebhookAckResponse)
async def replay_webhook_event(
    background_tasks: BackgroundTasks,
    event_id: uuid.UUID = Depends(get_event_id_from_path),
    admin_id: str = Depends(get_current_admin_id),
    audit: AuditLog = Depends(get_audit_log),
    event_router: EventRouter = Depends(get_event_router),
    notifier: EmailNotifier = Depends(get_notifier),
) -> WebhookAckResponse:
    """
    Route a stored delivery again, e.g. after refilling an exhausted pool.

    Only deliveries that passed authentication can be replayed. Routing is
    idempotent on the transaction id, so replaying a processed delivery
    reports a duplicate.
    """
    event = await audit.get(event_id)
    if not event.signature_valid:
        raise ValidationError(
            detail="Only authenticated deliveries can be replayed",
            field="event_id",
            value=str(event_id),
        )

    log_operation(logger, "admin_replay_webhook", admin_id=admin_id, webhook_event_id=str(event_id))
    result = await dispatch_recorded_delivery(
        event_id, event.raw_payload, audit, event_router, notifier, background_tasks
    )
    return WebhookAckResponse(
        event=result.event,
        outcome=result.outcome,
        webhook_event_id=event_id,
        transaction_id=result.transaction_id,
        username=result.username,
        warning=result.warning,
    )
