"""
Pydantic schemas for the webhook payload and API request/response models.

All schemas include validation, examples, and descriptions for OpenAPI documentation.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Hotmart webhook payload

class WebhookBuyer(BaseModel):
    """Buyer block of a Hotmart notification."""
    model_config = ConfigDict(extra="ignore")

    email: Optional[str] = Field(None, description="Buyer email", examples=["buyer@example.com"])
    name: Optional[str] = Field(None, description="Buyer full name", examples=["Maria Silva"])

    @field_validator("email", "name")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v.strip() if v is not None else v


class WebhookPurchase(BaseModel):
    """Purchase block of a Hotmart notification."""
    model_config = ConfigDict(extra="ignore")

    transaction: Optional[str] = Field(
        None,
        description="Hotmart transaction code, the idempotency key",
        examples=["HP16015479281022"],
    )
    status: Optional[str] = Field(None, examples=["APPROVED"])

    @field_validator("transaction", mode="before")
    @classmethod
    def coerce_transaction(cls, v: Any) -> Any:
        # Some test payloads send numeric codes
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class PurchaseData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    buyer: Optional[WebhookBuyer] = None
    purchase: Optional[WebhookPurchase] = None
    product: Optional[Dict[str, Any]] = None


class WebhookPayload(BaseModel):
    """Hotmart notification body (postback v2)."""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = Field(None, description="Hotmart delivery id")
    event: str = Field(..., min_length=1, description="Event name", examples=["PURCHASE_APPROVED"])
    version: Optional[str] = Field(None, examples=["2.0.0"])
    creation_date: Optional[int] = Field(None, description="Epoch milliseconds")
    data: PurchaseData = Field(default_factory=PurchaseData)

    @field_validator("id", "version", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Any:
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        return v


# Webhook responses

class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to Hotmart for every accepted delivery."""

    received: bool = Field(True, description="Delivery was accepted")
    event: str = Field(..., description="Event name", examples=["PURCHASE_APPROVED"])
    outcome: str = Field(
        ...,
        description="allocated, duplicate, released, not_found, pool_exhausted or ignored",
        examples=["allocated"],
    )
    webhook_event_id: uuid.UUID = Field(..., description="Audit record id")
    transaction_id: Optional[str] = None
    username: Optional[str] = Field(None, description="Allocated or released account")
    warning: Optional[str] = Field(None, description="Set when the delivery needs operator attention")


# Admin API

class PoolStatsResponse(BaseModel):
    available: int
    occupied: int
    suspended: int
    total: int
    open_allocations: int
    low_watermark: int
    is_low: bool


class AccountResponse(BaseModel):
    """Pre-provisioned account (password hash never exposed)."""
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    username: str
    email: str
    status: str
    created_at: datetime
    updated_at: datetime


class AccountListResponse(BaseModel):
    items: List[AccountResponse]
    total: int
    limit: int
    offset: int


class SeedAccountsRequest(BaseModel):
    """Request schema for seeding accounts into the pool."""

    count: int = Field(..., ge=1, le=10000, description="Accounts to create", examples=[50])
    prefix: Optional[str] = Field(
        None,
        max_length=32,
        description="Username prefix (default POOL_USERNAME_PREFIX)",
        examples=["user"],
    )
    email_domain: Optional[str] = Field(
        None,
        max_length=200,
        description="Email domain (default POOL_EMAIL_DOMAIN)",
        examples=["ciliosclick.com"],
    )


class SeedAccountsResponse(BaseModel):
    created: int
    first_username: Optional[str]
    last_username: Optional[str]


class AllocationResponse(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    username: str
    buyer_email: str
    buyer_name: Optional[str]
    transaction_id: str
    notification_id: Optional[str]
    event: str
    assigned_at: datetime
    expires_at: Optional[datetime]
    released_at: Optional[datetime]
    release_event: Optional[str]
    note: Optional[str]


class AllocationListResponse(BaseModel):
    items: List[AllocationResponse]
    total: int
    limit: int
    offset: int


class ManualReleaseRequest(BaseModel):
    transaction_id: str = Field(..., min_length=1, max_length=255, examples=["HP16015479281022"])
    buyer_email: Optional[str] = Field(None, description="Only used for a mismatch warning")
    reason: Optional[str] = Field(None, max_length=100, examples=["MANUAL_RELEASE"])


class ReleaseResponse(BaseModel):
    allocation_id: uuid.UUID
    account_id: uuid.UUID
    username: str
    transaction_id: str
    released_at: datetime
    account_status: str


class WebhookEventResponse(BaseModel):
    """Audit record; the raw payload is returned decoded as UTF-8 (lossy)."""

    id: uuid.UUID
    source: str
    event_type: str
    signature_valid: bool
    received_at: datetime
    processed: bool
    processed_at: Optional[datetime]
    error_message: Optional[str]
    raw_payload: Optional[str] = None


class WebhookEventListResponse(BaseModel):
    items: List[WebhookEventResponse]
    total: int
    limit: int
    offset: int
