"""
Exception hierarchy for the CíliosClick provisioning service.

All exceptions inherit from CiliosClickError and include structured error information
for consistent error handling and logging.
"""
from typing import Any, Dict, Optional


class CiliosClickError(Exception):
    """
    Base exception for all provisioning service errors.

    Attributes:
        status_code: HTTP status code for API responses
        error_code: Machine-readable error code
        detail: Human-readable error message
        context: Additional context (transaction_id, account_id, etc.)
    """

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize exception.

        Args:
            detail: Human-readable error message
            status_code: HTTP status code
            error_code: Machine-readable error code (defaults to class name)
            context: Additional context dictionary
        """
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert exception to dictionary for JSON responses.

        Returns:
            Dictionary with error information
        """
        return {
            "error": {
                "code": self.error_code,
                "message": self.detail,
                "context": self.context,
            }
        }


# Webhook intake

class WebhookError(CiliosClickError):
    """Base exception for inbound webhook errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 400,
        error_code: str = "WEBHOOK_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(detail, status_code, error_code, context)


class SignatureInvalidError(WebhookError):
    """Webhook signature or token did not authenticate the delivery."""

    def __init__(
        self,
        detail: str = "Webhook signature validation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=401,
            error_code="SIGNATURE_INVALID",
            context=context,
        )


class PayloadMalformedError(WebhookError):
    """Webhook body is not a structurally valid notification."""

    def __init__(
        self,
        detail: str,
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=400,
            error_code="PAYLOAD_MALFORMED",
            context={"field": field, **(context or {})},
        )


# Account pool

class AllocationError(CiliosClickError):
    """Base exception for account pool errors."""

    def __init__(
        self,
        detail: str,
        status_code: int = 500,
        error_code: str = "ALLOCATION_ERROR",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(detail, status_code, error_code, context)


class PoolExhaustedError(AllocationError):
    """No pre-provisioned account is available."""

    def __init__(
        self,
        transaction_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        detail = "No available pre-provisioned account left in the pool"
        if transaction_id:
            detail += f" (transaction {transaction_id})"
        super().__init__(
            detail=detail,
            status_code=409,  # Conflict
            error_code="POOL_EXHAUSTED",
            context={"transaction_id": transaction_id, **(context or {})},
        )


class AllocationNotFoundError(AllocationError):
    """No open allocation exists for the transaction."""

    def __init__(
        self,
        transaction_id: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=f"No open allocation for transaction {transaction_id}",
            status_code=404,
            error_code="ALLOCATION_NOT_FOUND",
            context={"transaction_id": transaction_id, **(context or {})},
        )


class AccountNotFoundError(AllocationError):
    """Pre-provisioned account not found."""

    def __init__(
        self,
        account_id: Any,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=f"Pre-provisioned account {account_id} not found",
            status_code=404,
            error_code="ACCOUNT_NOT_FOUND",
            context={"account_id": str(account_id), **(context or {})},
        )


class InvalidStatusTransitionError(AllocationError):
    """Requested account status change is not allowed from the current status."""

    def __init__(
        self,
        account_id: Any,
        current_status: str,
        target_status: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=(
                f"Account {account_id} cannot move from '{current_status}' "
                f"to '{target_status}'"
            ),
            status_code=409,
            error_code="INVALID_STATUS_TRANSITION",
            context={
                "account_id": str(account_id),
                "current_status": current_status,
                "target_status": target_status,
                **(context or {}),
            },
        )


class SeedConflictError(AllocationError):
    """Seeding kept colliding with usernames created concurrently."""

    def __init__(
        self,
        prefix: str,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=f"Could not seed accounts with prefix '{prefix}': usernames taken concurrently",
            status_code=409,
            error_code="SEED_CONFLICT",
            context={"prefix": prefix, **(context or {})},
        )


# Infrastructure

class StorageUnavailableError(CiliosClickError):
    """Transient storage failure that outlived the retry budget."""

    def __init__(
        self,
        detail: str = "Storage temporarily unavailable",
        operation: Optional[str] = None,
        retry_after: Optional[int] = 5,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=503,
            error_code="STORAGE_UNAVAILABLE",
            context={"operation": operation, "retry_after": retry_after, **(context or {})},
        )


class ValidationError(CiliosClickError):
    """Input validation error."""

    def __init__(
        self,
        detail: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=400,
            error_code="VALIDATION_ERROR",
            context={"field": field, "value": value, **(context or {})},
        )


class NotFoundError(CiliosClickError):
    """Resource not found."""

    def __init__(
        self,
        resource_type: str,
        resource_id: Any,
        context: Optional[Dict[str, Any]] = None,
    ):
        detail = f"{resource_type} with id {resource_id} not found"
        super().__init__(
            detail=detail,
            status_code=404,
            error_code="NOT_FOUND",
            context={"resource_type": resource_type, "resource_id": str(resource_id), **(context or {})},
        )


class DatabaseError(CiliosClickError):
    """Database operation error."""

    def __init__(
        self,
        detail: str,
        operation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=500,
            error_code="DATABASE_ERROR",
            context={"operation": operation, **(context or {})},
        )


class ConfigurationError(CiliosClickError):
    """Configuration error."""

    def __init__(
        self,
        detail: str,
        setting: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            detail=detail,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            context={"setting": setting, **(context or {})},
        )
