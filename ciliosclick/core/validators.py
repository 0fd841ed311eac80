"""
Input validators for the CíliosClick provisioning service.

Provides validation functions for UUIDs, buyer emails, Hotmart transaction
ids and account seeding parameters.
"""
import re
import uuid
from typing import Optional

from ciliosclick.core.exceptions import ValidationError

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
EMAIL_MAX_LENGTH = 254
USERNAME_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9_]{0,31}$")


def validate_uuid(value: str, field_name: str = "id") -> uuid.UUID:
    """
    Validate and parse UUID string.

    Args:
        value: UUID string
        field_name: Field name for error messages

    Returns:
        Parsed UUID

    Raises:
        ValidationError: If UUID is invalid
    """
    try:
        return uuid.UUID(value)
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(
            detail=f"Invalid {field_name} format: must be a valid UUID",
            field=field_name,
            value=value,
        ) from e


def validate_email(value: Optional[str], field_name: str = "email") -> str:
    """
    Validate and normalize an email address (stripped, lower-cased).

    Raises:
        ValidationError: If the address is missing or malformed
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            detail=f"{field_name} is required",
            field=field_name,
            value=value,
        )

    value = value.strip().lower()
    if len(value) > EMAIL_MAX_LENGTH:
        raise ValidationError(
            detail=f"{field_name} must be at most {EMAIL_MAX_LENGTH} characters",
            field=field_name,
            value=value[:32],
        )

    if not EMAIL_PATTERN.match(value):
        raise ValidationError(
            detail=f"{field_name} is not a valid email address",
            field=field_name,
            value=value,
        )

    return value


def validate_transaction_id(value: Optional[str], field_name: str = "transaction_id") -> str:
    """Hotmart transaction codes are opaque, non-empty strings of at most 255 chars."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            detail=f"{field_name} is required",
            field=field_name,
            value=value,
        )

    value = value.strip()
    if len(value) > 255:
        raise ValidationError(
            detail=f"{field_name} must be at most 255 characters",
            field=field_name,
            value=value[:32],
        )

    return value


def validate_username_prefix(value: str, field_name: str = "prefix") -> str:
    """
    Validate the username prefix used when seeding accounts.

    Raises:
        ValidationError: If prefix is not lowercase alphanumeric
    """
    if not isinstance(value, str) or not USERNAME_PREFIX_PATTERN.match(value):
        raise ValidationError(
            detail=f"{field_name} must start with a letter and contain only a-z, 0-9 or _",
            field=field_name,
            value=value,
        )
    return value


def sanitize_string(value: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """
    Sanitize free-text input (whitespace, control characters, length).

    Args:
        value: String value
        max_length: Maximum length (None for no limit)

    Returns:
        Sanitized string or None
    """
    if value is None:
        return None

    if not isinstance(value, str):
        return None

    # Drop control characters, keep ordinary whitespace
    value = "".join(ch for ch in value if ch.isprintable() or ch in " \t")
    value = value.strip()

    if not value:
        return None

    if max_length and len(value) > max_length:
        value = value[:max_length]

    return value
