"""
Webhook authentication for Hotmart deliveries.

Validates HMAC-SHA256 signatures computed over the exact raw request body,
or the Hotmart hottok header when the account is configured for tokens.
"""
import hashlib
import hmac
import logging
import re
from typing import Mapping, Optional, Sequence

from ciliosclick.core.exceptions import SignatureInvalidError

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
DEFAULT_SIGNATURE_HEADERS = ("X-Signature", "X-Hotmart-Signature")
DEFAULT_HOTTOK_HEADER = "X-Hotmart-Hottok"
HEX_DIGEST_PATTERN = re.compile(r"[0-9a-fA-F]{64}")


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of body under secret."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(
    body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
) -> bool:
    """
    Validate a webhook signature.

    The body must be the bytes received on the wire: re-serializing a parsed
    JSON document changes key order, whitespace and number formatting.

    Args:
        body: Raw request body bytes
        signature_header: Header value, hex digest with optional "sha256=" prefix
        secret: Shared secret configured on Hotmart

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature_header:
        logger.warning("Missing signature header")
        return False

    if not secret:
        logger.warning("Webhook secret not configured, cannot verify signature")
        return False

    if not isinstance(body, (bytes, bytearray)):
        logger.warning("Webhook body must be raw bytes for signature verification")
        return False

    provided = signature_header
    if provided.startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]

    # fromhex tolerates whitespace; only a bare SHA-256 hex digest is accepted
    if not HEX_DIGEST_PATTERN.fullmatch(provided):
        logger.warning("Signature header is not a hex digest")
        return False
    provided_digest = bytes.fromhex(provided)

    computed_digest = hmac.new(secret.encode("utf-8"), bytes(body), hashlib.sha256).digest()

    # Compare signatures (constant-time comparison)
    if not hmac.compare_digest(provided_digest, computed_digest):
        logger.warning("Webhook signature validation failed")
        return False

    return True


def verify_hottok(token_header: Optional[str], expected_token: Optional[str]) -> bool:
    """Constant-time check of the Hotmart hottok header."""
    if not token_header or not expected_token:
        return False

    if not hmac.compare_digest(token_header.encode("utf-8"), expected_token.encode("utf-8")):
        logger.warning("Webhook hottok validation failed")
        return False

    return True


def authenticate_delivery(
    body: bytes,
    headers: Mapping[str, str],
    webhook_secret: Optional[str],
    hottok: Optional[str],
    signature_headers: Sequence[str] = DEFAULT_SIGNATURE_HEADERS,
    hottok_header: str = DEFAULT_HOTTOK_HEADER,
) -> bool:
    """
    Authenticate a webhook delivery with whichever configured method it presents.

    A signature header, when present, decides the outcome on its own: a bad
    signature is rejected even if a valid hottok accompanies it.

    Args:
        body: Raw request body bytes
        headers: Request headers (any mapping; lookups are case-insensitive)
        webhook_secret: HMAC secret, None when not configured
        hottok: Hotmart hottok, None when not configured
        signature_headers: Header names checked in order for the signature
        hottok_header: Header name carrying the hottok

    Returns:
        True if the delivery is authentic, False otherwise
    """
    lowered = {key.lower(): value for key, value in headers.items()}

    signature = next(
        (lowered[name.lower()] for name in signature_headers if lowered.get(name.lower())),
        None,
    )
    if signature is not None and webhook_secret:
        return verify_signature(body, signature, webhook_secret)

    token = lowered.get(hottok_header.lower())
    if token and hottok:
        return verify_hottok(token, hottok)

    if not webhook_secret and not hottok:
        logger.error("No webhook authentication configured; rejecting delivery")
    else:
        logger.warning("Webhook delivery carries no usable signature or hottok")
    return False


def verify_webhook(
    body: bytes,
    signature_header: Optional[str],
    secret: Optional[str],
) -> None:
    """
    Verify webhook signature, raising exception if invalid.

    Args:
        body: Raw request body bytes
        signature_header: Signature header value
        secret: Shared secret

    Raises:
        SignatureInvalidError: If signature is invalid
    """
    if not verify_signature(body, signature_header, secret):
        raise SignatureInvalidError("Invalid webhook signature")
