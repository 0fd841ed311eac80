"""
JWT-based authentication dependencies for the admin API.
Validates RS256 tokens from the Auth Service using its public key.
"""
import logging
from typing import Any, Dict

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ciliosclick.core.config import get_settings

logger = logging.getLogger(__name__)
security = HTTPBearer(auto_error=True)

ADMIN_ROLES = frozenset({"admin", "superadmin"})


def _get_public_key_for_verify() -> str:
    """Return normalized PEM public key for jwt.decode."""
    settings = get_settings()
    return settings.jwt_public_key_pem


def _is_admin(payload: Dict[str, Any]) -> bool:
    if payload.get("is_admin") is True:
        return True
    role = payload.get("role")
    if isinstance(role, str) and role.lower() in ADMIN_ROLES:
        return True
    roles = payload.get("roles")
    if isinstance(roles, list):
        return any(isinstance(r, str) and r.lower() in ADMIN_ROLES for r in roles)
    return False


async def get_current_admin_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """
    Validate JWT from Authorization: Bearer <token> and require an admin.

    Verifies:
    - Signature with Auth Service public key (RS256)
    - Token expiration (exp)
    - Token type is "access" (not refresh or pre_auth)
    - MFA is verified (mfa_verified == True)
    - Admin role (is_admin, role or roles claim)

    Returns:
        admin user id (sub claim)

    Raises:
        HTTPException 401: If token is invalid, expired, or missing
        HTTPException 403: If the user is not an admin
        HTTPException 503: If JWT configuration is invalid
    """
    token = credentials.credentials
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        public_key = _get_public_key_for_verify()
        settings = get_settings()
        algorithm = settings.JWT_ALGORITHM or "RS256"

        payload = jwt.decode(
            token,
            public_key,
            algorithms=[algorithm],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require": ["exp", "sub", "type"],
            },
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired. Please refresh your token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid JWT token: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except ValueError as e:
        logger.error(f"JWT key configuration error: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Authentication service configuration error",
        )

    if payload.get("type") != "access":
        logger.warning(f"Invalid token type: {payload.get('type')}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type. Access token required.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("mfa_verified", False):
        logger.warning("Token without MFA verification")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="MFA verification required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if not user_id:
        logger.error("JWT payload missing 'sub' claim")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token: missing user identifier",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not _is_admin(payload):
        logger.warning(f"Non-admin user {user_id} attempted admin access")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required",
        )

    return str(user_id)
