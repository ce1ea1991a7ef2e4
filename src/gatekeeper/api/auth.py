"""
API key authentication.

A single key is configured for the daemon. When none is configured the
API is open, and is expected to listen on localhost only.
"""

from __future__ import annotations

import hashlib
import hmac
import logging

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def hash_api_key(key: str) -> str:
    """Hash an API key so the plain key is not kept in memory."""
    return hashlib.sha256(key.encode()).hexdigest()


class APIKeyManager:
    """Holds the configured API key hash and validates presented keys."""

    def __init__(self) -> None:
        self._key_hash: str | None = None

    @property
    def enabled(self) -> bool:
        return self._key_hash is not None

    def set_key(self, key: str | None) -> None:
        self._key_hash = hash_api_key(key) if key else None

    def validate_key(self, key: str) -> bool:
        """Check a presented key in constant time."""
        if self._key_hash is None:
            return True
        return hmac.compare_digest(hash_api_key(key), self._key_hash)


key_manager = APIKeyManager()


async def require_api_key(
    header_key: str | None = Security(api_key_header),
) -> None:
    """
    FastAPI dependency enforcing the X-API-Key header.

    Raises:
        HTTPException: If a key is configured and a valid one was not sent
    """
    if not key_manager.enabled:
        return

    if header_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not key_manager.validate_key(header_key):
        logger.warning("Rejected request with invalid API key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def init_auth(api_key: str | None = None) -> None:
    """
    Initialize authentication.

    Args:
        api_key: Key clients must send, or None to leave the API open
    """
    key_manager.set_key(api_key)
    if api_key:
        logger.info("API key authentication enabled")
    else:
        logger.warning("No API key configured, API is unauthenticated")
