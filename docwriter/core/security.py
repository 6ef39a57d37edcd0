"""Shared-secret guard for the ``/api`` router."""

import logging
import secrets

from fastapi import Depends
from fastapi import HTTPException
from fastapi.security import APIKeyHeader

from docwriter.core.config import settings

logger = logging.getLogger(__name__)

api_key_header = APIKeyHeader(name="X-API-Key")


async def verify_api_key(key: str = Depends(api_key_header)) -> bool:
    """FastAPI dependency comparing the ``X-API-Key`` header with ``settings.api_key``.

    With no key configured every request is refused.

    Raises:
        HTTPException: 403 when the key is missing on the server or does not match.
    """
    expected = settings.api_key
    if not expected:
        logger.critical("API_KEY is not configured; refusing all /api requests")
        raise HTTPException(status_code=403, detail="Invalid API Key")

    if not secrets.compare_digest(key.encode(), expected.encode()):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=403, detail="Invalid API Key")
    return True
