"""
X-API-Key check shared by every /api router.

A server without API_KEY accepts all requests in development and
rejects them in production.
"""
import logging
import secrets
from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _configured_key(request: Request) -> Optional[str]:
    settings = request.app.state.settings
    if settings.api_key:
        return settings.api_key
    if settings.is_production:
        logger.error("API_KEY is not set in a production environment; refusing request")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server authentication is not configured",
        )
    return None


async def verify_api_key(request: Request, provided: Optional[str] = Security(api_key_header)) -> Optional[str]:
    """
    Returns the accepted key, or None when the development API is open.

    Raises:
        HTTPException: 401 without a key, 403 with the wrong one
    """
    expected = _configured_key(request)
    if expected is None:
        return None

    if not provided:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Missing {API_KEY_HEADER} header",
        )
    # constant-time
    if not secrets.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Rejected request to {request.url.path}: invalid API key")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid API key")
    return provided
