"""
Operator authentication.

Bridge intake and status are public. Operator routes (mint retry) depend
on `verify_api_token`: with API_TOKEN set, the X-API-Key header must carry
it; with API_TOKEN unset they are open, which is only acceptable locally.
"""

import hmac
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import APIKeyHeader

from .config import Settings, get_settings

logger = structlog.get_logger()

OPERATOR_KEY_HEADER = "X-API-Key"

# Header only; query params end up in access logs
api_key_header = APIKeyHeader(name=OPERATOR_KEY_HEADER, auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": OPERATOR_KEY_HEADER},
    )


async def verify_api_token(
    request: Request,
    api_key: Optional[str] = Depends(api_key_header),
    settings: Settings = Depends(get_settings),
) -> bool:
    """
    Raises:
        HTTPException: 401 if a token is configured and missing or wrong
    """
    expected = settings.api_token
    if not expected:
        return True

    if not api_key:
        logger.warning("operator_auth_missing", path=request.url.path)
        raise _unauthorized(f"API token required. Provide via {OPERATOR_KEY_HEADER} header.")

    if not hmac.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("operator_auth_rejected", path=request.url.path)
        raise _unauthorized("Invalid API token")

    return True
