"""FastAPI dependency guarding the admin routes with an X-API-Key header."""

import secrets

import structlog
from fastapi import HTTPException, Request, status

from login_security.core.config import settings

logger = structlog.get_logger()


async def require_admin_api_key(request: Request) -> None:
    """Reject the request unless X-API-Key matches LOGIN_SECURITY_ADMIN_API_KEY."""
    expected = settings.LOGIN_SECURITY_ADMIN_API_KEY
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled",
        )

    api_key = request.headers.get("X-API-Key")
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
        )

    if not secrets.compare_digest(api_key.encode(), expected.encode()):
        logger.warning("admin_auth.invalid_api_key", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )

    structlog.contextvars.bind_contextvars(auth_method="api_key")
