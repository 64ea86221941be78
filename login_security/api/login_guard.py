"""Pre-credential guard for login endpoints.

Call ``enforce_login_security`` before verifying a password, then report the
outcome with ``record_failed_attempt`` / ``record_successful_login``.
Responses never reveal whether the account or the address tripped the limit.
"""

import asyncio

import structlog
from fastapi import HTTPException, Request, status

from login_security.api.deps import CaptchaVerifier, get_client_ip
from login_security.core.config import settings
from login_security.schemas.login_security import SecurityContext
from login_security.services.login_security_service import LoginSecurityService

logger = structlog.get_logger()

LOCKED_DETAIL = "Too many failed login attempts. Please try again later."
CAPTCHA_DETAIL = "Captcha verification required"


async def _captcha_solved(token: str | None, verifier: CaptchaVerifier | None) -> bool:
    if not token or verifier is None:
        return False
    return await verifier(token)


async def enforce_login_security(
    request: Request,
    service: LoginSecurityService,
    identifier: str,
    captcha_token: str | None = None,
    captcha_verifier: CaptchaVerifier | None = None,
) -> SecurityContext:
    """Reject locked/blocked/captcha-gated attempts and apply the progressive delay.

    Returns the SecurityContext for the caller to attach to its own response.
    """
    if settings.LOGIN_SECURITY_DISABLED:
        return SecurityContext(attempts_remaining=service.get_security_config().max_attempts)

    ip = get_client_ip(request)
    user_agent = request.headers.get("user-agent")
    context = await service.get_security_context(identifier, ip, user_agent, headers=request.headers)

    if context.is_denied:
        logger.warning(
            "login_guard.denied",
            ip=ip,
            user_locked=context.is_locked,
            ip_blocked=context.is_ip_blocked,
        )
        raise HTTPException(status_code=status.HTTP_423_LOCKED, detail=LOCKED_DETAIL)

    if context.requires_captcha and not await _captcha_solved(captcha_token, captcha_verifier):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=CAPTCHA_DETAIL,
            headers={"X-Captcha-Required": "true"},
        )

    if context.delay_ms > 0:
        logger.info("login_guard.progressive_delay", ip=ip, delay_ms=context.delay_ms)
        await asyncio.sleep(context.delay_ms / 1000)

    return context
