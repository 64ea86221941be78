from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request

from login_security.api.deps import CaptchaVerifier, get_captcha_verifier, get_login_security
from login_security.api.login_guard import enforce_login_security
from login_security.core.api_key_auth import require_admin_api_key
from login_security.core.config import SecurityConfig
from login_security.schemas.login_security import (
    CleanupResult,
    LoginAttemptStats,
    PrecheckRequest,
    SecurityContext,
)
from login_security.services.login_security_service import LoginSecurityService

router = APIRouter(prefix="/login-security", tags=["login-security"])


@router.get("/config", response_model=SecurityConfig, dependencies=[Depends(require_admin_api_key)])
async def get_config(service: Annotated[LoginSecurityService, Depends(get_login_security)]):
    return service.get_security_config()


@router.get("/stats", response_model=LoginAttemptStats, dependencies=[Depends(require_admin_api_key)])
async def get_stats(
    service: Annotated[LoginSecurityService, Depends(get_login_security)],
    identifier: Annotated[str | None, Query(max_length=320)] = None,
    ip: Annotated[str | None, Query(max_length=64)] = None,
):
    return await service.get_login_attempt_stats(identifier, ip)


@router.post("/precheck", response_model=SecurityContext)
async def precheck(
    body: PrecheckRequest,
    request: Request,
    service: Annotated[LoginSecurityService, Depends(get_login_security)],
    captcha_verifier: Annotated[CaptchaVerifier | None, Depends(get_captcha_verifier)],
):
    """Run the login guard without verifying credentials."""
    return await enforce_login_security(
        request,
        service,
        body.identifier,
        captcha_token=body.captcha_token,
        captcha_verifier=captcha_verifier,
    )


@router.post("/cleanup", response_model=CleanupResult, dependencies=[Depends(require_admin_api_key)])
async def cleanup(service: Annotated[LoginSecurityService, Depends(get_login_security)]):
    return await service.cleanup_expired_data()
