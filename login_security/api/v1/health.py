from typing import Annotated

from fastapi import APIRouter, Depends

from login_security.api.deps import get_login_security
from login_security.schemas.common import HealthResponse
from login_security.services.login_security_service import LoginSecurityService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(service: Annotated[LoginSecurityService, Depends(get_login_security)]):
    store_status = "ok" if await service.store.ping() else "error"
    # Fail-open keeps logins flowing, so an unreachable store only degrades
    overall = "ok" if store_status == "ok" else "degraded"
    return HealthResponse(status=overall, store=store_status, store_backend=type(service.store).__name__)
