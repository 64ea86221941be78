"""Celery task for the scheduled login security sweep."""

import asyncio

from login_security.services.login_security_service import LoginSecurityService, create_login_security_service
from login_security.workers.celery_app import celery_app


async def run_cleanup(service: LoginSecurityService | None = None) -> dict:
    """Sweep once and release the store if this call created it."""
    owned = service is None
    service = service or create_login_security_service()
    try:
        result = await service.cleanup_expired_data()
    finally:
        if owned:
            await service.close()
    return result.model_dump()


@celery_app.task(name="tasks.login_security_cleanup", queue="default")
def login_security_cleanup_task():
    """Repair TTL-less keys (Redis) or drop expired entries (in-memory store)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(run_cleanup())
    finally:
        loop.close()
