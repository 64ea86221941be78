from fastapi import APIRouter

from login_security.api.v1 import health, login_security

api_router = APIRouter(prefix="/api/v1")

api_router.include_router(login_security.router)
api_router.include_router(health.router)
