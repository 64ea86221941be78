from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from login_security.api.deps import CaptchaVerifier
from login_security.api.v1.router import api_router
from login_security.core.config import settings
from login_security.core.logging import setup_logging
from login_security.core.middleware import CorrelationIdMiddleware
from login_security.services.login_security_service import LoginSecurityService, create_login_security_service


def create_app(
    service: LoginSecurityService | None = None,
    captcha_verifier: CaptchaVerifier | None = None,
) -> FastAPI:
    """Build the application.

    The login security service is constructed once in the lifespan (a
    ConfigurationError aborts startup) unless one is injected, as tests do.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        owned = service is None
        app.state.login_security = create_login_security_service() if owned else service
        app.state.captcha_verifier = captcha_verifier
        try:
            yield
        finally:
            if owned:
                await app.state.login_security.close()

    application = FastAPI(
        title=settings.APP_NAME,
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware (last added = outermost = runs first)
    # CorrelationId must be inner so CORS handles OPTIONS preflight first
    application.add_middleware(CorrelationIdMiddleware)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes
    application.include_router(api_router)

    # Injected services are available without running the lifespan
    if service is not None:
        application.state.login_security = service
        application.state.captcha_verifier = captcha_verifier

    return application


app = create_app()
