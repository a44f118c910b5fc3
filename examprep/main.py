"""
Main FastAPI application entry point.
"""
from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_client import CollectorRegistry
from prometheus_fastapi_instrumentator import Instrumentator
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from examprep.api.admin import router as admin_router
from examprep.api.auth import router as auth_router
from examprep.api.cron import router as cron_router
from examprep.api.performance import router as performance_router
from examprep.api.subscription import router as subscription_router
from examprep.api.tests import router as tests_router
from examprep.api.uploads import router as uploads_router
from examprep.api.users import router as users_router
from examprep.api.webhooks import router as webhooks_router
from examprep.core.config import Settings, get_settings
from examprep.core.container import Container, build_container
from examprep.core.errors import EngineError, RateLimited

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def configure_sentry(settings: Settings) -> None:
    if settings.SENTRY_DSN:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
            ],
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        )


def create_app(container: Optional[Container] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the application.

    A prebuilt container (tests) is used as is; otherwise one is built from
    settings at startup and closed at shutdown.
    """
    settings = settings or (container.settings if container else get_settings())
    configure_logging(settings)
    configure_sentry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.APP_NAME} ({settings.ENVIRONMENT})...")
        owned = container is None
        app.state.container = container or build_container(settings)
        yield
        logger.info(f"Shutting down {settings.APP_NAME}...")
        if owned:
            app.state.container.close()
        logger.info("Shutdown complete")

    app = FastAPI(
        title=settings.APP_NAME,
        description=settings.APP_DESCRIPTION,
        version=settings.APP_VERSION,
        docs_url="/docs" if not settings.is_production() else None,
        redoc_url="/redoc" if not settings.is_production() else None,
        lifespan=lifespan,
    )
    if container is not None:
        # usable before startup runs, e.g. TestClient without a context manager
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=settings.CORS_ALLOW_METHODS,
        allow_headers=settings.CORS_ALLOW_HEADERS,
        expose_headers=["X-RateLimit-Remaining", "X-RateLimit-Reset"],
    )

    if settings.PROMETHEUS_ENABLED:
        # per-app registry so several apps can live in one process
        Instrumentator(registry=CollectorRegistry()).instrument(app).expose(app, endpoint="/metrics")

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        """Render domain errors in the common error envelope."""
        if exc.status_code >= 500:
            logger.error(f"{exc.kind} on {request.method} {request.url.path}: {exc.message} {exc.details}")
        headers = None
        if isinstance(exc, RateLimited):
            headers = {
                "X-RateLimit-Remaining": str(exc.remaining),
                "X-RateLimit-Reset": str(exc.reset_in),
                "Retry-After": str(exc.reset_in),
            }
        return JSONResponse(status_code=exc.status_code, content={"error": exc.to_dict()}, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Handle HTTP exceptions."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": {
                    "message": exc.detail,
                    "type": "http_error",
                    "status_code": exc.status_code
                }
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle validation errors."""
        return JSONResponse(
            status_code=422,
            content={
                "error": {
                    "message": "Validation error",
                    "type": "validation_error",
                    "details": exc.errors()
                }
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        message = "An internal error occurred" if settings.is_production() else str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"message": message, "type": "internal_error"}},
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT
        }

    prefix = settings.API_V1_PREFIX
    app.include_router(auth_router, prefix=f"{prefix}/auth", tags=["auth"])
    app.include_router(tests_router, prefix=f"{prefix}/tests", tags=["tests"])
    app.include_router(uploads_router, prefix=f"{prefix}/uploads", tags=["uploads"])
    app.include_router(performance_router, prefix=f"{prefix}/performance", tags=["performance"])
    app.include_router(subscription_router, prefix=f"{prefix}/subscription", tags=["subscription"])
    app.include_router(webhooks_router, prefix=f"{prefix}/webhooks", tags=["webhooks"])
    app.include_router(users_router, prefix=f"{prefix}/users", tags=["users"])
    app.include_router(cron_router, prefix=f"{prefix}/cron", tags=["cron"])
    app.include_router(admin_router, prefix=f"{prefix}/admin", tags=["admin"])
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "examprep.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        log_level=get_settings().LOG_LEVEL.lower(),
    )
