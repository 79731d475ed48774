"""
FastAPI application factory.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from aves.api.router import api_router
from aves.config import settings
from aves.dependencies import get_generation_service, get_task_runner
from aves.errors import AvesError
from aves.models.database import close_db, init_db
from aves.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    # Startup
    setup_logging()

    # Sentry init if configured
    if settings.SENTRY_DSN:
        import sentry_sdk
        from sentry_sdk.integrations.fastapi import FastApiIntegration
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            integrations=[FastApiIntegration()],
            traces_sample_rate=0.1,
        )

    if settings.DB_AUTO_CREATE:
        await init_db()

    # Jobs orphaned by a previous process are past their deadline by now or will be soon
    reaped = await get_generation_service().reap_stale_jobs()
    logger.info(
        "service_started",
        version=settings.APP_VERSION,
        vision_engine=settings.VISION_ENGINE,
        reaped_jobs=len(reaped),
    )

    yield

    # Shutdown
    await get_task_runner().shutdown()
    await close_db()


def _register_exception_handlers(app: FastAPI) -> None:

    @app.exception_handler(AvesError)
    async def aves_error_handler(request: Request, exc: AvesError):
        if exc.status_code >= 500:
            logger.error(
                "request_failed", path=request.url.path, error_code=exc.error_code, error=exc.message
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content=jsonable_encoder({"error": "Invalid request", "details": details}),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Aves Annotation Review",
        description="AI-generated bird annotations, human review and pattern learning.",
        version=settings.APP_VERSION,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS.split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Prometheus metrics endpoint
    if settings.PROMETHEUS_ENABLED:
        from prometheus_client import make_asgi_app
        metrics_app = make_asgi_app()
        app.mount("/metrics", metrics_app)

    _register_exception_handlers(app)

    # Include all API routes
    app.include_router(api_router)

    return app


# Application instance
app = create_app()
