from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinauth import __version__
from clinauth.api.error_handling import register_exception_handlers
from clinauth.api.routes import resource_router, router
from clinauth.config import Settings, get_settings
from clinauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from clinauth.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc), error_type=type(exc).__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="clinauth", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag the request with X-Request-ID, generating one when absent."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(resource_router)

    @app.get("/healthz", tags=["health"])
    async def healthz():
        return {"status": "ok", "version": __version__}

    return app


app = create_app()
