"""Tollgate FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tollgate import __version__
from tollgate.config import get_settings
from tollgate.db import close_db, get_session_factory, init_db, session_scope
from tollgate.errors import TollgateError
from tollgate.logging import configure_logging
from tollgate.services.container import build_services
from tollgate.services.gc.lifecycle import init_gc_scheduler, shutdown_gc_scheduler
from tollgate.services.http import get_http_client, http_client_manager

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    configure_logging(settings.logging)

    # Startup
    logger.info("tollgate.startup", version=__version__)
    await init_db()

    await http_client_manager.startup(settings.upstream)

    services = build_services(
        settings,
        session_scope(get_session_factory()),
        get_http_client,
    )
    app.state.services = services

    await init_gc_scheduler(services, settings.reaper)

    yield

    # Shutdown
    logger.info("tollgate.shutdown")

    await shutdown_gc_scheduler()
    app.state.services = None

    await http_client_manager.shutdown()

    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Tollgate",
        description="API key and upstream token lifecycle service",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(TollgateError)
    async def tollgate_error_handler(request: Request, exc: TollgateError):
        request_id = getattr(request.state, "request_id", None)
        headers = None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after:
            headers = {"Retry-After": str(retry_after)}
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
            headers=headers,
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


# Create default app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tollgate.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )
