from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

from app.modules.billing.api.v1.dunning import router as dunning_router
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.exceptions import CommerceException
from app.shared.core.logging import setup_logging
from app.shared.core.tracing import setup_tracing

settings = get_settings()
setup_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME)

    from app.modules.billing.domain.billing.runtime import build_dunning_runtime
    from app.shared.core.http import (
        close_http_client,
        get_http_client,
        init_http_client,
    )
    from app.shared.db.session import get_engine, get_session_maker

    # Initialize Singleton HTTP Client before the gateway adapter captures it.
    await init_http_client()

    runtime = build_dunning_runtime(
        get_session_maker(), settings=settings, http_client=get_http_client()
    )
    if settings.TESTING:
        logger.info("retry_scheduler_skipped_in_testing")
    else:
        runtime.start()
    app.state.dunning = runtime

    yield

    logger.info("app_stopping")
    runtime.stop()
    await close_http_client()
    await get_engine().dispose()
    logger.info("db_engine_disposed")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)

__all__ = ["app", "lifespan"]

setup_tracing(app)


@app.exception_handler(CommerceException)
async def commerce_exception_handler(
    request: Request, exc: CommerceException
) -> JSONResponse:
    """Handle custom application exceptions."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_failed",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "http_error", "message": detail_text, "details": {}},
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": {"errors": [dict(e, ctx=None) for e in exc.errors()]},
        },
    )


@app.get("/health", tags=["Lifecycle"])
async def health(request: Request) -> Any:
    from app.shared.db.session import get_engine

    database = "ok"
    try:
        async with get_engine().connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001 - health must answer
        logger.warning("health_database_unreachable", error=str(exc))
        database = "unreachable"

    runtime = getattr(request.app.state, "dunning", None)
    scheduler = runtime.scheduler.get_status() if runtime else None
    status_code = 200 if database == "ok" else 503
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "healthy" if status_code == 200 else "degraded",
            "app": settings.APP_NAME,
            "version": settings.VERSION,
            "database": database,
            "scheduler": scheduler,
        },
    )


app.include_router(dunning_router, prefix="/api/v1/dunning")

# Initialize Prometheus Metrics
Instrumentator().instrument(app).expose(app)
