"""
RankSheet API Application

FastAPI app exposing admin job endpoints and public sheet reads. The
application context is built in the lifespan handler and shut down with
the app; running jobs are awaited before resources close.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ranksheet import __version__
from ranksheet.context import AppContext
from ranksheet.errors import (
    DuplicateRequest,
    PersistenceError,
    RateLimited,
    UpstreamError,
    ValidationError,
)
from ranksheet.utils.config import Settings, get_settings
from ranksheet.utils.logging import configure_logging

from . import admin, sheets

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    context: Optional[AppContext] = None,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Settings (default: environment)
        context: Pre-built context (tests); built from settings otherwise
    """
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctx = context or AppContext.from_settings(settings)
        app.state.context = ctx
        await ctx.startup()
        logger.info(f"RankSheet API {__version__} started ({settings.ENVIRONMENT})")
        try:
            yield
        finally:
            await ctx.shutdown()

    app = FastAPI(
        title="RankSheet Engine",
        description="Rank sheet refresh jobs and trend reads",
        version=__version__,
        lifespan=lifespan,
    )

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited):
        return JSONResponse(
            {"ok": False, "error": "rate_limited", "retryAfter": exc.retry_after},
            status_code=429,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse({"ok": False, "error": "invalid_request", "detail": str(exc)}, status_code=400)

    @app.exception_handler(DuplicateRequest)
    async def duplicate_handler(request: Request, exc: DuplicateRequest):
        return JSONResponse({"ok": False, "error": "duplicate_request"}, status_code=409)

    @app.exception_handler(UpstreamError)
    async def upstream_handler(request: Request, exc: UpstreamError):
        logger.warning(f"Upstream failure on {request.url.path}: {exc}")
        return JSONResponse({"ok": False, "error": "upstream_unavailable"}, status_code=502)

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError):
        logger.error(f"Persistence failure on {request.url.path}: {exc}")
        return JSONResponse({"ok": False, "error": "storage_unavailable"}, status_code=503)

    @app.get("/healthz")
    async def healthz():
        return {"ok": True, "version": __version__}

    app.include_router(admin.router)
    app.include_router(sheets.router)
    return app
