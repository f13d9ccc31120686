"""
Admin Job API

Endpoints:
- POST /api/admin/refresh-all       Submit a refresh of every active keyword
- POST /api/admin/refresh/{slug}    Submit a single-keyword refresh (idempotent, rate limited)
- POST /api/admin/retry-failed      Retry keywords left in ERROR
- GET  /api/admin/job/{job_id}      Job status
- GET  /api/admin/circuit-breakers  Upstream breaker health
- POST /api/admin/circuit-breakers/reset
- POST /api/admin/cleanup-cache     Delete expired ASIN cache entries
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ranksheet.context import AppContext

from .dependencies import client_identity, get_context

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin", tags=["Admin Jobs"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class RefreshAllRequest(BaseModel):
    concurrency: Optional[int] = Field(default=None, ge=1, le=10)
    limit: Optional[int] = Field(default=None, ge=1, le=2000)


class RetryFailedRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=2000)
    max_retries: int = Field(default=3, ge=1, le=100)


class CleanupCacheRequest(BaseModel):
    dry_run: bool = False


# =============================================================================
# HELPERS
# =============================================================================

async def _idempotent(
    ctx: AppContext,
    request: Request,
    idempotency_key: Optional[str],
    handler: Callable[[], Awaitable[Tuple[int, Any]]],
) -> JSONResponse:
    """Run handler, replaying a cached response when the key was seen before."""
    if idempotency_key is None:
        status, body = await handler()
        return JSONResponse(body, status_code=status)

    response = await ctx.idempotency.execute(
        idempotency_key,
        request.method,
        request.url.path,
        client_identity(request) or "unknown",
        handler,
    )
    return JSONResponse(
        response.body,
        status_code=response.status,
        headers={"X-Idempotency-Cache": "HIT" if response.replayed else "MISS"},
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/refresh-all", status_code=202)
async def refresh_all(
    request: Request,
    body: Optional[RefreshAllRequest] = None,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ctx: AppContext = Depends(get_context),
):
    """Queue a refresh of all active keywords."""
    await ctx.rate_limiter.check("admin_refresh_all", client_identity(request), ctx.refresh_rule)
    body = body or RefreshAllRequest()

    async def handler():
        submitted = await ctx.orchestrator.enqueue_refresh_all(
            concurrency=body.concurrency, limit=body.limit
        )
        return 202, submitted

    return await _idempotent(ctx, request, idempotency_key, handler)


@router.post("/refresh/{slug}", status_code=202)
async def refresh_one(
    slug: str,
    request: Request,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    ctx: AppContext = Depends(get_context),
):
    """Queue a refresh of one keyword."""
    await ctx.rate_limiter.check("admin_refresh", client_identity(request), ctx.refresh_rule)

    async def handler():
        submitted = await ctx.orchestrator.enqueue_refresh_one(slug)
        return 202, {**submitted, "keyword": slug.strip()}

    return await _idempotent(ctx, request, idempotency_key, handler)


@router.post("/retry-failed", status_code=202)
async def retry_failed(
    request: Request,
    body: Optional[RetryFailedRequest] = None,
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    """Queue a retry of keywords in ERROR."""
    await ctx.rate_limiter.check("admin_retry_failed", client_identity(request), ctx.refresh_rule)
    body = body or RetryFailedRequest()
    return await ctx.orchestrator.enqueue_retry_failed(
        limit=body.limit, max_retries=body.max_retries
    )


@router.get("/job/{job_id}")
async def get_job(job_id: str, ctx: AppContext = Depends(get_context)) -> Dict[str, Any]:
    """Point-in-time job state."""
    job = await ctx.orchestrator.get_job_state(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job_not_found")
    return job.to_dict()


@router.get("/circuit-breakers")
async def circuit_breakers(ctx: AppContext = Depends(get_context)) -> Dict[str, Any]:
    return {"breakers": ctx.breakers.health()}


@router.post("/circuit-breakers/reset")
async def reset_circuit_breakers(ctx: AppContext = Depends(get_context)) -> Dict[str, Any]:
    ctx.breakers.reset_all()
    return {"breakers": ctx.breakers.health()}


@router.post("/cleanup-cache")
async def cleanup_cache(
    request: Request,
    body: Optional[CleanupCacheRequest] = None,
    ctx: AppContext = Depends(get_context),
) -> Dict[str, Any]:
    """Remove expired ASIN cache entries, or count them on a dry run."""
    await ctx.rate_limiter.check("admin_cleanup_cache", client_identity(request), ctx.refresh_rule)
    if ctx.product_cache is None:
        raise HTTPException(status_code=503, detail="product_cache_unavailable")
    body = body or CleanupCacheRequest()

    count = await ctx.product_cache.purge_expired(dry_run=body.dry_run)
    return {
        "ok": True,
        "dryRun": body.dry_run,
        "expired": count,
        "deleted": 0 if body.dry_run else count,
    }
