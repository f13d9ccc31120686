"""
Public Sheet API

- GET /api/public/sheets/{slug}/trends?top=&periods=
"""

import logging
import re

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from ranksheet.context import AppContext
from ranksheet.sheet.trends import build_sheet_trends

from .dependencies import client_identity, get_context

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/public/sheets", tags=["Public Sheets"])

SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")
MIN_PERIODS = 2
MAX_PERIODS = 24


@router.get("/{slug}/trends")
async def sheet_trends(
    slug: str,
    request: Request,
    top: int = Query(default=10),
    periods: int = Query(default=8),
    ctx: AppContext = Depends(get_context),
):
    """Rank trajectories of the latest top ASINs over recent periods."""
    await ctx.rate_limiter.check("public_sheet_trends", client_identity(request), ctx.public_rule)

    if len(slug) > 200 or not SLUG_RE.match(slug):
        raise HTTPException(status_code=400, detail="invalid_slug")

    keyword = await ctx.keywords.get(slug)
    if keyword is None:
        raise HTTPException(status_code=404, detail="not_found")

    sheets = await ctx.sheets.load_recent_periods(slug, max(MIN_PERIODS, min(MAX_PERIODS, periods)))
    trends = build_sheet_trends(sheets, top)

    headers = {"Cache-Control": "s-maxage=300, stale-while-revalidate=3600"}
    if trends.periods:
        headers["Cache-Control"] = "s-maxage=3600, stale-while-revalidate=86400"

    return JSONResponse(
        {
            "ok": True,
            "slug": slug,
            "keyword": {"slug": keyword.slug, "keyword": keyword.keyword},
            **trends.to_dict(),
        },
        headers=headers,
    )
