"""
Shared FastAPI dependencies.
"""

from typing import Optional

from fastapi import Request

from ranksheet.context import AppContext


def get_context(request: Request) -> AppContext:
    """Application context created by the lifespan handler."""
    return request.app.state.context


def client_identity(request: Request) -> Optional[str]:
    """Client IP, preferring the first X-Forwarded-For hop."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return request.client.host if request.client else None
