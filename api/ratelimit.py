"""Request throttling for the scoring API.

A leaderboard rebuild rescores every member of a group for one period, so
rebuilds are budgeted per partition (group + period) instead of per
client: callers hammering the same board share one budget while other
boards stay unaffected.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from scoring.config import Settings, get_settings


def rebuild_partition_key(request: Request) -> str:
    params = request.path_params
    period = str(params.get("period", "")).strip().upper()
    return f"rebuild:{params.get('group_id')}:{period}"


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        storage_uri=settings.rate_limit_storage_uri,
        enabled=bool(settings.rate_limit_enabled) and not settings.is_test,
        headers_enabled=True,
    )


limiter = build_limiter(get_settings())


def rate_limit_exceeded_handler(request: Request, exc: Exception) -> JSONResponse:
    details: dict[str, Any] = {}
    if isinstance(exc, RateLimitExceeded):
        details["limit"] = str(exc.detail)
    if "group_id" in request.path_params:
        details["group_id"] = int(request.path_params["group_id"])
        details["period"] = str(request.path_params.get("period", "")).upper()

    response = JSONResponse(
        status_code=429,
        content={
            "detail": {
                "code": "RATE_LIMITED",
                "message": "Too many rebuilds of this leaderboard, try again later",
                "details": details,
            }
        },
    )
    current_limit = getattr(request.state, "view_rate_limit", None)
    if current_limit is not None:
        # Adds Retry-After and X-RateLimit-* the same way slowapi's own handler does.
        response = request.app.state.limiter._inject_headers(response, current_limit)
    return response
