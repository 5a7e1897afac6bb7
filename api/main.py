from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Callable, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from api.observability import (
    configure_logging,
    monotonic_ms,
    new_request_id,
    request_log_fields,
    reset_request_id,
    set_request_id,
)
from api.ratelimit import limiter, rate_limit_exceeded_handler
from api.routes import router
from scoring.cache_utils import RedisCacheBackend
from scoring.config import Settings, get_settings
from scoring.db import create_schema
from scoring.engine import ScoringEngine, build_engine
from scoring.errors import ScoringError

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def scoring_error_handler(request: Request, exc: ScoringError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


def create_app(settings: Optional[Settings] = None, engine: Optional[ScoringEngine] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scoring_engine = engine
        if scoring_engine is None:
            if settings.is_dev or settings.is_test:
                create_schema(settings.database_url)
            scoring_engine = build_engine(settings)
        app.state.engine = scoring_engine
        app.state.cache_backend = "redis" if isinstance(scoring_engine.cache.backend, RedisCacheBackend) else "memory"
        try:
            yield
        finally:
            backend = scoring_engine.cache.backend
            if isinstance(backend, RedisCacheBackend):
                backend.client.close()

    app = FastAPI(title="Group Scoring API", version="1.0.0", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(ScoringError, scoring_error_handler)
    app.include_router(router)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_context_and_logging(request: Request, call_next: Callable) -> Response:
        request_id = (request.headers.get(REQUEST_ID_HEADER) or "").strip() or new_request_id()
        token = set_request_id(request_id)
        started_ms = monotonic_ms()
        client_ip = getattr(request.client, "host", None)
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = monotonic_ms() - started_ms
            logger.exception(
                "http_request_error",
                extra=request_log_fields(
                    method=request.method,
                    path=request.url.path,
                    status_code=500,
                    duration_ms=duration_ms,
                    client_ip=client_ip,
                ),
            )
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            duration_ms = monotonic_ms() - started_ms
            logger.info(
                "http_request",
                extra=request_log_fields(
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=duration_ms,
                    client_ip=client_ip,
                ),
            )
            return response
        finally:
            reset_request_id(token)

    return app


app = create_app()
