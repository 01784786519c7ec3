from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from unionnotify.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from unionnotify.apps.api.response import API_VERSION
from unionnotify.apps.api.routes.deliveries import router as deliveries_router
from unionnotify.apps.api.routes.health import router as health_router
from unionnotify.apps.api.routes.ops import router as ops_router
from unionnotify.apps.api.routes.receipts import router as receipts_router
from unionnotify.apps.api.routes.scheduler import router as scheduler_router
from unionnotify.apps.api.routes.sms import router as sms_router
from unionnotify.apps.api.routes.verification import router as verification_router
from unionnotify.core.config import get_settings
from unionnotify.core.errors import UnionNotifyError
from unionnotify.core.logging import configure_logging
from unionnotify.services.telemetry import record_request


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=settings.app_name)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # Browser clients call the worker and OTP routes directly, so preflights must pass.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins(),
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(UnionNotifyError)
    async def _domain_exception_handler(request: Request, exc: UnionNotifyError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(deliveries_router, prefix=f"/{API_VERSION}")
    app.include_router(receipts_router, prefix=f"/{API_VERSION}")
    app.include_router(verification_router, prefix=f"/{API_VERSION}")
    app.include_router(sms_router, prefix=f"/{API_VERSION}")
    app.include_router(scheduler_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
