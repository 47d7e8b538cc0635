from __future__ import annotations

import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from contentflow.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from contentflow.apps.api.response import (
    API_VERSION,
    REQUEST_ID_HEADER,
    envelope_meta,
    is_versioned_request,
)
from contentflow.apps.api.routes.health import router as health_router
from contentflow.apps.api.routes.ops import router as ops_router
from contentflow.core.config import get_settings
from contentflow.core.errors import ContentFlowError
from contentflow.core.logging import configure_logging


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
    "/v1/redoc",
)


def _wrap_payload(response, request_id: str):
    # Wrap bare JSON bodies returned by v1 routes that skipped success_response.
    raw_body = getattr(response, "body", None)
    if not raw_body:
        return response
    try:
        payload = json.loads(raw_body)
    except (TypeError, ValueError):
        return response
    is_enveloped = (
        isinstance(payload, dict)
        and "data" in payload
        and isinstance(payload.get("meta"), dict)
        and payload["meta"].get("api_version") == API_VERSION
    )
    if is_enveloped:
        return response
    wrapped = JSONResponse(
        content={"data": payload, "meta": envelope_meta(request_id)},
        status_code=response.status_code,
    )
    for key, value in response.headers.items():
        if key.lower() in {"content-length", "content-type"}:
            continue
        wrapped.headers[key] = value
    return wrapped


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} ops API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
        ):
            response = _wrap_payload(response, request_id)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.debug(
            "api_request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
        )
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(ContentFlowError)
    async def _domain_exception_handler(request: Request, exc: ContentFlowError):
        return await domain_exception_handler(request, exc)

    # Versioned routes first; unversioned aliases stay out of the schema.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, include_in_schema=False)

    return app


app = create_app()
