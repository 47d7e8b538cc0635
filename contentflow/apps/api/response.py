"""Response envelopes for the ops API.

Routes under /v1 answer `{"data": ..., "meta": ...}` on success and
`{"error": ..., "meta": ...}` on failure. Unversioned aliases answer with
the bare payload.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
SERVICE_NAME = "contentflow"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION
    service: str = SERVICE_NAME


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    # The request middleware assigns the id before routing; handlers outside it fall back.
    request_id = getattr(request.state, "request_id", None) or request.headers.get(REQUEST_ID_HEADER)
    if not request_id:
        request_id = uuid4().hex
        request.state.request_id = request_id
    return request_id


def envelope_meta(request_id: str) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id).model_dump()


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def success_response(*, request: Request, data: Any) -> Any:
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": envelope_meta(request_id_for(request))}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": envelope_meta(request_id_for(request)),
    }
