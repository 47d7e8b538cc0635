from __future__ import annotations

from typing import Any

from contentflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1", "service": "contentflow"},
    }


def _error_response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    404: _error_response("Not found", "NOT_FOUND", "Program not found"),
    409: _error_response("Conflict", "PROGRAM_STATE_CONFLICT", "Program is not active"),
    422: _error_response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _error_response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    503: _error_response("Service unavailable", "REFERENCE_DATA_UNAVAILABLE", "Reference data unavailable"),
}
