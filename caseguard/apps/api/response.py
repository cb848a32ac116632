from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    # Shape of every error response: {"error": {...}, "meta": {"request_id": ...}}.
    error: ErrorBody
    meta: dict[str, str]


def get_request_id(request: Request) -> str:
    # The middleware normally assigns one; handlers reached before it still get an id.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    envelope = ErrorEnvelope(
        error=ErrorBody(code=code, message=message, details=details),
        meta={"request_id": get_request_id(request)},
    )
    return envelope.model_dump(exclude_none=True)
