"""
Error handlers - map AndesiteError categories to RFC 7807 responses.

The core raises typed errors and never picks status codes; this module is
the HTTP collaborator that does.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from andesite.core.errors import AndesiteError, ErrorCategory
from andesite.core.logging import get_logger

log = get_logger(__name__)

# ── Category → HTTP status mapping ───────────────────────────────────────

CATEGORY_TO_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.CONFIG: 500,
    ErrorCategory.DATABASE: 500,
    ErrorCategory.CONNECTION: 503,
    ErrorCategory.INTERNAL: 500,
}


class ProblemDetail(BaseModel):
    """RFC 7807 problem body with the andesite error key."""

    type: str = "about:blank"
    title: str
    status: int
    detail: str = ""
    instance: str = ""
    key: str | None = None
    error_id: str | None = None
    extra: Any = None


def status_for_error(error: AndesiteError) -> int:
    """Resolve an error category to HTTP status, defaulting to 500."""
    return CATEGORY_TO_STATUS.get(error.category, 500)


def problem_response(
    *,
    status: int,
    title: str,
    detail: str = "",
    instance: str = "",
    key: str | None = None,
    error_id: str | None = None,
    extra: Any = None,
) -> JSONResponse:
    """Build a RFC 7807 JSON error response."""
    body = ProblemDetail(
        title=title,
        status=status,
        detail=detail,
        instance=instance,
        key=key,
        error_id=error_id,
        extra=extra,
    )
    return JSONResponse(
        status_code=status,
        content=body.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def andesite_error_handler(request: Request, exc: AndesiteError) -> JSONResponse:
    """Translate an AndesiteError raised by a route or dependency."""
    status = status_for_error(exc)
    if status >= 500:
        log.error("request_failed", path=request.url.path, **exc.to_dict())
    return problem_response(
        status=status,
        title=exc.__class__.__name__,
        detail=exc.message,
        instance=str(request.url),
        key=exc.key,
        error_id=exc.error_id,
        extra=exc.detail if status < 500 else None,
    )


def install_error_handlers(app: FastAPI) -> None:
    """Register the AndesiteError handler on ``app``."""
    app.add_exception_handler(AndesiteError, andesite_error_handler)


__all__ = [
    "CATEGORY_TO_STATUS",
    "ProblemDetail",
    "status_for_error",
    "problem_response",
    "andesite_error_handler",
    "install_error_handlers",
]
