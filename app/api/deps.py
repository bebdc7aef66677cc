"""Shared helpers for the route modules."""
from __future__ import annotations

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse

from app.container import ServiceContainer
from app.data.errors import PriceServiceError


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def error_response(exc: PriceServiceError, details: Any = None) -> JSONResponse:
    """``{"error": ..., "details": ...}`` with the status code the error carries."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.error, "details": exc.message if details is None else details},
    )
