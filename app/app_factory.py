from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.health import router as health_router
from app.api.price import router as price_router
from app.api.schedule import router as schedule_router
from app.container import ServiceContainer, build_container
from config import settings

logger = logging.getLogger(__name__)

# Locations FastAPI prepends to field paths
_LOC_SOURCES = frozenset({"query", "body", "path", "header"})


def _field_name(loc: tuple) -> str:
    return ".".join(str(part) for part in loc if part not in _LOC_SOURCES) or "request"


def _message(error: dict) -> str:
    msg = str(error.get("msg", "Invalid value"))
    return msg.removeprefix("Value error, ")


async def validation_exception_handler(
    _request: Request, exc: RequestValidationError,
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "Validation failed",
            "details": [
                {"field": _field_name(tuple(err.get("loc", ()))), "message": _message(err)}
                for err in exc.errors()
            ],
        },
    )


def create_app(container: ServiceContainer | None = None) -> FastAPI:
    """Build the ASGI app.

    A prebuilt *container* is attached immediately and left for the caller to
    close; otherwise the lifespan builds one from settings and closes it on
    shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "container", None) is None
        if owned:
            app.state.container = build_container(settings)
        if owned and settings.run_worker:
            app.state.container.start_worker()
            logger.info("Backfill worker running in the API process")
        try:
            yield
        finally:
            if owned:
                await app.state.container.close()
                app.state.container = None

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    if container is not None:
        app.state.container = container

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.include_router(health_router)
    app.include_router(price_router)
    app.include_router(schedule_router)
    return app
