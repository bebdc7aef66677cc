"""Point-in-time price endpoint.

GET /price?token=<address>&network=<ethereum|polygon>&timestamp=<unix seconds>

    200  {"price": 1.0003, "source": "cache" | "alchemy" | "interpolated"}
    400  validation failure, or upstream rejected the request
    404  token not found on the network, or no data for the timestamp
    503  upstream still failing after retries
    500  anything else
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from app.api.deps import error_response, get_container
from app.api.validation import PriceQueryParams
from app.container import ServiceContainer
from app.data.errors import (
    InternalError,
    NoPriceDataError,
    NotFoundError,
    PriceServiceError,
)
from app.data.types import PriceQuery

logger = logging.getLogger(__name__)
router = APIRouter(tags=["price"])


def price_query(request: Request) -> PriceQueryParams:
    """Validate the query string; failures go through the 400 validation handler."""
    raw = {
        name: request.query_params[name]
        for name in PriceQueryParams.model_fields
        if name in request.query_params
    }
    try:
        return PriceQueryParams.model_validate(raw)
    except ValidationError as exc:
        raise RequestValidationError(
            [{**err, "loc": ("query", *err["loc"])} for err in exc.errors()]
        ) from exc


@router.get("/price", response_model=None)
async def get_price(
    params: PriceQueryParams = Depends(price_query),
    container: ServiceContainer = Depends(get_container),
) -> dict | JSONResponse:
    query = PriceQuery(params.token, params.network, params.timestamp)
    try:
        resolved = await container.resolver.resolve(query)
    except NotFoundError as exc:
        details = {"token": query.token, "network": query.network.value}
        if isinstance(exc, NoPriceDataError):
            details["timestamp"] = query.timestamp
        details["message"] = getattr(exc, "hint", exc.message)
        logger.info("[Price] %s/%s @ %d: %s", query.token, query.network.value, query.timestamp, exc.error)
        return error_response(exc, details)
    except PriceServiceError as exc:
        logger.warning(
            "[Price] %s/%s @ %d failed (%d): %s",
            query.token, query.network.value, query.timestamp, exc.status_code, exc.message,
        )
        return error_response(exc)
    except Exception:
        logger.exception("[Price] Unhandled error for %s/%s @ %d", query.token, query.network.value, query.timestamp)
        return error_response(InternalError("Unexpected error resolving price"))

    return {"price": float(resolved.price), "source": resolved.source.value}

