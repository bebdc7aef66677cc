"""Error taxonomy for price resolution and the upstream failure classifier.

Upstream failures
─────────────────
The Alchemy adapter never lets raw ``httpx`` errors escape; every failure is
converted into an :class:`UpstreamError` carrying one member of the closed
:class:`UpstreamErrorKind` enumeration plus an already-sanitised message.
:func:`classify` switches on that kind only, so retry policy is decided in
one place and never by substring matching on error text.

    kind                                  verdict   surfaced as
    ────────────────────────────────────  ────────  ─────────────────────────
    BAD_REQUEST                           ABORT     404 token not found
    NO_DATA                               ABORT     404 no data available
    RATE_LIMITED, SERVER_ERROR,
    BAD_GATEWAY, UNAVAILABLE, TIMEOUT,
    NETWORK                               RETRY     503 once attempts run out
    UNAUTHORIZED, UNEXPECTED, other       UNKNOWN   400 bad request

Service errors
──────────────
Everything the resolver and scheduler raise derives from
:class:`PriceServiceError`, which carries the HTTP status the API layer maps
it to and whether the backfill worker may retry the job that raised it.
"""
from __future__ import annotations

import enum


# ── Upstream failures ─────────────────────────────────────────────────────────

class UpstreamErrorKind(str, enum.Enum):
    BAD_REQUEST  = "bad_request"
    NO_DATA      = "no_data"
    RATE_LIMITED = "rate_limited"
    SERVER_ERROR = "server_error"
    BAD_GATEWAY  = "bad_gateway"
    UNAVAILABLE  = "unavailable"
    TIMEOUT      = "timeout"
    NETWORK      = "network"
    UNAUTHORIZED = "unauthorized"
    UNEXPECTED   = "unexpected"


class UpstreamError(Exception):
    """A failed call to the price source, tagged with its failure kind."""

    def __init__(
        self,
        kind: UpstreamErrorKind,
        message: str = "",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind        = kind
        self.message     = message or kind.value
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"UpstreamError({self.kind.value!r}, {self.message!r})"


class Verdict(str, enum.Enum):
    RETRY   = "retry"
    ABORT   = "abort"
    UNKNOWN = "unknown"


_RETRYABLE_KINDS = frozenset({
    UpstreamErrorKind.RATE_LIMITED,
    UpstreamErrorKind.SERVER_ERROR,
    UpstreamErrorKind.BAD_GATEWAY,
    UpstreamErrorKind.UNAVAILABLE,
    UpstreamErrorKind.TIMEOUT,
    UpstreamErrorKind.NETWORK,
})


def classify(error: BaseException) -> Verdict:
    """Decide whether a failed upstream call may be retried."""
    if not isinstance(error, UpstreamError):
        return Verdict.UNKNOWN
    if error.kind in (UpstreamErrorKind.BAD_REQUEST, UpstreamErrorKind.NO_DATA):
        return Verdict.ABORT
    if error.kind in _RETRYABLE_KINDS:
        return Verdict.RETRY
    return Verdict.UNKNOWN


def kind_for_status(status_code: int) -> UpstreamErrorKind:
    """Map an upstream HTTP status to its failure kind."""
    if status_code == 400 or status_code == 404:
        return UpstreamErrorKind.BAD_REQUEST
    if status_code == 408:
        return UpstreamErrorKind.TIMEOUT
    if status_code == 429:
        return UpstreamErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return UpstreamErrorKind.UNAUTHORIZED
    if status_code == 502:
        return UpstreamErrorKind.BAD_GATEWAY
    if status_code in (503, 504):
        return UpstreamErrorKind.UNAVAILABLE
    if status_code >= 500:
        return UpstreamErrorKind.SERVER_ERROR
    return UpstreamErrorKind.UNEXPECTED


# ── Service errors ────────────────────────────────────────────────────────────

class PriceServiceError(Exception):
    status_code: int  = 500
    retryable:   bool = True
    error:       str  = "Internal server error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.error)
        self.message = message or self.error


class NotFoundError(PriceServiceError):
    status_code = 404
    retryable   = False


class TokenNotFoundError(NotFoundError):
    error = "Token not found on the specified network"
    hint  = "The token address does not exist or is not supported on this network"


class NoPriceDataError(NotFoundError):
    error = "No data available for this timestamp"
    hint  = "Historical price data is not available for the specified timestamp"


class NoTransfersError(NotFoundError):
    error = "No transfers found"


class UpstreamRejectedError(PriceServiceError):
    """Non-retryable upstream failure that is neither not-found nor no-data."""
    status_code = 400
    retryable   = False
    error       = "Bad request"


class RetryExhaustedError(PriceServiceError):
    status_code = 503
    error       = "Service temporarily unavailable after multiple retry attempts"

    def __init__(self, message: str = "", attempts: int = 0) -> None:
        super().__init__(message)
        self.attempts = attempts


class InternalError(PriceServiceError):
    status_code = 500


class EmptySeriesError(ValueError):
    """Raised by the interpolator when given no samples."""


def translate_upstream(error: UpstreamError) -> PriceServiceError:
    """Convert an aborted upstream failure into the service error the caller sees."""
    if error.kind is UpstreamErrorKind.BAD_REQUEST:
        return TokenNotFoundError(error.message)
    if error.kind is UpstreamErrorKind.NO_DATA:
        return NoPriceDataError(error.message)
    return UpstreamRejectedError(error.message)
