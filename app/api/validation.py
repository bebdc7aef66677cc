"""Request models for the public endpoints.

Validation errors raised here are rendered by the handler registered in
:mod:`app.app_factory` as ``400 {"error": "Validation failed", "details": [...]}``.
"""
from __future__ import annotations

import time

from pydantic import BaseModel, Field, field_validator

from app.data.network_registry import Network, canonical_token, parse_network

MIN_TIMESTAMP = 1_000_000_000
# Requests may run up to one day ahead of the server clock
MAX_FUTURE_SKEW = 86_400


def _network(value: object) -> Network:
    if isinstance(value, Network):
        return value
    if not isinstance(value, str):
        raise ValueError("Network must be a string")
    return parse_network(value)


class PriceQueryParams(BaseModel):
    token:     str = Field(description="ERC-20 contract address, 0x + 40 hex")
    network:   Network
    timestamp: int = Field(description="Unix seconds")

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        return canonical_token(value)

    @field_validator("network", mode="before")
    @classmethod
    def _check_network(cls, value: object) -> Network:
        return _network(value)

    @field_validator("timestamp")
    @classmethod
    def _check_timestamp(cls, value: int) -> int:
        if value < MIN_TIMESTAMP:
            raise ValueError(f"Timestamp must be a valid Unix timestamp (>= {MIN_TIMESTAMP})")
        if value > int(time.time()) + MAX_FUTURE_SKEW:
            raise ValueError("Timestamp cannot be more than one day in the future")
        return value


class ScheduleRequest(BaseModel):
    token:   str
    network: Network

    @field_validator("token")
    @classmethod
    def _check_token(cls, value: str) -> str:
        return canonical_token(value)

    @field_validator("network", mode="before")
    @classmethod
    def _check_network(cls, value: object) -> Network:
        return _network(value)
