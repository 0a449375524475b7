from .registry import (
    CACHE_LOOKUP_TOTAL,
    DB_QUERY_LATENCY_SECONDS,
    DB_QUERY_TOTAL,
    GUARDRAIL_TRIPS_TOTAL,
)

__all__ = [
    "CACHE_LOOKUP_TOTAL",
    "DB_QUERY_LATENCY_SECONDS",
    "DB_QUERY_TOTAL",
    "GUARDRAIL_TRIPS_TOTAL",
]
