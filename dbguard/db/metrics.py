from __future__ import annotations

from typing import Optional

from ..metrics.registry import (
    CACHE_LOOKUP_TOTAL,
    DB_QUERY_LATENCY_SECONDS,
    DB_QUERY_TOTAL,
    GUARDRAIL_TRIPS_TOTAL,
)

NO_TABLE = "-"


def observe_query(
    table: Optional[str],
    op_type: str,
    status: str,
    latency_s: float,
) -> None:
    """Record one governed statement: count by status, latency only on success."""
    label = table or NO_TABLE
    DB_QUERY_TOTAL.labels(table=label, op_type=op_type, status=status).inc()
    if status == "success":
        DB_QUERY_LATENCY_SECONDS.labels(table=label, op_type=op_type).observe(latency_s)


def observe_cache_lookup(layer: str, hit: bool) -> None:
    CACHE_LOOKUP_TOTAL.labels(layer=layer, result="hit" if hit else "miss").inc()


def observe_guardrail_trip(category: str) -> None:
    GUARDRAIL_TRIPS_TOTAL.labels(category=category).inc()
