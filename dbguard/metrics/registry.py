from prometheus_client import Counter, Histogram

DB_QUERY_TOTAL = Counter(
    "dbguard_db_queries_total",
    "Governed SQL statements executed, by table, operation and outcome",
    ["table", "op_type", "status"],
)

DB_QUERY_LATENCY_SECONDS = Histogram(
    "dbguard_db_query_latency_seconds",
    "Driver round-trip latency of governed SQL statements",
    ["table", "op_type"],
)

CACHE_LOOKUP_TOTAL = Counter(
    "dbguard_cache_lookups_total",
    "Result cache lookups, by layer (memory/store) and result (hit/miss)",
    ["layer", "result"],
)

GUARDRAIL_TRIPS_TOTAL = Counter(
    "dbguard_guardrail_trips_total",
    "Statements refused because a query limit was exceeded",
    ["category"],
)
