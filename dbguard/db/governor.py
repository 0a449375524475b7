from __future__ import annotations

import logging
import time
from collections import Counter
from typing import Any, Callable, Mapping, Optional

from ..config import QueryLimits
from ..errors import GuardrailExceeded
from ..events import ChangedTableEvent, EventBus, NullEventBus, QueryEvent
from .driver import Driver, StatementResult
from .metrics import observe_guardrail_trip, observe_query
from .models import OperationType

logger = logging.getLogger(__name__)


class QueryGovernor:
    """
    Transaction nesting, statement guardrails and post-mutation invalidation
    for one connection.

    Transactions nest by depth: only the outermost begin/commit reach the
    driver, and a rollback always collapses the whole stack.

    Counters live as long as the governor and are never reset; a new
    connection starts from zero.
    """

    def __init__(
        self,
        driver: Driver,
        limits: QueryLimits,
        invalidate: Callable[[str], None],
        events: EventBus | None = None,
    ) -> None:
        self.driver = driver
        self.limits = limits
        self.invalidate = invalidate
        self.events = events or NullEventBus()
        self._depth = 0
        self.query_counts: Counter[str] = Counter()
        self.table_counts: Counter[str] = Counter()
        self.total_count = 0

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin(self) -> bool:
        ok = self.driver.begin_transaction() if self._depth == 0 else True
        if ok:
            self._depth += 1
        return ok

    def commit(self) -> bool:
        if self._depth <= 0:
            return False
        self._depth -= 1
        if self._depth == 0:
            return self.driver.commit()
        return True

    def rollback(self) -> bool:
        if self._depth > 0:
            self._depth = 0
            return self.driver.rollback()
        return False

    def ensure_transaction(self) -> None:
        if self._depth == 0:
            self.begin()

    def _check_limits(self, sql: str, table: Optional[str]) -> None:
        limit = self.limits.query
        if limit is not None:
            self.query_counts[sql] += 1
            if self.query_counts[sql] > limit:
                self._trip("query", limit, f"Query limit (per query) exceeded. - {sql}")

        limit = self.limits.table
        if limit is not None and table is not None:
            self.table_counts[table] += 1
            if self.table_counts[table] > limit:
                self._trip("table", limit, f"Query limit (per table {table!r}) exceeded. - {sql}")

        limit = self.limits.total
        if limit is not None:
            self.total_count += 1
            if self.total_count > limit:
                self._trip("total", limit, "Total query limit exceeded")

    def _trip(self, category: str, limit: int, message: str) -> None:
        logger.warning("Guardrail %s=%d tripped: %s", category, limit, message)
        observe_guardrail_trip(category)
        raise GuardrailExceeded(message, category=category, limit=limit)

    def execute(
        self,
        sql: str,
        table: Optional[str] = None,
        op_type: Optional[OperationType] = None,
        options: Mapping[str, Any] | None = None,
    ) -> StatementResult:
        """
        Run one statement through the guardrails and the driver.

        A successful non-select statement against a named table invalidates
        that table's cached results before returning.

        Raises:
            GuardrailExceeded: If a limit is exceeded (the driver is not called)
            DriverError: If the driver fails
        """
        options = options or {}
        if options.get("debug"):
            logger.info("QUERY: %s", sql)
        else:
            logger.debug("QUERY: %s", sql)

        if options.get("query_limit", True):
            self._check_limits(sql, table)

        self.events.emit(QueryEvent(query=sql, table=table))

        op_label = op_type.value if op_type is not None else "raw"
        start_time = time.monotonic()
        status = "success"
        try:
            result = self.driver.execute(sql)
        except Exception:
            status = "error"
            raise
        finally:
            observe_query(table, op_label, status, time.monotonic() - start_time)

        if table is not None and op_type != OperationType.SELECT:
            self.invalidate(table)
            self.events.emit(ChangedTableEvent(table=table))

        return result
