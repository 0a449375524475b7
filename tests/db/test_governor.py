from __future__ import annotations

import pytest

from dbguard.config import QueryLimits
from dbguard.db.governor import QueryGovernor
from dbguard.db.models import OperationType
from dbguard.errors import DriverError, GuardrailExceeded
from dbguard.events import ChangedTableEvent, LocalEventBus, QueryEvent

from .._doubles import StubDriver


def _governor(driver: StubDriver | None = None, **limits) -> tuple[QueryGovernor, list[str]]:
    invalidated: list[str] = []
    governor = QueryGovernor(driver or StubDriver(), QueryLimits(**limits), invalidated.append)
    return governor, invalidated


class TestTransactionDepth:
    """Nested begin/commit reach the driver only at the outermost level."""

    def test_nested_begin_commit(self) -> None:
        driver = StubDriver()
        governor, _ = _governor(driver)

        assert governor.begin() is True
        assert governor.begin() is True
        assert governor.depth == 2
        assert driver.begins == 1

        assert governor.commit() is True
        assert driver.commits == 0
        assert governor.commit() is True
        assert driver.commits == 1
        assert not governor.in_transaction

    def test_commit_without_transaction(self) -> None:
        driver = StubDriver()
        governor, _ = _governor(driver)

        assert governor.commit() is False
        assert governor.depth == 0
        assert driver.commits == 0

    def test_rollback_collapses_the_stack(self) -> None:
        driver = StubDriver()
        governor, _ = _governor(driver)
        governor.begin()
        governor.begin()
        governor.begin()

        assert governor.rollback() is True
        assert governor.depth == 0
        assert driver.rollbacks == 1
        assert governor.rollback() is False

    def test_ensure_transaction_is_idempotent(self) -> None:
        driver = StubDriver()
        governor, _ = _governor(driver)

        governor.ensure_transaction()
        governor.ensure_transaction()

        assert governor.depth == 1
        assert driver.begins == 1


class TestGuardrails:
    """The N+1th statement in a category is refused before reaching the driver."""

    def test_per_query_limit(self) -> None:
        driver = StubDriver()
        governor, _ = _governor(driver, query=3)

        for _ in range(3):
            governor.execute("SELECT 1")
        with pytest.raises(GuardrailExceeded) as exc_info:
            governor.execute("SELECT 1")

        assert exc_info.value.category == "query"
        assert exc_info.value.limit == 3
        assert len(driver.statements) == 3
        # Other statements still have their own budget
        governor.execute("SELECT 2")

    def test_per_table_limit(self) -> None:
        governor, _ = _governor(table=2)

        governor.execute("SELECT a FROM t", table="t", op_type=OperationType.SELECT)
        governor.execute("SELECT b FROM t", table="t", op_type=OperationType.SELECT)
        governor.execute("SELECT a FROM u", table="u", op_type=OperationType.SELECT)
        with pytest.raises(GuardrailExceeded) as exc_info:
            governor.execute("SELECT c FROM t", table="t", op_type=OperationType.SELECT)

        assert exc_info.value.category == "table"

    def test_total_limit(self) -> None:
        governor, _ = _governor(total=2)

        governor.execute("SELECT 1")
        governor.execute("SELECT 2")
        with pytest.raises(GuardrailExceeded) as exc_info:
            governor.execute("SELECT 3")

        assert exc_info.value.category == "total"

    def test_disabled_category(self) -> None:
        governor, _ = _governor(query=None)

        for _ in range(250):
            governor.execute("SELECT 1")

    def test_limits_changed_at_runtime_apply_to_existing_counters(self) -> None:
        governor, _ = _governor(query=100)
        governor.execute("SELECT 1")
        governor.execute("SELECT 1")

        governor.limits.set("query", 2)

        with pytest.raises(GuardrailExceeded):
            governor.execute("SELECT 1")

    def test_query_limit_option_skips_counting(self) -> None:
        governor, _ = _governor(query=1)

        for _ in range(3):
            governor.execute("SELECT 1", options={"query_limit": False})

        assert governor.query_counts["SELECT 1"] == 0


class TestInvalidation:
    def test_mutation_invalidates_table(self) -> None:
        bus = LocalEventBus()
        changed: list[str] = []
        bus.subscribe(ChangedTableEvent, lambda e: changed.append(e.table))
        invalidated: list[str] = []
        governor = QueryGovernor(StubDriver(), QueryLimits(), invalidated.append, bus)

        governor.execute("UPDATE t SET a = 1", table="t", op_type=OperationType.UPDATE)

        assert invalidated == ["t"]
        assert changed == ["t"]

    def test_select_does_not_invalidate(self) -> None:
        governor, invalidated = _governor()

        governor.execute("SELECT * FROM t", table="t", op_type=OperationType.SELECT)

        assert invalidated == []

    def test_raw_statement_on_named_table_invalidates(self) -> None:
        governor, invalidated = _governor()

        governor.execute("TRUNCATE t", table="t")

        assert invalidated == ["t"]

    def test_failed_statement_does_not_invalidate(self) -> None:
        governor, invalidated = _governor(StubDriver(error=DriverError("boom")))

        with pytest.raises(DriverError):
            governor.execute("DELETE FROM t", table="t", op_type=OperationType.DELETE)

        assert invalidated == []


def test_query_event_carries_sql() -> None:
    bus = LocalEventBus()
    seen: list[QueryEvent] = []
    bus.subscribe(QueryEvent, seen.append)
    governor = QueryGovernor(StubDriver(), QueryLimits(), lambda table: None, bus)

    governor.execute("SELECT 1", table="t", op_type=OperationType.SELECT)

    assert seen == [QueryEvent(query="SELECT 1", table="t")]
