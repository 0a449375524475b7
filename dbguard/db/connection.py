from __future__ import annotations

import dataclasses
import logging
import re
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence, Union

from sqlalchemy import create_engine

from ..config import ConnectionConfig
from ..errors import ConfigurationError, ConstraintViolation, DriverError, UnsafeOperation
from ..events import (
    DeleteQueryEvent,
    EventBus,
    InsertedQueryEvent,
    InsertQueryEvent,
    NullEventBus,
    SelectQueryEvent,
    UpdateQueryEvent,
)
from .builder import QueryBuilder, SqlAlchemyQueryBuilder
from .cache import CacheStore, MemoryCacheStore, ResultCache, is_primary_lookup
from .driver import Driver, SqlAlchemyDriver, StatementResult
from .governor import QueryGovernor
from .hooks import PROVIDER_KIND, HookPipeline, ProviderRegistry, StaticProviderRegistry, resolve_dependencies
from .models import DeferredInsertBuffer, OperationType, TableModel, Where, WriteQuery
from .normalizer import normalize_row
from .options import is_full_table
from .schema import SchemaCache, SchemaProvider, SqlAlchemySchemaProvider

logger = logging.getLogger(__name__)

Rows = Union[Iterator[dict[str, Any]], list[dict[str, Any]]]

_FOREIGN_KEY_RE = re.compile(
    r"`([^`]+?)`, CONSTRAINT `(.+?)` FOREIGN KEY \(`(.+?)`\) REFERENCES `(.+?)` \(`(.+?)`\)",
    re.IGNORECASE,
)


def _merge_options(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Recursive merge; nested mappings merge, lists append, scalars are replaced."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = _merge_options(current, value)
        elif isinstance(value, list) and isinstance(current, list):
            merged[key] = current + value
        else:
            merged[key] = value
    return merged


class DbConnection:
    """
    Governed, cached access to one database.

    Every statement runs through the QueryGovernor (guardrails, transaction
    nesting, invalidation). Simple selects are answered from whole-table
    snapshots kept by the ResultCache. Registered DbProvider hooks may
    rewrite operations and results.

    Writes open a transaction but never commit it: call commit(), or let
    terminate()/close() commit at the end of the run.

    Usage:
        with DbConnection("primary", config) as db:
            user_id = db.insert("users", {"name": "ada"})
            row = db.select("users", user_id)
    """

    def __init__(
        self,
        name: str,
        config: ConnectionConfig,
        *,
        driver: Optional[Driver] = None,
        builder: Optional[QueryBuilder] = None,
        schema: Optional[SchemaProvider] = None,
        cache_store: Optional[CacheStore] = None,
        events: Optional[EventBus] = None,
        providers: Optional[ProviderRegistry] = None,
    ) -> None:
        self.name = name
        self.config = config
        self.events = events or NullEventBus()

        if driver is None:
            driver = SqlAlchemyDriver(create_engine(config.sqlalchemy_url(), pool_pre_ping=True))
        self.driver = driver
        if schema is None:
            if not isinstance(driver, SqlAlchemyDriver):
                raise ConfigurationError("A schema provider is required with a custom driver")
            schema = SqlAlchemySchemaProvider(driver.connection)

        registry = providers or StaticProviderRegistry()
        # Resolved once; the order is the registry's.
        self.hooks = HookPipeline(self, registry.find_providers(PROVIDER_KIND))
        self.schema = SchemaCache(schema, self.hooks)

        if builder is None:
            if not isinstance(driver, SqlAlchemyDriver):
                raise ConfigurationError("A query builder is required with a custom driver")
            builder = SqlAlchemyQueryBuilder(self.schema, driver.dialect)
        self.builder = builder

        self.cache = ResultCache(
            store=cache_store or MemoryCacheStore(),
            namespace=f"{config.host}.{config.name}",
            schema=self.schema,
            count_rows=self.count,
            cache_tables=config.cache_tables,
            ttl=config.cache_ttl,
            in_transaction=lambda: self.governor.in_transaction,
        )
        # Per-connection copy: set_query_limit must not leak into other connections.
        self.limits = dataclasses.replace(config.limits)
        self.governor = QueryGovernor(driver, self.limits, self.cache.invalidate, self.events)
        self._deferred: dict[str, DeferredInsertBuffer] = {}
        self._closed = False

    def __enter__(self) -> "DbConnection":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Transactions

    @property
    def in_transaction(self) -> bool:
        return self.governor.in_transaction

    def begin_transaction(self) -> bool:
        return self.governor.begin()

    def commit(self) -> bool:
        ok = self.governor.commit()
        if not self.governor.in_transaction:
            self.cache.end_transaction()
        return ok

    def rollback(self) -> bool:
        """
        Roll back every nesting level and drop whatever was cached from the
        discarded rows, in this connection and in the shared store.
        """
        try:
            return self.governor.rollback()
        finally:
            self.cache.discard_transaction()

    # Guardrails and raw statements

    def set_query_limit(self, category: str, n: Optional[int]) -> None:
        self.limits.set(category, n)

    def query(
        self,
        sql: str,
        table: Optional[str] = None,
        op_type: Optional[OperationType] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> StatementResult:
        """Run raw SQL through the guardrails. Pass ``table`` so mutations invalidate its cache."""
        return self.governor.execute(sql, table, op_type, options)

    def changed_table(self, table: str) -> None:
        """Drop every cached result of ``table``, e.g. after an out-of-band write."""
        self.cache.invalidate(table)

    def get_table(self, name: str) -> TableModel:
        return self.schema.get_table(name)

    # Writes

    def _check_no_deferred(self, table: str, action: str) -> None:
        if table in self._deferred:
            raise UnsafeOperation(
                f"There are open bulk inserts on the table {table!r}; can't {action}"
            )

    def insert(
        self,
        table: str,
        data: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[int]:
        """
        Insert one row and return its generated id.

        With the ``defer`` option the row is buffered instead (and None is
        returned) until the buffer reaches ``defer`` rows, flush_deferred() is
        called, or the connection terminates. ``defer=0`` (or True) buffers
        until an explicit flush.

        Raises:
            ConfigurationError: On an invalid defer value, or when deferring
                with options that differ from the open buffer's
        """
        data = dict(data or {})
        options = dict(options or {})

        defer = options.get("defer")
        if defer is not None and defer is not False:
            return self._defer_insert(table, data, options)

        self.events.emit(InsertQueryEvent(table=table, data=data, options=options))

        queries = [WriteQuery(table=table, data=data, options=options)]
        if options.get("alter", True):
            queries = self.hooks.alter_insert(queries)

        generated, _ = self._execute_writes(queries)
        for query, new_id in zip(queries, generated):
            if query.table == table and query.op_type == OperationType.INSERT:
                return new_id
        return next((i for i in generated if i is not None), None)

    def _defer_insert(self, table: str, data: dict[str, Any], options: dict[str, Any]) -> None:
        defer = options["defer"]
        if defer is True:
            defer = 0
        if isinstance(defer, float) and not defer.is_integer():
            raise ConfigurationError(f"Invalid defer value {defer!r}")
        try:
            threshold = int(defer)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid defer value {defer!r}") from None
        if threshold < 0:
            raise ConfigurationError(f"Invalid defer value {defer!r}")
        options["defer"] = threshold

        buffer = self._deferred.get(table)
        if buffer is None:
            buffer = self._deferred[table] = DeferredInsertBuffer(options=options)
        elif buffer.options != options:
            raise ConfigurationError(
                f"Cannot defer inserts with different options on the same table {table!r}"
            )

        buffer.rows.append(data)
        if buffer.threshold > 0 and len(buffer.rows) >= buffer.threshold:
            self._bulk_insert(table)
        return None

    def _bulk_insert(self, table: str) -> None:
        buffer = self._deferred.pop(table, None)
        if buffer is None or not buffer.rows:
            return
        options = {k: v for k, v in buffer.options.items() if k != "defer"}
        sql = self.builder.build_insert(table, buffer.rows, options)
        if sql is None:
            return
        logger.debug("Flushing %d deferred row(s) into %s", len(buffer.rows), table)
        self.governor.ensure_transaction()
        self.governor.execute(sql, table, OperationType.INSERT, options)

    def flush_deferred(self, table: Optional[str] = None) -> None:
        """Write buffered rows of ``table`` (or of every table) as bulk inserts."""
        tables = [table] if table is not None else list(self._deferred)
        for name in tables:
            self._bulk_insert(name)

    def _execute_writes(
        self, queries: Sequence[WriteQuery]
    ) -> tuple[list[Optional[int]], Optional[StatementResult]]:
        """
        Run expanded physical writes in order.

        Returns the id each insert generated (None for updates and skipped
        statements) and the result of the first statement executed.
        """
        generated: list[Optional[int]] = []
        first_result: Optional[StatementResult] = None
        for index, query in enumerate(queries):
            data = resolve_dependencies(query, index, generated)
            if query.op_type == OperationType.INSERT:
                sql = self.builder.build_insert(query.table, data, query.options)
            else:
                sql = self.builder.build_update(query.table, query.where, data, query.options)

            if sql is None:
                generated.append(None)
                continue

            self.governor.ensure_transaction()
            result = self.governor.execute(sql, query.table, query.op_type, query.options)
            if first_result is None:
                first_result = result

            if query.op_type == OperationType.INSERT:
                new_id = self.driver.last_insert_id()
                generated.append(new_id)
                self.events.emit(InsertedQueryEvent(table=query.table, id=new_id))
            else:
                generated.append(None)
        return generated, first_result

    def update(
        self,
        table: str,
        where: Where = None,
        data: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[StatementResult]:
        """
        Update matching rows. Returns the result of the first statement
        executed, or None when there was nothing to update.

        Raises:
            UnsafeOperation: On a full-table update without ``confirm=True``,
                or while the table has deferred inserts
        """
        options = dict(options or {})
        data = dict(data or {})
        self._check_no_deferred(table, "update")
        if is_full_table(where) and not options.get("confirm"):
            raise UnsafeOperation("Tried to update full table without explicit confirm")

        self.events.emit(UpdateQueryEvent(table=table, where=where, data=data, options=options))

        queries = [WriteQuery(table=table, data=data, where=where, options=options, op_type=OperationType.UPDATE)]
        if options.get("alter", True):
            queries = self.hooks.alter_update(queries)

        _, first_result = self._execute_writes(queries)
        return first_result

    def delete(
        self,
        table: str,
        where: Where = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[StatementResult]:
        """
        Delete matching rows.

        Raises:
            UnsafeOperation: On a full-table delete without ``confirm=True``,
                or while the table has deferred inserts
            ConstraintViolation: If a foreign key references the rows
        """
        options = dict(options or {})
        self._check_no_deferred(table, "delete")
        if is_full_table(where) and not options.get("confirm"):
            raise UnsafeOperation("Tried to delete full table without explicit confirm")

        if options.get("alter", True):
            where, options = self.hooks.alter_delete(table, where, options)

        self.events.emit(DeleteQueryEvent(table=table, where=where, options=options))

        sql = self.builder.build_delete(table, where, options)
        if sql is None:
            return None

        self.governor.ensure_transaction()
        try:
            return self.governor.execute(sql, table, OperationType.DELETE, options)
        except DriverError as exc:
            violation = self._foreign_key_violation(str(exc))
            if violation is not None:
                raise violation from exc
            raise

    @staticmethod
    def _foreign_key_violation(message: str) -> Optional[ConstraintViolation]:
        if "a foreign key constraint fails" not in message.lower():
            return None
        match = _FOREIGN_KEY_RE.search(message)
        if match is None:
            return None
        referencing_table, _constraint, column, referenced_table, referenced_column = match.groups()
        return ConstraintViolation(
            referenced_table=referenced_table,
            referencing_table=referencing_table,
            referencing_column=column,
            referenced_column=referenced_column,
        )

    def update_or_insert(
        self,
        table: str,
        where: Where = None,
        data: Optional[Mapping[str, Any]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[int]:
        """
        Update the row matching ``where`` if it exists, otherwise insert it
        (with the ``where`` columns included). Returns the row's id.
        """
        options = dict(options or {})
        data = dict(data or {})
        pk = self.get_table(table).single_primary

        lookup = {k: v for k, v in options.items() if k in ("alter", "query_limit", "debug")}
        existing = self.select(table, where, lookup)
        if existing is not None:
            row_where: Where = where
            if pk is not None and existing.get(pk) is not None:
                row_where = {pk: existing[pk]}
            self.update(table, row_where, data, options)
            return existing.get(pk) if pk is not None else None

        if isinstance(where, Mapping):
            payload = {**where, **data}
        elif where is not None and pk is not None:
            payload = {pk: where, **data}
        else:
            payload = data
        return self.insert(table, payload, options)

    # Reads

    def select(
        self,
        table: str,
        where: Where = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Optional[dict[str, Any]]:
        """Return the first matching row, or None."""
        options = dict(options or {})
        options["limit"] = 1
        options["stream"] = False
        rows = self.select_all(table, where, options)
        return rows[0] if rows else None

    def select_all(
        self,
        table: str,
        where: Where = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Rows:
        """
        Return matching rows.

        By default rows are a lazy, single-pass iterator; ``stream=False``
        returns a list. Small results and primary-key lookups are memoized
        for the life of the connection, unless ``in_memory_cache=False``.

        Raises:
            UnsafeOperation: While the table has deferred inserts
        """
        options = dict(options or {})
        self._check_no_deferred(table, "read")
        stream = options.get("stream", True)

        self.events.emit(SelectQueryEvent(table=table, where=where, options=options))

        memoize = options.get("in_memory_cache", True) and not options.get("joins")
        memo_key = self.cache.memo_key(where, options)
        if memoize:
            remembered = self.cache.recall(table, memo_key)
            if remembered is not None:
                return iter(remembered) if stream else remembered

        if self.cache.is_select_cacheable(table, where, options):
            # A single-row lookup is cheaper than loading the snapshot.
            if not is_primary_lookup(self.get_table(table), where) or self.cache.has_snapshot(table):
                rows = self.cache.select_from_snapshot(table, where, options, self._load_snapshot_rows(table))
                if options.get("alter", True) and self.hooks:
                    model = self.get_table(table)
                    rows = [
                        normalize_row(model, self.hooks.alter_select_result(table, row, options))
                        for row in rows
                    ]
                return iter(rows) if stream else rows

        results = self._select_from_db(table, where, options)
        primary = is_primary_lookup(self.get_table(table), where)
        # Streams stay lazy; only single-row lookups are cheap enough to drain.
        if stream and not (memoize and primary):
            return results

        rows = list(results)
        if memoize:
            self.cache.remember(table, memo_key, rows, primary=primary)
        return iter(rows) if stream else rows

    def _load_snapshot_rows(self, table: str):
        def loader() -> list[dict[str, Any]]:
            return self.select_all(
                table,
                None,
                {"cache": False, "stream": False, "alter": False, "in_memory_cache": False},
            )
        return loader

    def _select_from_db(self, table: str, where: Where, options: dict[str, Any]) -> Iterator[dict[str, Any]]:
        alter = options.get("alter", True)
        if alter:
            where, options = self.hooks.alter_select(table, where, options)

        sql = self.builder.build_select(table, where, options)
        if sql is None:
            return iter(())
        result = self.governor.execute(sql, table, OperationType.SELECT, options)
        return self._stream_results(table, result, options, alter)

    def _stream_results(
        self,
        table: str,
        results: Iterable[dict[str, Any]],
        options: Mapping[str, Any],
        alter: bool,
    ) -> Iterator[dict[str, Any]]:
        model = self.get_table(table)
        for row in results:
            if alter:
                row = self.hooks.alter_select_result(table, row, options)
            yield normalize_row(model, row)

    def count(
        self,
        table: str,
        where: Where = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> int:
        """Count matching rows. Unfiltered counts are cached like snapshots."""
        options = dict(options or {})
        if is_full_table(where) and not options:
            return self.cache.cached_count(table, lambda: self.count(table, None, {"cache": False}))

        options["fields"] = "COUNT(*)"
        sql = self.builder.build_select(table, where, options)
        result = self.governor.execute(sql, table, OperationType.SELECT, options)
        return int(result.scalar() or 0)

    def union_select(
        self,
        queries: Sequence[Mapping[str, Any]],
        options: Optional[Mapping[str, Any]] = None,
    ) -> Rows:
        """
        Run several selects joined with UNION.

        Each query is a mapping with "table" and optional "where"/"options".
        The outer options apply to every sub-select except order_by and
        limit, which apply to the union as a whole.
        """
        options = dict(options or {})
        shared = {k: v for k, v in options.items() if k not in ("order_by", "limit")}

        selects = []
        for query in queries:
            query_options = _merge_options(query.get("options") or {}, shared)
            selects.append(self.builder.build_select(query["table"], query.get("where"), query_options))

        sql = self.builder.build_union([s for s in selects if s], options)
        if sql is None:
            return iter(()) if options.get("stream", True) else []

        result = self.governor.execute(sql, None, OperationType.SELECT, options)
        if options.get("stream", True):
            return iter(result.rows)
        return list(result.rows)

    # Teardown

    def terminate(self) -> None:
        """Flush every deferred insert and commit an open transaction."""
        for table, buffer in list(self._deferred.items()):
            if buffer.rows:
                self._bulk_insert(table)
        self._deferred.clear()

        if self.in_transaction:
            # Collapse any nesting: the run is over.
            while self.governor.depth > 1:
                self.governor.commit()
            self.commit()

    def close(self) -> None:
        if self._closed:
            return
        try:
            self.terminate()
        finally:
            self._closed = True
            self.driver.close()
