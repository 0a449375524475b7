from __future__ import annotations

import json
import logging
import pickle
import time
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence

from redis import Redis, RedisError

from ..errors import CacheStoreError
from .metrics import observe_cache_lookup
from .models import TableModel, Where
from .normalizer import normalize_value
from .options import is_full_table, order_key, parse_limit
from .schema import SchemaProvider

logger = logging.getLogger(__name__)

SNAPSHOT_MAX_ROWS = 200
MEMORY_CACHE_MAX_ROWS = 50
CACHEABLE_OPTIONS = frozenset({"cache", "order_by", "limit", "offset", "fields", "stream"})
KEY_PREFIX = "dbguard.cache.tables"

_MISSING = object()


class CacheStore(Protocol):
    """
    Shared cache store.

    Entries are tagged so that every key registered under a tag can be
    dropped in one call.
    """

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: int,
        tags: Sequence[str] = (),
    ) -> Any:
        ...

    def delete_keys(self, keys: Iterable[str]) -> None:
        ...

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        ...


class MemoryCacheStore:
    """Process-local store, for single-process deployments and tests."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[float, Any]] = {}
        self._tags: dict[str, set[str]] = {}

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: int,
        tags: Sequence[str] = (),
    ) -> Any:
        item = self._items.get(key)
        if item is not None and item[0] > time.monotonic():
            observe_cache_lookup("store", True)
            return item[1]

        observe_cache_lookup("store", False)
        value = compute()
        self._items[key] = (time.monotonic() + ttl, value)
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)
        return value

    def delete_keys(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._items.pop(key, None)

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        for tag in tags:
            self.delete_keys(self._tags.pop(tag, set()))


# Drop every key in the tag set, then the set itself, atomically.
_INVALIDATE_TAG_LUA = """
local keys = redis.call('SMEMBERS', KEYS[1])
for _, key in ipairs(keys) do
    redis.call('DEL', key)
end
redis.call('DEL', KEYS[1])
return #keys
"""


class RedisCacheStore:
    """
    Redis-backed store. Values are pickled; tags are Redis sets of keys.

    Only trusted processes should share the Redis database, since cached
    values are unpickled on read.
    """

    def __init__(self, redis: Redis, prefix: str = "") -> None:
        self.redis = redis
        self.prefix = prefix
        self._invalidate_tag = redis.register_script(_INVALIDATE_TAG_LUA)

    def _key(self, key: str) -> str:
        return self.prefix + key

    def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Any],
        ttl: int,
        tags: Sequence[str] = (),
    ) -> Any:
        full_key = self._key(key)
        try:
            raw = self.redis.get(full_key)
        except RedisError as exc:
            raise CacheStoreError(f"Failed to read {full_key!r}: {exc}") from exc

        if raw is not None:
            observe_cache_lookup("store", True)
            return pickle.loads(raw)

        observe_cache_lookup("store", False)
        value = compute()
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.set(full_key, pickle.dumps(value), ex=ttl)
            for tag in tags:
                tag_key = self._key(tag)
                pipe.sadd(tag_key, full_key)
                pipe.expire(tag_key, ttl)
            pipe.execute()
        except RedisError as exc:
            raise CacheStoreError(f"Failed to write {full_key!r}: {exc}") from exc
        return value

    def delete_keys(self, keys: Iterable[str]) -> None:
        full_keys = [self._key(k) for k in keys]
        if not full_keys:
            return
        try:
            self.redis.delete(*full_keys)
        except RedisError as exc:
            raise CacheStoreError(f"Failed to delete keys: {exc}") from exc

    def invalidate_tags(self, tags: Iterable[str]) -> None:
        try:
            for tag in tags:
                self._invalidate_tag(keys=[self._key(tag)])
        except RedisError as exc:
            raise CacheStoreError(f"Failed to invalidate tags: {exc}") from exc


def _sort_value(value: Any) -> tuple:
    # NULLs first, like SQL ascending order
    return (0,) if value is None else (1, value)


def sort_rows(rows: list[dict[str, Any]], order_by: Sequence[Any]) -> list[dict[str, Any]]:
    """
    Stable multi-key sort. The first key that differs decides; rows equal on
    every key keep their original order.
    """
    rows = list(rows)
    # Sorting by the least significant key first keeps earlier keys dominant.
    for column, descending in reversed([order_key(item) for item in order_by]):
        rows.sort(key=lambda row: _sort_value(row.get(column)), reverse=descending)
    return rows


def primary_lookup(model: TableModel, where: Where) -> Any:
    """The primary key value when ``where`` is an exact single-key lookup, else _MISSING."""
    pk = model.single_primary
    if pk is None:
        return _MISSING
    if isinstance(where, int) and not isinstance(where, bool):
        return where
    if isinstance(where, Mapping) and len(where) == 1 and pk in where:
        value = where[pk]
        if value is None or isinstance(value, (list, tuple, set, dict)):
            return _MISSING
        return value
    return _MISSING


def is_primary_lookup(model: TableModel, where: Where) -> bool:
    return primary_lookup(model, where) is not _MISSING


class ResultCache:
    """
    Whole-table snapshots in the shared store plus a per-connection memory
    layer.

    The memory layer holds the snapshot and count copies this connection has
    already loaded, and memoized query results. Both are dropped together
    when the table changes.

    While ``in_transaction()`` is true, every table this connection loads
    into the store or changes is recorded, so that a rollback can drop shared
    entries built from uncommitted rows.
    """

    def __init__(
        self,
        store: CacheStore,
        namespace: str,
        schema: SchemaProvider,
        count_rows: Callable[[str], int],
        cache_tables: Iterable[str] = (),
        ttl: int = 3600 * 24,
        in_transaction: Callable[[], bool] = lambda: False,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.schema = schema
        self.count_rows = count_rows
        self.cache_tables = frozenset(cache_tables)
        self.ttl = ttl
        self.in_transaction = in_transaction
        self._memory: dict[str, dict[str, Any]] = {}
        self._transaction_tables: set[str] = set()

    def tag_for(self, table: str) -> str:
        return f"{KEY_PREFIX}.{self.namespace}.{table}"

    def rows_key(self, table: str) -> str:
        return self.tag_for(table) + ".rows"

    def count_key(self, table: str) -> str:
        return self.tag_for(table) + ".count"

    def is_select_cacheable(self, table: str, where: Where, options: Mapping[str, Any]) -> bool:
        """
        Whether a select can be answered from the table snapshot.

        Checks run cheapest first; the row count is consulted last.
        """
        if not options.get("cache", True):
            return False

        model = self.schema.get_table(table)
        if model.single_primary is None:
            return False
        if not is_full_table(where) and not is_primary_lookup(model, where):
            return False

        if options.get("joins") or options.get("group_by"):
            return False
        if options.get("order_by") and not isinstance(options["order_by"], (list, tuple)):
            return False
        if options.get("fields") and not isinstance(options["fields"], (list, tuple)):
            return False
        if any(key not in CACHEABLE_OPTIONS for key in options):
            return False
        try:
            parse_limit(options.get("limit"), options.get("offset"))
        except ValueError:
            return False

        if table not in self.cache_tables and self.count_rows(table) > SNAPSHOT_MAX_ROWS:
            return False

        return True

    def _remembered(self, table: str, key: str, compute: Callable[[], Any]) -> Any:
        memory = self._memory.setdefault(table, {})
        if key in memory:
            observe_cache_lookup("memory", True)
            return memory[key]
        observe_cache_lookup("memory", False)

        def tracked() -> Any:
            value = compute()
            self._track(table)
            return value

        value = self.store.get_or_compute(key, tracked, self.ttl, tags=[self.tag_for(table)])
        memory[key] = value
        return value

    def _track(self, table: str) -> None:
        if self.in_transaction():
            self._transaction_tables.add(table)

    def has_snapshot(self, table: str) -> bool:
        return self.rows_key(table) in self._memory.get(table, {})

    def snapshot(self, table: str, loader: Callable[[], Iterable[dict[str, Any]]]) -> dict[Any, dict[str, Any]]:
        """Primary-key-indexed rows of the whole table, loading them once."""
        def compute() -> dict[Any, dict[str, Any]]:
            logger.debug("Loading cache snapshot for %s", table)
            pk = self.schema.get_table(table).primary[0]
            return {row[pk]: row for row in loader()}

        return self._remembered(table, self.rows_key(table), compute)

    def cached_count(self, table: str, loader: Callable[[], int]) -> int:
        return int(self._remembered(table, self.count_key(table), loader))

    def select_from_snapshot(
        self,
        table: str,
        where: Where,
        options: Mapping[str, Any],
        loader: Callable[[], Iterable[dict[str, Any]]],
    ) -> list[dict[str, Any]]:
        """
        Apply the predicate, ordering, offset/limit and projection of a
        cacheable select to the table snapshot. Returns fresh row dicts.
        """
        rows_by_pk = self.snapshot(table, loader)

        model = self.schema.get_table(table)
        pk_value = primary_lookup(model, where)
        if pk_value is not _MISSING:
            # Snapshot keys are normalized; "7" must find the row keyed 7.
            pk_column = model.columns.get(model.primary[0])
            if pk_column is not None:
                pk_value = normalize_value(pk_column.type, pk_value)
            row = rows_by_pk.get(pk_value)
            rows = [row] if row is not None else []
        else:
            rows = list(rows_by_pk.values())

        if options.get("order_by"):
            rows = sort_rows(rows, options["order_by"])

        start, count = parse_limit(options.get("limit"), options.get("offset"))
        rows = rows[start:] if count is None else rows[start:start + count]

        fields = options.get("fields")
        if fields:
            return [{f: row[f] for f in fields if f in row} for row in rows]
        return [dict(row) for row in rows]

    @staticmethod
    def memo_key(where: Where, options: Mapping[str, Any]) -> str:
        return "query:" + json.dumps([where, dict(options)], sort_keys=True, default=str)

    def recall(self, table: str, key: str) -> Optional[list[dict[str, Any]]]:
        rows = self._memory.get(table, {}).get(key)
        observe_cache_lookup("memory", rows is not None)
        if rows is None:
            return None
        return [dict(row) for row in rows]

    def remember(self, table: str, key: str, rows: list[dict[str, Any]], primary: bool = False) -> None:
        """Keep a materialized result when it is small or a primary-key lookup."""
        if primary or len(rows) < MEMORY_CACHE_MAX_ROWS:
            self._memory.setdefault(table, {})[key] = [dict(row) for row in rows]

    def invalidate(self, table: str) -> None:
        self._track(table)
        self.store.invalidate_tags([self.tag_for(table)])
        self._memory.pop(table, None)

    def end_transaction(self) -> None:
        """The transaction committed; what it cached is valid for everyone."""
        self._transaction_tables.clear()

    def discard_transaction(self) -> None:
        """
        Drop everything cached from the rolled-back transaction: shared
        entries of every table it loaded or changed, and the whole memory
        layer.
        """
        tables, self._transaction_tables = self._transaction_tables, set()
        if tables:
            logger.debug("Rollback drops cached results of %s", ", ".join(sorted(tables)))
            self.store.invalidate_tags([self.tag_for(table) for table in sorted(tables)])
        self._memory.clear()
