from __future__ import annotations

import pytest

from dbguard.db.cache import (
    MEMORY_CACHE_MAX_ROWS,
    MemoryCacheStore,
    ResultCache,
    is_primary_lookup,
    sort_rows,
)
from dbguard.db.models import ColumnModel, TableModel
from dbguard.db.schema import StaticSchemaProvider

from .._doubles import RecordingCacheStore

USERS = TableModel(
    name="users",
    columns={"id": ColumnModel("int"), "name": ColumnModel("varchar"), "score": ColumnModel("float")},
    primary=["id"],
)
TAGS = TableModel(
    name="tags",
    columns={"post_id": ColumnModel("int"), "tag": ColumnModel("varchar")},
    primary=["post_id", "tag"],
)


def _cache(row_count: int = 50, cache_tables=(), store=None) -> ResultCache:
    return ResultCache(
        store=store or MemoryCacheStore(),
        namespace="localhost.test",
        schema=StaticSchemaProvider({"users": USERS, "tags": TAGS}),
        count_rows=lambda table: row_count,
        cache_tables=cache_tables,
    )


class TestIsSelectCacheable:
    """Cacheability decisions for single-table selects."""

    @pytest.mark.parametrize(
        "where, options",
        [
            (None, {}),
            ({}, {}),
            ({"id": 5}, {}),
            (5, {"limit": 1, "stream": False}),
            (None, {"order_by": ["name", ("score", "DESC")], "limit": "10, 5", "fields": ["id"]}),
        ],
    )
    def test_cacheable(self, where, options) -> None:
        assert _cache().is_select_cacheable("users", where, options) is True

    @pytest.mark.parametrize(
        "where, options",
        [
            ({"id": 5, "name": "x"}, {}),
            ({"name": "x"}, {}),
            ({"id": [1, 2]}, {}),
            ({"id": None}, {}),
            (None, {"cache": False}),
            (None, {"order_by": "name"}),
            (None, {"fields": "id, name"}),
            (None, {"group_by": ["name"]}),
            (None, {"joins": [{"table": "posts"}]}),
            (None, {"debug": True}),
            (None, {"limit": "ten"}),
        ],
    )
    def test_not_cacheable(self, where, options) -> None:
        assert _cache().is_select_cacheable("users", where, options) is False

    def test_composite_primary_key_is_never_cacheable(self) -> None:
        assert _cache().is_select_cacheable("tags", None, {}) is False

    def test_large_tables_need_whitelisting(self) -> None:
        assert _cache(row_count=201).is_select_cacheable("users", None, {}) is False
        assert _cache(row_count=200).is_select_cacheable("users", None, {}) is True
        assert _cache(row_count=201, cache_tables=["users"]).is_select_cacheable("users", None, {}) is True

    def test_row_count_is_consulted_last(self) -> None:
        calls: list[str] = []
        cache = ResultCache(
            store=MemoryCacheStore(),
            namespace="n",
            schema=StaticSchemaProvider({"users": USERS}),
            count_rows=lambda table: calls.append(table) or 0,
        )

        cache.is_select_cacheable("users", {"name": "x"}, {})
        cache.is_select_cacheable("users", None, {"order_by": "name"})

        assert calls == []


def test_primary_lookup_forms() -> None:
    assert is_primary_lookup(USERS, 3)
    assert is_primary_lookup(USERS, {"id": "3"})
    assert not is_primary_lookup(USERS, True)
    assert not is_primary_lookup(USERS, {"name": "x"})
    assert not is_primary_lookup(TAGS, {"post_id": 1})


class TestSortRows:
    def test_multi_key_with_descending(self) -> None:
        rows = [
            {"id": 1, "a": 2, "b": "x"},
            {"id": 2, "a": 1, "b": "y"},
            {"id": 3, "a": 2, "b": "z"},
            {"id": 4, "a": 1, "b": "w"},
        ]

        result = sort_rows(rows, ["a", ["b", "desc"]])

        assert [r["id"] for r in result] == [2, 4, 3, 1]

    def test_ties_keep_insertion_order(self) -> None:
        rows = [{"id": i, "a": 1} for i in range(5)]

        assert [r["id"] for r in sort_rows(rows, [("a", "DESC")])] == [0, 1, 2, 3, 4]

    def test_none_sorts_first_ascending(self) -> None:
        rows = [{"id": 1, "a": 3}, {"id": 2, "a": None}, {"id": 3, "a": 1}]

        assert [r["id"] for r in sort_rows(rows, ["a"])] == [2, 3, 1]
        assert [r["id"] for r in sort_rows(rows, ["a DESC"])] == [1, 3, 2]


class TestSnapshot:
    ROWS = [
        {"id": 1, "name": "ada", "score": 2.0},
        {"id": 2, "name": "bob", "score": 9.0},
        {"id": 3, "name": "cy", "score": 5.0},
    ]

    def test_loads_once_and_serves_from_memory(self) -> None:
        store = RecordingCacheStore()
        cache = _cache(store=store)
        loads: list[int] = []

        def loader():
            loads.append(1)
            return [dict(r) for r in self.ROWS]

        cache.select_from_snapshot("users", None, {}, loader)
        rows = cache.select_from_snapshot("users", 2, {}, loader)

        assert rows == [self.ROWS[1]]
        assert loads == [1]
        assert store.requested == [cache.rows_key("users")]

    def test_primary_value_is_coerced_to_the_key_type(self) -> None:
        cache = _cache()

        rows = cache.select_from_snapshot("users", {"id": "2"}, {}, lambda: self.ROWS)

        assert rows == [self.ROWS[1]]
        assert cache.select_from_snapshot("users", {"id": "two"}, {}, lambda: self.ROWS) == []

    def test_second_connection_reads_shared_store(self) -> None:
        store = MemoryCacheStore()
        first = _cache(store=store)
        second = _cache(store=store)
        first.select_from_snapshot("users", None, {}, lambda: self.ROWS)

        rows = second.select_from_snapshot("users", None, {}, lambda: pytest.fail("reloaded"))

        assert len(rows) == 3

    def test_order_offset_limit_fields(self) -> None:
        cache = _cache()

        rows = cache.select_from_snapshot(
            "users",
            {},
            {"order_by": [("score", "DESC")], "offset": 1, "limit": 5, "fields": ["name"]},
            lambda: self.ROWS,
        )

        assert rows == [{"name": "cy"}, {"name": "ada"}]

    def test_invalidate_drops_store_and_memory(self) -> None:
        store = RecordingCacheStore()
        cache = _cache(store=store)
        cache.select_from_snapshot("users", None, {}, lambda: self.ROWS)
        cache.remember("users", "query:x", [{"id": 1}])

        cache.invalidate("users")

        assert not cache.has_snapshot("users")
        assert cache.recall("users", "query:x") is None
        assert store.invalidated == [cache.tag_for("users")]

    def test_discard_transaction_drops_what_the_transaction_loaded(self) -> None:
        store = RecordingCacheStore()
        cache = _cache(store=store)
        cache.cached_count("tags", lambda: 3)
        cache.in_transaction = lambda: True
        cache.select_from_snapshot("users", None, {}, lambda: self.ROWS)

        cache.discard_transaction()

        assert store.invalidated == [cache.tag_for("users")]
        assert not cache.has_snapshot("users")

    def test_end_transaction_keeps_shared_entries(self) -> None:
        store = RecordingCacheStore()
        cache = _cache(store=store)
        cache.in_transaction = lambda: True
        cache.select_from_snapshot("users", None, {}, lambda: self.ROWS)

        cache.end_transaction()
        cache.discard_transaction()

        assert store.invalidated == []

    def test_cached_count(self) -> None:
        cache = _cache()
        loads: list[int] = []

        assert cache.cached_count("users", lambda: loads.append(1) or 7) == 7
        assert cache.cached_count("users", lambda: loads.append(1) or 8) == 7
        assert loads == [1]


class TestMemoryLayer:
    def test_small_results_are_remembered(self) -> None:
        cache = _cache()
        key = cache.memo_key({"name": "ada"}, {"stream": False})

        cache.remember("users", key, [{"id": 1}])

        assert cache.recall("users", key) == [{"id": 1}]

    def test_large_results_are_not_remembered(self) -> None:
        cache = _cache()
        rows = [{"id": i} for i in range(MEMORY_CACHE_MAX_ROWS)]

        cache.remember("users", "query:big", rows)

        assert cache.recall("users", "query:big") is None

    def test_primary_lookups_are_always_remembered(self) -> None:
        cache = _cache()
        rows = [{"id": i} for i in range(MEMORY_CACHE_MAX_ROWS)]

        cache.remember("users", "query:pk", rows, primary=True)

        assert cache.recall("users", "query:pk") is not None

    def test_memo_key_ignores_option_order(self) -> None:
        assert ResultCache.memo_key(1, {"a": 1, "b": 2}) == ResultCache.memo_key(1, {"b": 2, "a": 1})


class TestMemoryCacheStore:
    def test_ttl_expiry(self, monkeypatch) -> None:
        now = [1000.0]
        monkeypatch.setattr("dbguard.db.cache.time.monotonic", lambda: now[0])
        store = MemoryCacheStore()

        assert store.get_or_compute("k", lambda: 1, ttl=10) == 1
        assert store.get_or_compute("k", lambda: 2, ttl=10) == 1
        now[0] += 11
        assert store.get_or_compute("k", lambda: 3, ttl=10) == 3

    def test_tag_invalidation(self) -> None:
        store = MemoryCacheStore()
        store.get_or_compute("a", lambda: 1, ttl=60, tags=["t"])
        store.get_or_compute("b", lambda: 2, ttl=60, tags=["t"])
        store.get_or_compute("c", lambda: 3, ttl=60, tags=["u"])

        store.invalidate_tags(["t"])

        assert store.get_or_compute("a", lambda: 10, ttl=60) == 10
        assert store.get_or_compute("b", lambda: 20, ttl=60) == 20
        assert store.get_or_compute("c", lambda: 30, ttl=60) == 3
