from __future__ import annotations

import copy
import logging
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol, Sequence

from ..errors import ConfigurationError
from .models import TableModel, Where, WriteQuery

if TYPE_CHECKING:
    from .connection import DbConnection

logger = logging.getLogger(__name__)

PROVIDER_KIND = "DbProvider"
ENTRY_POINT_GROUP = "dbguard.providers"


class DbProvider:
    """
    Base class for extension providers.

    Every hook is the identity; override the ones you need. Hooks receive the
    connection so they can issue their own queries (pass ``alter=False`` in
    those to avoid re-entering the chain).
    """

    def alter_select(
        self, db: "DbConnection", table: str, where: Where, options: dict[str, Any]
    ) -> tuple[Where, dict[str, Any]]:
        return where, options

    def alter_select_result(
        self, db: "DbConnection", table: str, row: dict[str, Any], options: Mapping[str, Any]
    ) -> dict[str, Any]:
        return row

    def alter_insert(self, db: "DbConnection", queries: list[WriteQuery]) -> list[WriteQuery]:
        return queries

    def alter_update(self, db: "DbConnection", queries: list[WriteQuery]) -> list[WriteQuery]:
        return queries

    def alter_delete(
        self, db: "DbConnection", table: str, where: Where, options: dict[str, Any]
    ) -> tuple[Where, dict[str, Any]]:
        return where, options

    def alter_table_model(self, db: "DbConnection", table: str, model: TableModel) -> TableModel:
        return model


class ProviderRegistry(Protocol):
    def find_providers(self, kind: str) -> Sequence[DbProvider]:
        """Ordered providers implementing ``kind``."""
        ...


class StaticProviderRegistry:
    def __init__(self, providers: Sequence[DbProvider] = ()) -> None:
        self.providers = list(providers)

    def find_providers(self, kind: str) -> Sequence[DbProvider]:
        if kind != PROVIDER_KIND:
            return []
        return list(self.providers)


class EntryPointProviderRegistry:
    """
    Discovers providers from installed distributions.

    Each entry point in the group must name a DbProvider subclass; it is
    instantiated with no arguments. Order is the order the entry points are
    reported in.
    """

    def __init__(self, group: str = ENTRY_POINT_GROUP) -> None:
        self.group = group

    def find_providers(self, kind: str) -> Sequence[DbProvider]:
        if kind != PROVIDER_KIND:
            return []
        providers = []
        for ep in entry_points(group=self.group):
            provider_cls = ep.load()
            if not (isinstance(provider_cls, type) and issubclass(provider_cls, DbProvider)):
                raise ConfigurationError(
                    f"Entry point {ep.name!r} in {self.group!r} is not a DbProvider subclass"
                )
            providers.append(provider_cls())
        logger.debug("Discovered %d provider(s) in %s", len(providers), self.group)
        return providers


class HookPipeline:
    """
    Threads operation state through an ordered list of providers.

    Each provider's output is the next provider's input.
    """

    def __init__(self, db: "DbConnection", providers: Sequence[DbProvider]) -> None:
        self.db = db
        self.providers = list(providers)

    def __bool__(self) -> bool:
        return bool(self.providers)

    def alter_select(
        self, table: str, where: Where, options: dict[str, Any]
    ) -> tuple[Where, dict[str, Any]]:
        for provider in self.providers:
            where, options = provider.alter_select(self.db, table, where, options)
        return where, options

    def alter_select_result(
        self, table: str, row: dict[str, Any], options: Mapping[str, Any]
    ) -> dict[str, Any]:
        for provider in self.providers:
            row = provider.alter_select_result(self.db, table, row, options)
        return row

    def alter_insert(self, queries: list[WriteQuery]) -> list[WriteQuery]:
        for provider in self.providers:
            queries = list(provider.alter_insert(self.db, queries))
        return queries

    def alter_update(self, queries: list[WriteQuery]) -> list[WriteQuery]:
        for provider in self.providers:
            queries = list(provider.alter_update(self.db, queries))
        return queries

    def alter_delete(
        self, table: str, where: Where, options: dict[str, Any]
    ) -> tuple[Where, dict[str, Any]]:
        for provider in self.providers:
            where, options = provider.alter_delete(self.db, table, where, options)
        return where, options

    def alter_table_model(self, table: str, model: TableModel) -> TableModel:
        for provider in self.providers:
            model = provider.alter_table_model(self.db, table, copy.deepcopy(model))
        return model


def resolve_dependencies(
    query: WriteQuery,
    index: int,
    generated_ids: Sequence[Optional[int]],
) -> dict[str, Any]:
    """
    Return the query's data with dependent columns set to earlier generated ids.

    Raises:
        ConfigurationError: If a dependency points at itself, a later query,
            or a query that generated no id
    """
    data = dict(query.data)
    for column, position in query.depends_on.items():
        if not isinstance(position, int) or not 0 <= position < index:
            raise ConfigurationError(
                f"Query #{index} on {query.table!r} depends on query #{position} "
                f"for column {column!r}, which does not precede it"
            )
        generated = generated_ids[position]
        if generated is None:
            raise ConfigurationError(
                f"Query #{index} on {query.table!r} depends on query #{position} "
                f"for column {column!r}, which generated no id"
            )
        data[column] = generated
    return data
