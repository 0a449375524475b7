from __future__ import annotations

import re
from typing import Any, Mapping, Optional, Protocol, Sequence, Union

import sqlalchemy as sa
from sqlalchemy.engine import Dialect
from sqlalchemy.sql import ClauseElement

from ..errors import ConfigurationError
from .models import Where
from .options import is_full_table, order_key, parse_limit
from .schema import SchemaProvider

Rows = Union[Mapping[str, Any], Sequence[Mapping[str, Any]]]

_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class QueryBuilder(Protocol):
    """
    Renders structured operations to SQL text.

    A None result means there is nothing to execute (e.g. an empty update).
    """

    def build_select(self, table: str, where: Where, options: Mapping[str, Any]) -> Optional[str]:
        ...

    def build_insert(self, table: str, data: Rows, options: Mapping[str, Any]) -> Optional[str]:
        ...

    def build_update(
        self, table: str, where: Where, data: Mapping[str, Any], options: Mapping[str, Any]
    ) -> Optional[str]:
        ...

    def build_delete(self, table: str, where: Where, options: Mapping[str, Any]) -> Optional[str]:
        ...

    def build_union(self, selects: Sequence[str], options: Mapping[str, Any]) -> Optional[str]:
        ...


def validate_identifier(name: str, identifier_type: str = "identifier") -> str:
    """
    Validate that an identifier (table/column name) is safe for SQL interpolation.

    Identifiers MUST still come from trusted code, not from user input; this
    only rejects malformed names.

    Raises:
        ConfigurationError: If the identifier is not a string or is malformed
    """
    if not isinstance(name, str):
        raise ConfigurationError(f"{identifier_type} must be a string, got {type(name).__name__}")
    if not _IDENTIFIER_RE.match(name):
        raise ConfigurationError(
            f"Invalid {identifier_type} {name!r}: "
            "must start with letter/underscore and contain only alphanumeric characters and underscores"
        )
    if len(name) > 64:
        raise ConfigurationError(f"{identifier_type} {name!r} exceeds the 64-character limit")
    return name


class SqlAlchemyQueryBuilder:
    """
    Builds single-table statements with SQLAlchemy Core and renders them
    with inline literals for the given dialect.

    Supported where forms: a bare primary key value, or a mapping of
    column -> value where None means IS NULL and a list/tuple/set means IN.
    Joins are not supported; plug in another builder for them.
    """

    def __init__(self, schema: SchemaProvider, dialect: Dialect) -> None:
        self.schema = schema
        self.dialect = dialect

    def _compile(self, stmt: ClauseElement) -> str:
        sql = str(stmt.compile(dialect=self.dialect, compile_kwargs={"literal_binds": True}))
        # Statements are sent without bind parameters, so undo the percent
        # escaping that format-style drivers (e.g. pymysql) expect.
        if getattr(self.dialect.identifier_preparer, "_double_percents", False):
            sql = sql.replace("%%", "%")
        return sql

    @staticmethod
    def _literal(value: Any) -> ClauseElement:
        return sa.null() if value is None else sa.literal(value)

    def _column(self, name: str) -> sa.ColumnClause:
        return sa.column(validate_identifier(name, "column"))

    def _table(self, table: str, columns: Sequence[str] = ()) -> sa.TableClause:
        return sa.table(validate_identifier(table, "table"), *[self._column(c) for c in columns])

    def _where_clause(self, table: str, where: Where) -> Optional[ClauseElement]:
        if is_full_table(where):
            return None
        if not isinstance(where, Mapping):
            pk = self.schema.get_table(table).single_primary
            if pk is None:
                raise ConfigurationError(
                    f"Table {table!r} has no single-column primary key; use a where mapping"
                )
            where = {pk: where}

        clauses = []
        # Sorted for deterministic SQL text
        for col, value in sorted(where.items()):
            column = self._column(col)
            if value is None:
                clauses.append(column.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(column.in_([sa.literal(v) for v in value]))
            else:
                clauses.append(column == sa.literal(value))
        return sa.and_(*clauses)

    def _columns_clause(self, fields: Any) -> list:
        if not fields:
            return [sa.literal_column("*")]
        if isinstance(fields, str):
            # Raw expression, e.g. "COUNT(*)"
            return [sa.literal_column(fields)]
        return [self._column(f) for f in fields]

    def build_select(self, table: str, where: Where, options: Mapping[str, Any]) -> Optional[str]:
        if options.get("joins"):
            raise ConfigurationError("Joins are not supported by SqlAlchemyQueryBuilder")

        stmt = sa.select(*self._columns_clause(options.get("fields"))).select_from(self._table(table))

        clause = self._where_clause(table, where)
        if clause is not None:
            stmt = stmt.where(clause)

        group_by = options.get("group_by")
        if group_by:
            if isinstance(group_by, str):
                stmt = stmt.group_by(sa.literal_column(group_by))
            else:
                stmt = stmt.group_by(*[self._column(c) for c in group_by])

        order_by = options.get("order_by")
        if order_by:
            if isinstance(order_by, str):
                stmt = stmt.order_by(sa.text(order_by))
            else:
                for item in order_by:
                    column, descending = order_key(item)
                    col = self._column(column)
                    stmt = stmt.order_by(col.desc() if descending else col.asc())

        try:
            start, count = parse_limit(options.get("limit"), options.get("offset"))
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from None
        if count is not None:
            stmt = stmt.limit(count)
        if start:
            stmt = stmt.offset(start)

        return self._compile(stmt)

    def build_insert(self, table: str, data: Rows, options: Mapping[str, Any]) -> Optional[str]:
        rows = [data] if isinstance(data, Mapping) else list(data)
        if not rows:
            return None

        # Column order follows first appearance across the rows
        columns = list(dict.fromkeys(col for row in rows for col in row))
        stmt = sa.insert(self._table(table, columns))
        if not columns:
            return self._compile(stmt)

        values = [{col: self._literal(row.get(col)) for col in columns} for row in rows]
        stmt = stmt.values(values[0] if len(values) == 1 else values)
        return self._compile(stmt)

    def build_update(
        self, table: str, where: Where, data: Mapping[str, Any], options: Mapping[str, Any]
    ) -> Optional[str]:
        if not data:
            return None
        stmt = sa.update(self._table(table, list(data))).values(
            {col: self._literal(value) for col, value in data.items()}
        )
        clause = self._where_clause(table, where)
        if clause is not None:
            stmt = stmt.where(clause)
        return self._compile(stmt)

    def build_delete(self, table: str, where: Where, options: Mapping[str, Any]) -> Optional[str]:
        stmt = sa.delete(self._table(table))
        clause = self._where_clause(table, where)
        if clause is not None:
            stmt = stmt.where(clause)
        return self._compile(stmt)

    def build_union(self, selects: Sequence[str], options: Mapping[str, Any]) -> Optional[str]:
        if not selects:
            return None
        sql = " UNION ".join(selects)

        order_by = options.get("order_by")
        if order_by is not None:
            if not isinstance(order_by, str):
                raise ConfigurationError('Only string "order_by" is supported in union selects')
            sql += " ORDER BY " + order_by

        limit = options.get("limit")
        if limit is not None:
            try:
                start, count = parse_limit(limit)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from None
            sql += f" LIMIT {start}, {count}" if start else f" LIMIT {count}"
        return sql
