from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Protocol

from sqlalchemy.engine import Connection, Dialect, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..errors import DriverError

logger = logging.getLogger(__name__)


@dataclass
class StatementResult:
    """
    Outcome of one executed statement.

    Iterating yields the fetched rows as dictionaries.
    """
    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0
    lastrowid: Optional[int] = None

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def scalar(self) -> Any:
        """First column of the first row, or None when there are no rows."""
        if not self.rows:
            return None
        return next(iter(self.rows[0].values()), None)


class Driver(Protocol):
    """
    Protocol for the native SQL connection.

    The driver executes fully rendered SQL text; it knows nothing about
    caching, limits or nesting. Transaction methods return the native
    success flag.
    """

    def execute(self, sql: str) -> StatementResult:
        """Execute a statement. Raises DriverError on failure."""
        ...

    def last_insert_id(self) -> Optional[int]:
        """Id generated by the most recent insert."""
        ...

    def begin_transaction(self) -> bool:
        ...

    def commit(self) -> bool:
        ...

    def rollback(self) -> bool:
        ...

    def close(self) -> None:
        ...


class SqlAlchemyDriver:
    """
    Driver backed by a single SQLAlchemy Connection.

    Outside an explicit transaction every statement is committed as soon as
    its rows are fetched, so reads never hold a transaction open.

    Rows are fetched in full before execute() returns, which keeps the one
    connection free for the next statement. Streaming a select therefore
    defers hook and normalization work, not memory.

    Usage:
        driver = SqlAlchemyDriver(create_engine(url))
        driver.begin_transaction()
        driver.execute("INSERT INTO ...")
        driver.commit()
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._conn: Connection | None = engine.connect()
        self._tx = None
        self._last_insert_id: Optional[int] = None

    @property
    def connection(self) -> Connection:
        """The active connection, raising if closed."""
        if self._conn is None:
            raise RuntimeError("Driver is closed")
        return self._conn

    @property
    def dialect(self) -> Dialect:
        return self.engine.dialect

    def execute(self, sql: str) -> StatementResult:
        conn = self.connection
        try:
            result = conn.exec_driver_sql(sql)
            try:
                if result.returns_rows:
                    statement = StatementResult(
                        rows=[dict(row) for row in result.mappings()],
                        rowcount=result.rowcount,
                    )
                else:
                    self._last_insert_id = result.lastrowid or None
                    statement = StatementResult(
                        rowcount=result.rowcount,
                        lastrowid=self._last_insert_id,
                    )
            finally:
                result.close()
            if self._tx is None:
                conn.commit()
        except SQLAlchemyError as exc:
            if self._tx is None and conn.in_transaction():
                # Only the implicit per-statement transaction; an explicit one
                # is left for the caller to roll back.
                conn.rollback()
            message = str(exc.orig) if getattr(exc, "orig", None) is not None else str(exc)
            raise DriverError(message) from exc
        return statement

    def last_insert_id(self) -> Optional[int]:
        return self._last_insert_id

    def begin_transaction(self) -> bool:
        conn = self.connection
        if self._tx is not None:
            return True
        try:
            if conn.in_transaction():
                # Close the transaction SQLAlchemy autobegan for reflection.
                conn.commit()
            self._tx = conn.begin()
        except SQLAlchemyError as exc:
            raise DriverError(str(exc)) from exc
        return True

    def commit(self) -> bool:
        if self._tx is None:
            return False
        tx, self._tx = self._tx, None
        try:
            tx.commit()
        except SQLAlchemyError as exc:
            raise DriverError(str(exc)) from exc
        return True

    def rollback(self) -> bool:
        if self._tx is None:
            return False
        tx, self._tx = self._tx, None
        try:
            tx.rollback()
        except SQLAlchemyError as exc:
            raise DriverError(str(exc)) from exc
        return True

    def close(self) -> None:
        if self._conn is None:
            return
        try:
            if self._tx is not None:
                logger.warning("Closing driver with an open transaction; rolling back")
                self._tx.rollback()
        finally:
            self._conn.close()
            self._conn = None
            self._tx = None
