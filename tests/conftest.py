from __future__ import annotations

from collections.abc import Callable, Iterator
from typing import Optional, Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from dbguard.config import ConnectionConfig, QueryLimits
from dbguard.db.connection import DbConnection
from dbguard.db.hooks import DbProvider, StaticProviderRegistry
from dbguard.events import EventBus

from ._doubles import RecordingCacheStore, RecordingDriver


SCHEMA_SQL = (
    """
    CREATE TABLE users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name VARCHAR(50),
        score FLOAT,
        age INTEGER
    )
    """,
    """
    CREATE TABLE posts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER,
        title VARCHAR(100)
    )
    """,
    """
    CREATE TABLE tags (
        post_id INTEGER NOT NULL,
        tag VARCHAR(20) NOT NULL,
        PRIMARY KEY (post_id, tag)
    )
    """,
)


@pytest.fixture
def engine(tmp_path) -> Iterator[Engine]:
    """
    SQLite engine over a per-test database file holding the users, posts
    and tags tables.
    """
    eng = create_engine(f"sqlite:///{tmp_path / 'dbguard.sqlite'}")
    with eng.begin() as conn:
        for sql in SCHEMA_SQL:
            conn.exec_driver_sql(sql)

    yield eng
    eng.dispose()


@pytest.fixture
def store() -> RecordingCacheStore:
    return RecordingCacheStore()


@pytest.fixture
def make_db(engine: Engine, store: RecordingCacheStore) -> Iterator[Callable[..., DbConnection]]:
    """
    Factory fixture for connections over the test database.

    Usage:
        db = make_db(providers=[MyProvider()], limits=QueryLimits(query=5))
    """
    opened: list[DbConnection] = []

    def _make(
        providers: Sequence[DbProvider] = (),
        events: Optional[EventBus] = None,
        limits: Optional[QueryLimits] = None,
        cache_tables: Sequence[str] = (),
    ) -> DbConnection:
        config = ConnectionConfig(
            url=engine.url.render_as_string(hide_password=False),
            limits=limits or QueryLimits(),
            cache_tables=tuple(cache_tables),
        )
        db = DbConnection(
            "primary",
            config,
            driver=RecordingDriver(engine),
            cache_store=store,
            events=events,
            providers=StaticProviderRegistry(providers),
        )
        opened.append(db)
        return db

    yield _make

    for db in opened:
        db.close()


@pytest.fixture
def db(make_db: Callable[..., DbConnection]) -> DbConnection:
    return make_db()


@pytest.fixture
def committed_count(engine: Engine) -> Callable[[str], int]:
    """Row count as seen by a separate connection, i.e. committed rows only."""

    def _count(table: str) -> int:
        with engine.connect() as conn:
            return conn.exec_driver_sql(f"SELECT COUNT(*) FROM {table}").scalar()

    return _count
