from __future__ import annotations

import logging
from typing import Callable, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from ..config import DbConfig
from ..events import EventBus
from .cache import CacheStore, MemoryCacheStore
from .connection import DbConnection
from .driver import SqlAlchemyDriver
from .hooks import ProviderRegistry

logger = logging.getLogger(__name__)


class DbManager:
    """
    Named registry of connections.

    Connections are opened lazily on first get() and reused afterwards; every
    connection shares the manager's cache store, event bus and providers.

    Usage:
        with DbManager(DbConfig.from_mapping(settings)) as dbs:
            dbs.get().insert("users", {"name": "ada"})
            dbs.get("reporting").count("events")
    """

    def __init__(
        self,
        config: DbConfig,
        *,
        cache_store: Optional[CacheStore] = None,
        events: Optional[EventBus] = None,
        providers: Optional[ProviderRegistry] = None,
        engine_factory: Callable[..., Engine] = create_engine,
    ) -> None:
        self.config = config
        # One store for every connection so snapshots are shared.
        self.cache_store = cache_store or MemoryCacheStore()
        self.events = events
        self.providers = providers
        self.engine_factory = engine_factory
        self._connections: dict[str, DbConnection] = {}
        self._engines: dict[str, Engine] = {}

    def __enter__(self) -> "DbManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close_all()

    def get(self, name: str = "primary") -> DbConnection:
        """
        Return the connection for ``name``, opening it on first use.

        Raises:
            ConfigurationError: If ``name`` is not configured
        """
        conn = self._connections.get(name)
        if conn is not None:
            return conn

        conn_config = self.config.get(name)
        engine = self.engine_factory(conn_config.sqlalchemy_url(), pool_pre_ping=True)
        logger.info("Opening connection %r to %s", name, engine.url.render_as_string(hide_password=True))
        conn = DbConnection(
            name,
            conn_config,
            driver=SqlAlchemyDriver(engine),
            cache_store=self.cache_store,
            events=self.events,
            providers=self.providers,
        )
        self._connections[name] = conn
        self._engines[name] = engine
        return conn

    def connections(self) -> dict[str, DbConnection]:
        return dict(self._connections)

    def close_all(self) -> None:
        """Terminate and close every open connection; the first failure is re-raised."""
        first_error: Optional[BaseException] = None
        for name, conn in list(self._connections.items()):
            try:
                conn.close()
            except Exception as exc:
                logger.error("Failed to close connection %r: %s", name, exc)
                if first_error is None:
                    first_error = exc
            finally:
                self._connections.pop(name, None)
                engine = self._engines.pop(name, None)
                if engine is not None:
                    engine.dispose()
        if first_error is not None:
            raise first_error
