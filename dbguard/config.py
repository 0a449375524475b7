from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Optional

from sqlalchemy.engine import URL, make_url

from .errors import ConfigurationError


@dataclass
class QueryLimits:
    """
    Statement ceilings for one connection.

    None disables a category. Counters are connection-lifetime, so these are
    guardrails against runaway loops in long batch processes, not throttles.
    """

    CATEGORIES: ClassVar[tuple[str, ...]] = ("query", "table", "total")

    query: Optional[int] = 100
    table: Optional[int] = 10_000
    total: Optional[int] = None

    def __post_init__(self) -> None:
        for category in self.CATEGORIES:
            self._validate(category, getattr(self, category))

    @staticmethod
    def _validate(category: str, value: Optional[int]) -> None:
        if value is None:
            return
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ConfigurationError(
                f"Query limit {category!r} must be a positive integer or None, got {value!r}"
            )

    def get(self, category: str) -> Optional[int]:
        if category not in self.CATEGORIES:
            raise ConfigurationError(f"Query limit {category!r} not found")
        return getattr(self, category)

    def set(self, category: str, value: Optional[int]) -> None:
        if category not in self.CATEGORIES:
            raise ConfigurationError(f"Query limit {category!r} not found")
        self._validate(category, value)
        setattr(self, category, value)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "QueryLimits":
        data = dict(data or {})
        unknown = set(data) - set(cls.CATEGORIES)
        if unknown:
            raise ConfigurationError(f"Query limit {sorted(unknown)[0]!r} not found")
        return cls(**data)


@dataclass
class ConnectionConfig:
    host: str = "localhost"
    port: int = 3306
    username: str = "root"
    password: str = ""
    name: str = "database"
    charset: str = "utf8mb4"
    driver: str = "mysql+pymysql"
    # Full SQLAlchemy URL; overrides the discrete fields above when set.
    url: Optional[str] = None
    limits: QueryLimits = field(default_factory=QueryLimits)
    # Tables cached whole even when they hold more than the snapshot row cap.
    cache_tables: tuple[str, ...] = ()
    cache_ttl: int = 3600 * 24

    def __post_init__(self) -> None:
        """Validate configuration parameters."""
        if not self.name:
            raise ConfigurationError("Database name cannot be empty")
        if not isinstance(self.port, int) or self.port <= 0:
            raise ConfigurationError(f"port must be a positive integer, got {self.port!r}")
        if self.cache_ttl <= 0:
            raise ConfigurationError("cache_ttl must be > 0")
        self.cache_tables = tuple(self.cache_tables)

    def sqlalchemy_url(self) -> URL:
        if self.url is not None:
            return make_url(self.url)
        return URL.create(
            self.driver,
            username=self.username,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.name,
            query={"charset": self.charset},
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConnectionConfig":
        data = dict(data)
        # Older configs used "user"
        if "user" in data and "username" not in data:
            data["username"] = data.pop("user")
        else:
            data.pop("user", None)
        limits = data.pop("limits", None)
        if isinstance(limits, QueryLimits):
            data["limits"] = limits
        else:
            data["limits"] = QueryLimits.from_mapping(limits)
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown connection option(s): {sorted(unknown)}")
        return cls(**data)


@dataclass
class DbConfig:
    """Named database connections, keyed by logical name ("primary" by default)."""

    databases: dict[str, ConnectionConfig] = field(
        default_factory=lambda: {"primary": ConnectionConfig()}
    )

    def __post_init__(self) -> None:
        if not self.databases:
            raise ConfigurationError("At least one database must be configured")

    def get(self, name: str) -> ConnectionConfig:
        try:
            return self.databases[name]
        except KeyError:
            raise ConfigurationError(f"Db {name!r} not found in config") from None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DbConfig":
        databases = data.get("databases") or {}
        if not databases:
            return cls()
        return cls(
            databases={
                name: ConnectionConfig.from_mapping(options)
                for name, options in databases.items()
            }
        )
