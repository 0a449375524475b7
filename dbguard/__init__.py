from .config import ConnectionConfig, DbConfig, QueryLimits
from .db.connection import DbConnection
from .db.hooks import DbProvider
from .db.manager import DbManager
from .errors import (
    CacheStoreError,
    ConfigurationError,
    ConstraintViolation,
    DbGuardError,
    DriverError,
    GuardrailExceeded,
    UnsafeOperation,
)

__all__ = [
    "DbConnection",
    "DbManager",
    "DbProvider",
    "DbConfig",
    "ConnectionConfig",
    "QueryLimits",
    "DbGuardError",
    "ConfigurationError",
    "GuardrailExceeded",
    "UnsafeOperation",
    "DriverError",
    "ConstraintViolation",
    "CacheStoreError",
]
