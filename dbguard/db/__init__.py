from .cache import MemoryCacheStore, RedisCacheStore
from .connection import DbConnection
from .driver import SqlAlchemyDriver, StatementResult
from .hooks import DbProvider, EntryPointProviderRegistry, StaticProviderRegistry
from .manager import DbManager
from .models import ColumnModel, OperationType, TableModel, WriteQuery
from .schema import StaticSchemaProvider

__all__ = [
    "DbConnection",
    "DbManager",
    "DbProvider",
    "EntryPointProviderRegistry",
    "StaticProviderRegistry",
    "MemoryCacheStore",
    "RedisCacheStore",
    "SqlAlchemyDriver",
    "StatementResult",
    "StaticSchemaProvider",
    "ColumnModel",
    "TableModel",
    "OperationType",
    "WriteQuery",
]
