from __future__ import annotations

import copy
import logging
from typing import TYPE_CHECKING, Mapping, Protocol

from sqlalchemy import inspect
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import NoSuchTableError, SQLAlchemyError

from ..errors import ConfigurationError, DriverError
from .models import ColumnModel, TableModel

if TYPE_CHECKING:
    from .hooks import HookPipeline

logger = logging.getLogger(__name__)


class SchemaProvider(Protocol):
    def get_table(self, name: str) -> TableModel:
        """Return the column and primary key metadata of a table."""
        ...


def _type_name(sa_type) -> str:
    # "VARCHAR(50)" -> "varchar", "INTEGER(11) UNSIGNED" -> "integer"
    return str(sa_type).split("(")[0].split()[0].lower()


class SqlAlchemySchemaProvider:
    """
    Reflects table metadata through SQLAlchemy's inspector.

    Types SQLAlchemy does not recognize (e.g. MySQL POINT) reflect as "null";
    declare them through a provider's alter_table_model hook.
    """

    def __init__(self, bind: Engine | Connection) -> None:
        self.bind = bind
        self._inspector = None

    def get_table(self, name: str) -> TableModel:
        if self._inspector is None:
            self._inspector = inspect(self.bind)
        try:
            columns = self._inspector.get_columns(name)
            pk = self._inspector.get_pk_constraint(name)
        except NoSuchTableError:
            raise ConfigurationError(f"Table {name!r} does not exist") from None
        except SQLAlchemyError as exc:
            raise DriverError(str(exc)) from exc

        return TableModel(
            name=name,
            columns={
                col["name"]: ColumnModel(
                    type=_type_name(col["type"]),
                    nullable=bool(col.get("nullable", True)),
                )
                for col in columns
            },
            primary=list(pk.get("constrained_columns") or []),
        )


class StaticSchemaProvider:
    """Schema provider over a fixed set of table models."""

    def __init__(self, tables: Mapping[str, TableModel]) -> None:
        self.tables = dict(tables)

    def get_table(self, name: str) -> TableModel:
        try:
            return self.tables[name]
        except KeyError:
            raise ConfigurationError(f"Table {name!r} does not exist") from None


class SchemaCache:
    """
    Memoizes table models for one connection.

    Each model is copied away from the provider, then passed through the
    alter_table_model hooks, each of which receives its own copy.
    """

    def __init__(self, provider: SchemaProvider, hooks: "HookPipeline | None" = None) -> None:
        self.provider = provider
        self.hooks = hooks
        self._tables: dict[str, TableModel] = {}

    def get_table(self, name: str) -> TableModel:
        model = self._tables.get(name)
        if model is None:
            model = copy.deepcopy(self.provider.get_table(name))
            if self.hooks is not None:
                model = self.hooks.alter_table_model(name, model)
            logger.debug("Loaded table model for %s (primary=%s)", name, model.primary)
            self._tables[name] = model
        return model
