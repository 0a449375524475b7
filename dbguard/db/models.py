from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Union

# A structured predicate, or a bare primary-key value.
Where = Union[Mapping[str, Any], int, None]


class OperationType(str, Enum):
    SELECT = "select"
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class ColumnModel:
    type: str
    nullable: bool = True


@dataclass
class TableModel:
    """
    Column metadata for one table.
    """
    name: str
    columns: dict[str, ColumnModel] = field(default_factory=dict)
    primary: list[str] = field(default_factory=list)

    @property
    def single_primary(self) -> Optional[str]:
        """The primary key column, when the key has exactly one column."""
        if len(self.primary) == 1:
            return self.primary[0]
        return None


@dataclass
class WriteQuery:
    """
    A single physical insert or update produced from a logical write.

    depends_on maps a column of ``data`` to the position of an earlier insert
    in the same batch; the column is set to the id that insert generated.
    """
    table: str
    data: Mapping[str, Any] = field(default_factory=dict)
    where: Where = None
    options: Mapping[str, Any] = field(default_factory=dict)
    op_type: OperationType = OperationType.INSERT
    depends_on: Mapping[str, int] = field(default_factory=dict)


@dataclass
class DeferredInsertBuffer:
    options: dict[str, Any]
    rows: list[Mapping[str, Any]] = field(default_factory=list)

    @property
    def threshold(self) -> int:
        return self.options["defer"]
