from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from .models import Where

_LIMIT_RE = re.compile(r"^\s*(\d+)\s*(?:,\s*(\d+)\s*)?$")


def parse_limit(limit: Any, offset: Any = None) -> tuple[int, Optional[int]]:
    """
    Turn limit/offset options into (start, count).

    ``limit`` is an int, a numeric string, or an "offset, count" string.
    An explicit ``offset`` wins over the one embedded in ``limit``.

    Raises:
        ValueError: If the values cannot be interpreted
    """
    start = 0
    count: Optional[int] = None
    if limit is not None:
        if isinstance(limit, bool):
            raise ValueError(f"Invalid limit {limit!r}")
        if isinstance(limit, int):
            count = limit
        else:
            match = _LIMIT_RE.match(str(limit))
            if match is None:
                raise ValueError(f"Invalid limit {limit!r}")
            if match.group(2) is None:
                count = int(match.group(1))
            else:
                start, count = int(match.group(1)), int(match.group(2))
    if offset is not None:
        if isinstance(offset, bool) or not isinstance(offset, int):
            raise ValueError(f"Invalid offset {offset!r}")
        start = offset
    if start < 0 or (count is not None and count < 0):
        raise ValueError("limit and offset cannot be negative")
    return start, count


def order_key(item: Any) -> tuple[str, bool]:
    """
    Parse one order_by entry into (column, descending).

    Entries are "col", "col DESC", or a (col, direction) pair.
    """
    if isinstance(item, (list, tuple)):
        column = item[0]
        direction = item[1] if len(item) > 1 else "ASC"
    else:
        parts = str(item).split()
        column = parts[0]
        direction = parts[1] if len(parts) > 1 else "ASC"
    return column, str(direction).upper() == "DESC"


def is_full_table(where: Where) -> bool:
    return where is None or (isinstance(where, Mapping) and not where)
