from __future__ import annotations

import struct
from typing import Any, Mapping, Optional

from .models import TableModel

FLOAT_TYPES = frozenset({"double", "float", "decimal", "real", "numeric"})
INT_TYPES = frozenset({"tinyint", "smallint", "mediumint", "int", "integer", "bigint", "year"})
POINT_TYPE = "point"

# MySQL internal geometry: 4-byte SRID, then WKB (byte order, type, x, y)
_MYSQL_POINT_SIZE = 25


def parse_point(value: Any) -> Optional[list[float]]:
    """
    Parse a point into [x, y].

    Accepts the textual "POINT(x y)" form and MySQL's binary geometry.
    POINT(0 0) is the unset sentinel and, like malformed input, yields None.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        if len(raw) != _MYSQL_POINT_SIZE:
            return None
        fmt = "<" if raw[4] == 1 else ">"
        (geometry_type,) = struct.unpack_from(fmt + "I", raw, 5)
        if geometry_type != 1:
            return None
        coords = list(struct.unpack_from(fmt + "dd", raw, 9))
    else:
        text = str(value).strip()
        if not text.upper().startswith("POINT(") or not text.endswith(")"):
            return None
        parts = text[6:-1].split()
        if len(parts) != 2:
            return None
        try:
            coords = [float(p) for p in parts]
        except ValueError:
            return None

    if coords[0] == 0 and coords[1] == 0:
        return None
    return coords


def _to_int(value: Any) -> Any:
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    # "42.0" from a loosely typed column
    number = _to_float(value)
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return value


def _to_float(value: Any) -> Any:
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


def normalize_value(column_type: str, value: Any) -> Any:
    """
    Coerce a driver value to the Python type of its column. Values that do
    not convert are returned unchanged.
    """
    if value is None:
        return None
    if column_type in FLOAT_TYPES:
        return _to_float(value)
    if column_type in INT_TYPES:
        return _to_int(value)
    if column_type == POINT_TYPE:
        return parse_point(value)
    return value


def normalize_row(model: TableModel, row: Mapping[str, Any]) -> dict[str, Any]:
    """Coerce every known column of a row to its Python type. Returns a new dict."""
    normalized = {}
    for key, value in row.items():
        column = model.columns.get(key)
        if column is not None:
            value = normalize_value(column.type, value)
        normalized[key] = value
    return normalized
