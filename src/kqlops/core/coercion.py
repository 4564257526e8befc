"""Typed cell coercion.

Raw JSON scalars from the service are turned into Python values according to
the column's declared type. Coercion never raises: a value that does not fit
its column becomes None and a warning message is returned next to it.
"""

from __future__ import annotations

import math
import re
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1
_INT64_MIN, _INT64_MAX = -(2**63), 2**63 - 1
_DECIMAL_MAX_DIGITS = 38

_TIMESPAN = re.compile(
    r"^(?P<neg>-)?((?P<days>\d+)\.)?(?P<hours>\d+):(?P<minutes>\d+):(?P<seconds>\d+)"
    r"(\.(?P<ticks>\d+))?$"
)
# service emits up to 7 fractional digits; fromisoformat wants exactly 6
_DATETIME_FRACTION = re.compile(r"\.(\d+)")

_SPECIAL_FLOATS = {"NaN": math.nan, "Infinity": math.inf, "-Infinity": -math.inf}


class ColumnType(str, Enum):
    """Normalized column types."""

    BOOL = "bool"
    INT = "int"
    LONG = "long"
    REAL = "real"
    DECIMAL = "decimal"
    DATETIME = "datetime"
    TIMESPAN = "timespan"
    GUID = "guid"
    STRING = "string"
    DYNAMIC = "dynamic"

    @classmethod
    def from_tag(cls, tag: str | None) -> ColumnType | None:
        """
        Resolve a declared type tag.

        Args:
            tag: Kusto type name (`long`, `datetime`, ...) or a .NET `DataType`
                name from v1 responses (`Int64`, `DateTime`, ...).

        Returns:
            The ColumnType, or None when the tag is not recognized.
        """
        if not tag:
            return None
        return _TAGS.get(tag.strip().lower())


_TAGS: dict[str, ColumnType] = {
    "bool": ColumnType.BOOL,
    "boolean": ColumnType.BOOL,
    "int": ColumnType.INT,
    "int32": ColumnType.INT,
    "sbyte": ColumnType.BOOL,
    "long": ColumnType.LONG,
    "int64": ColumnType.LONG,
    "real": ColumnType.REAL,
    "double": ColumnType.REAL,
    "decimal": ColumnType.DECIMAL,
    "sqldecimal": ColumnType.DECIMAL,
    "datetime": ColumnType.DATETIME,
    "date": ColumnType.DATETIME,
    "timespan": ColumnType.TIMESPAN,
    "time": ColumnType.TIMESPAN,
    "guid": ColumnType.GUID,
    "uuid": ColumnType.GUID,
    "uniqueid": ColumnType.GUID,
    "string": ColumnType.STRING,
    "dynamic": ColumnType.DYNAMIC,
    "object": ColumnType.DYNAMIC,
}


def _mismatch(column_type: ColumnType, raw: Any) -> tuple[None, str]:
    return None, f"cannot coerce {raw!r} to {column_type.value}"


def _to_bool(raw: Any) -> bool | None:
    if isinstance(raw, bool):
        return raw
    # SByte booleans arrive as 0/1 in v1
    if isinstance(raw, int) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str) and raw.lower() in ("true", "false"):
        return raw.lower() == "true"
    return None


def _to_int(raw: Any, low: int, high: int) -> int | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float) and raw.is_integer():
        value = int(raw)
    elif isinstance(raw, str):
        # int() accepts "1_000"; the service never writes digit separators
        if "_" in raw:
            return None
        try:
            value = int(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return value if low <= value <= high else None


def _to_real(raw: Any) -> float | None:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, float):
        return raw
    if isinstance(raw, str) and raw in _SPECIAL_FLOATS:
        return _SPECIAL_FLOATS[raw]
    if not isinstance(raw, (int, str)) or (isinstance(raw, str) and "_" in raw):
        return None
    try:
        value = float(raw)
    except (OverflowError, ValueError):
        return None
    # "1e999" parses to inf; only the spelled-out names are real infinities
    return value if math.isfinite(value) else None


def _to_decimal(raw: Any) -> Decimal | None:
    if isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return None
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        return None
    # SqlDecimal holds at most 38 digits
    if not value.is_finite() or value.adjusted() >= _DECIMAL_MAX_DIGITS:
        return None
    return value


def parse_datetime(raw: str) -> datetime | None:
    """Parse an ISO 8601 timestamp, assuming UTC when no offset is given."""
    text = raw.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _DATETIME_FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text)
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def parse_timespan(raw: str) -> timedelta | None:
    """Parse `[-][d.]hh:mm:ss[.fffffff]`; the fraction counts 100ns ticks."""
    match = _TIMESPAN.match(raw.strip())
    if not match:
        return None
    ticks = match.group("ticks") or "0"
    # ticks are 7 digits wide; pad or cut to microseconds
    micros = int(ticks.ljust(7, "0")[:7]) // 10
    try:
        value = timedelta(
            days=int(match.group("days") or 0),
            hours=int(match.group("hours")),
            minutes=int(match.group("minutes")),
            seconds=int(match.group("seconds")),
            microseconds=micros,
        )
    except OverflowError:
        return None
    return -value if match.group("neg") else value


def coerce_value(column_type: ColumnType, raw: Any) -> tuple[Any, str | None]:
    """
    Coerce one raw cell to the column's type.

    Returns:
        A `(value, warning)` pair. `warning` is None on success; when the raw
        value does not fit, value is None and warning describes the problem.
    """
    if raw is None:
        return None, None

    if column_type == ColumnType.DYNAMIC:
        return raw, None

    if column_type == ColumnType.STRING:
        if isinstance(raw, str):
            return raw, None
        return _mismatch(column_type, raw)

    if column_type == ColumnType.BOOL:
        value: Any = _to_bool(raw)
    elif column_type == ColumnType.INT:
        value = _to_int(raw, _INT32_MIN, _INT32_MAX)
    elif column_type == ColumnType.LONG:
        value = _to_int(raw, _INT64_MIN, _INT64_MAX)
    elif column_type == ColumnType.REAL:
        value = _to_real(raw)
    elif column_type == ColumnType.DECIMAL:
        value = _to_decimal(raw)
    elif column_type == ColumnType.DATETIME:
        value = parse_datetime(raw) if isinstance(raw, str) else None
    elif column_type == ColumnType.TIMESPAN:
        value = parse_timespan(raw) if isinstance(raw, str) else None
    elif column_type == ColumnType.GUID:
        try:
            value = uuid.UUID(raw) if isinstance(raw, str) else None
        except ValueError:
            value = None
    else:
        value = None

    if value is None:
        return _mismatch(column_type, raw)
    return value, None
