"""Row and filter vocabulary shared by the statement builder and Connection.

Every scalar is stored as its text encoding (or None for SQL NULL); the
conversion happens once, when a KeyValue or Row is built.
"""
from __future__ import annotations
import datetime as dt
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

Value = Optional[str]
Row = List[Value]
Rows = List[Row]
PrimaryKey = int
PrimaryKeys = List[PrimaryKey]

_EPOCH = dt.datetime(1970, 1, 1, tzinfo=dt.timezone.utc)


def to_value(obj: Any) -> Value:
    """Canonicalize a scalar to its text encoding.

    bool -> "0"/"1", timedelta -> whole seconds, datetime -> whole seconds
    since the epoch (naive datetimes are taken as local time).
    """
    if obj is None:
        return None
    if isinstance(obj, str):
        return obj
    if isinstance(obj, bool):
        return "1" if obj else "0"
    if isinstance(obj, (int, float, Decimal)):
        return str(obj)
    if isinstance(obj, dt.timedelta):
        return str(int(obj.total_seconds()))
    if isinstance(obj, dt.datetime):
        if obj.tzinfo is None:
            obj = obj.astimezone()
        return str(int((obj - _EPOCH).total_seconds()))
    raise TypeError(f"Unsupported value type: {type(obj).__name__}")


@dataclass(frozen=True)
class KeyValue:
    """A column name paired with an optional text value."""
    key: str
    value: Value = None

    def __init__(self, key: str, value: Any = None):
        object.__setattr__(self, "key", key)
        object.__setattr__(self, "value", to_value(value))

    @property
    def is_null(self) -> bool:
        return self.value is None


KeyValues = List[KeyValue]
KeyValuesLike = Union[None, Mapping[str, Any], Iterable[Union[KeyValue, Sequence[Any]]]]


def as_key_values(obj: KeyValuesLike) -> KeyValues:
    """Normalize filters/assignments into an ordered list of KeyValue.

    Raises TypeError for a bare string (a column name passed where filters
    were expected) and for items that are not (key, value) pairs.
    """
    if obj is None:
        return []
    if isinstance(obj, (str, bytes)):
        raise TypeError(f"Expected key-value pairs, got {type(obj).__name__} {obj!r}")
    if isinstance(obj, KeyValue):
        return [obj]
    if isinstance(obj, Mapping):
        return [KeyValue(k, v) for k, v in obj.items()]
    out: KeyValues = []
    for item in obj:
        if isinstance(item, KeyValue):
            out.append(item)
        elif isinstance(item, (str, bytes)) or not isinstance(item, Sequence) or len(item) != 2:
            raise TypeError(f"Expected a KeyValue or (key, value) pair, got {item!r}")
        else:
            key, value = item
            out.append(KeyValue(key, value))
    return out


def as_row(values: Iterable[Any]) -> Row:
    return [to_value(v) for v in values]
