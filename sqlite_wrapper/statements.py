"""SQL statement builder.

Pure functions translating (table, columns, filters/assignments) into
parameterized SQL. Identifiers are validated, never quoted blindly; present
values always travel as bound parameters. NULLs are rendered inline since
``col = ?`` with a NULL parameter never matches.

Statement.to_literal() gives the inline-quoted rendering used for logging::

    >>> build_select("t", "string", [KeyValue("number", 9)]).to_literal()
    "SELECT string FROM t WHERE number = '9';"
"""
from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Iterable, Tuple

from .models import KeyValue, KeyValues, Value

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")
_PLACEHOLDER_RE = re.compile(r"\?")
AGGREGATES = ("COUNT", "SUM", "AVG")
QUOTE_CHAR = "'"


def quote(text: str, ch: str = QUOTE_CHAR) -> str:
    """Wrap text in ch, doubling any embedded ch."""
    return ch + text.replace(ch, ch * 2) + ch


@dataclass(frozen=True)
class Statement:
    sql: str
    params: Tuple[Value, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.sql)

    def to_literal(self) -> str:
        values = iter(self.params)
        unbound = object()

        def _sub(m):
            value = next(values, unbound)
            # raw SQL may carry a "?" with nothing bound to it
            return m.group(0) if value is unbound else _literal(value)
        return _PLACEHOLDER_RE.sub(_sub, self.sql)


def _literal(value: Value) -> str:
    return "NULL" if value is None else quote(value)


def _ident(name: str, allow_star: bool = False) -> str:
    if allow_star and name == "*":
        return name
    if not isinstance(name, str) or not _IDENT_RE.match(name):
        raise ValueError(f"Invalid identifier: {name!r}")
    return name


def _filters(filters: Iterable[KeyValue]) -> Tuple[str, Tuple[Value, ...]]:
    clauses, params = [], []
    for kv in filters:
        if kv.value is None:
            clauses.append(f"{_ident(kv.key)} IS NULL")
        else:
            clauses.append(f"{_ident(kv.key)} = ?")
            params.append(kv.value)
    if not clauses:
        return "", ()
    return " WHERE " + " AND ".join(clauses), tuple(params)


def _assignments(key_values: KeyValues) -> Tuple[str, Tuple[Value, ...]]:
    clauses, params = [], []
    for kv in key_values:
        if kv.value is None:
            clauses.append(f"{_ident(kv.key)} = NULL")
        else:
            clauses.append(f"{_ident(kv.key)} = ?")
            params.append(kv.value)
    return ", ".join(clauses), tuple(params)


def _insert_verb(replace: bool) -> str:
    return "INSERT OR REPLACE INTO" if replace else "INSERT INTO"


def build_select(table: str, column: str = "*", filters: KeyValues = ()) -> Statement:
    where, params = _filters(filters)
    return Statement(f"SELECT {_ident(column, allow_star=True)} FROM {_ident(table)}{where};", params)


def build_insert(table: str, key_values: KeyValues, replace: bool = False) -> Statement:
    """INSERT [OR REPLACE] INTO table(cols) VALUES (vals);

    Returns an empty Statement for empty key_values; callers must not run it.
    """
    if not key_values:
        return Statement("")
    cols = ", ".join(_ident(kv.key) for kv in key_values)
    vals = ", ".join("NULL" if kv.value is None else "?" for kv in key_values)
    params = tuple(kv.value for kv in key_values if kv.value is not None)
    return Statement(f"{_insert_verb(replace)} {_ident(table)}({cols}) VALUES ({vals});", params)


def build_insert_placeholders(table: str, column_count: int, replace: bool = False) -> Statement:
    """Positional insert template for row-by-row binding.

    Columns bind in the table's physical order; no column names are emitted.
    """
    if column_count < 1:
        raise ValueError("column_count must be >= 1")
    placeholders = ", ".join("?" * column_count)
    return Statement(f"{_insert_verb(replace)} {_ident(table)} VALUES ({placeholders});")


def build_update(table: str, assignments: KeyValues, filters: KeyValues = ()) -> Statement:
    # empty filters update every row
    if not assignments:
        raise ValueError("UPDATE requires at least one assignment")
    sets, set_params = _assignments(assignments)
    where, where_params = _filters(filters)
    return Statement(f"UPDATE {_ident(table)} SET {sets}{where};", set_params + where_params)


def build_delete(table: str, filters: KeyValues = ()) -> Statement:
    # empty filters delete every row
    where, params = _filters(filters)
    return Statement(f"DELETE FROM {_ident(table)}{where};", params)


def build_aggregate(function: str, table: str, column: str = "*", filters: KeyValues = ()) -> Statement:
    fn = function.upper()
    if fn not in AGGREGATES:
        raise ValueError(f"Unsupported aggregate: {function!r}")
    where, params = _filters(filters)
    return Statement(f"SELECT {fn}({_ident(column, allow_star=True)}) FROM {_ident(table)}{where};", params)


def build_count(table: str, column: str = "*", filters: KeyValues = ()) -> Statement:
    return build_aggregate("COUNT", table, column, filters)


def build_sum(table: str, column: str, filters: KeyValues = ()) -> Statement:
    return build_aggregate("SUM", table, column, filters)


def build_average(table: str, column: str, filters: KeyValues = ()) -> Statement:
    return build_aggregate("AVG", table, column, filters)
