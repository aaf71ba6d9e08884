"""Database access contract.

Structural interface for the CRUD surface so alternative engines (or test
doubles) can stand in for Connection.

KISS: only the operations Connection exposes are listed.
"""
from __future__ import annotations
from typing import Any, Optional, Protocol, Sequence, runtime_checkable

from .models import KeyValuesLike, PrimaryKey, PrimaryKeys, Rows


@runtime_checkable
class Database(Protocol):  # pragma: no cover - structural typing helper
    @property
    def database_path(self) -> str: ...
    def open(self) -> bool: ...
    def is_open(self) -> bool: ...
    def apply_sql(self, sql: str, transaction: Optional[Any] = None) -> None: ...
    def table_exists(self, table: str) -> bool: ...

    def begin_transaction(self, enable_foreign_keys: bool = True) -> Any:
        """Begin a transaction and return its token.

        enable_foreign_keys=False is needed when dropping/recreating tables
        would otherwise cascade onto dependent tables.
        """
        ...
    def commit_transaction(self, transaction: Any) -> None: ...
    def rollback_transaction(self, transaction: Any) -> None: ...

    def select(self, table: str, filters: KeyValuesLike = None) -> Rows: ...
    def select_column(self, table: str, column: str, filters: KeyValuesLike = None) -> Rows: ...
    def insert(self, table: str, key_values: KeyValuesLike, transaction: Optional[Any] = None) -> PrimaryKey: ...
    def insert_rows(self, table: str, rows: Sequence[Sequence[Any]], transaction: Optional[Any] = None) -> PrimaryKeys: ...
    def insert_or_replace(self, table: str, key_values: KeyValuesLike, transaction: Optional[Any] = None) -> PrimaryKey: ...
    def insert_or_replace_rows(self, table: str, rows: Sequence[Sequence[Any]], transaction: Optional[Any] = None) -> PrimaryKeys: ...

    def update(self, table: str, assignments: KeyValuesLike, filters: KeyValuesLike = None,
               transaction: Optional[Any] = None) -> None:
        """Update matching rows. Empty filters update every row."""
        ...
    def delete_rows(self, table: str, filters: KeyValuesLike = None, transaction: Optional[Any] = None) -> None:
        """Delete matching rows. Empty filters delete every row."""
        ...

    def count(self, table: str, column: str = "*", filters: KeyValuesLike = None) -> int: ...
    def sum(self, table: str, column: str, filters: KeyValuesLike = None) -> float: ...
    def average(self, table: str, column: str, filters: KeyValuesLike = None) -> float: ...
