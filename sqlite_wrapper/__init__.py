"""Thread-safe minimal-ORM access layer over a SQLite database file.

Single source of truth for the package version so that code, tests, and
packaging metadata agree.
"""

PACKAGE_VERSION = "0.3.0"  # Keep in sync with pyproject version.

from .models import KeyValue, Value, Row, Rows, PrimaryKey, PrimaryKeys, as_key_values  # noqa: E402
from .statements import Statement  # noqa: E402
from .connection import Connection, ConnectionConfig, Transaction, TransactionError  # noqa: E402

__all__ = [
    "PACKAGE_VERSION",
    "KeyValue", "Value", "Row", "Rows", "PrimaryKey", "PrimaryKeys", "as_key_values",
    "Statement",
    "Connection", "ConnectionConfig", "Transaction", "TransactionError",
]
