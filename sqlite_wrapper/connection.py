"""SQLite connection safe for use from many threads.

Concurrency model:
    - One Connection owns one sqlite3 handle (check_same_thread=False).
    - Reads take no write lock; a serialized SQLite build guards the handle.
      Readers are counted so close() can wait for them.
    - Writes on the same Connection are serialized by a write lock. An open
      transaction holds that lock from BEGIN until COMMIT/ROLLBACK; writes that
      belong to it pass the Transaction token instead of locking again.
    - Separate Connection objects share nothing in-process. They contend on the
      file lock, and SQLite's busy timeout retries for up to busy_timeout_ms
      before raising "database is locked".
"""
from __future__ import annotations
import os, sqlite3, sys, threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Sequence

from . import statements as sb
from .logging_util import debug, enabled, error, warn
from .models import (KeyValuesLike, PrimaryKey, PrimaryKeys, Rows, Value,
                     as_key_values, as_row)

DEFAULT_BUSY_TIMEOUT_MS = 60_000
MAX_BUSY_TIMEOUT_MS = 600_000
MAX_CACHE_KIB = 512 * 1024        # 512 MiB upper clamp
MIN_CACHE_KIB = 16                # SQLite minimum practical
DEFAULT_CACHE_KIB = 64 * 1024     # 64 MiB
JOURNAL_MODES = ("DELETE", "TRUNCATE", "PERSIST", "MEMORY", "WAL", "OFF")
SYNCHRONOUS_MODES = ("OFF", "NORMAL", "FULL", "EXTRA")
CATALOG_TABLE = "sqlite_master"


class TransactionError(RuntimeError):
    """Transaction token misused (stale, foreign, wrong thread, or missing)."""


@dataclass
class ConnectionConfig:
    busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS
    journal_mode: str = "WAL"
    synchronous: str = "NORMAL"
    cache_kib: int = DEFAULT_CACHE_KIB
    verify_on_connect: bool = False

    @classmethod
    def from_env(cls) -> "ConnectionConfig":
        def _int(name: str, default: int) -> int:
            raw = os.environ.get(name)
            if raw is None:
                return default
            try:
                return int(raw)
            except ValueError:
                warn("invalid_env_int", key=name, value=raw, default=default)
                return default

        def _choice(name: str, choices: Sequence[str], default: str) -> str:
            raw = os.environ.get(name)
            if raw is None:
                return default
            if raw.upper() not in choices:
                warn("invalid_env_choice", key=name, value=raw, default=default)
                return default
            return raw.upper()

        busy = _int("BUSY_TIMEOUT_MS", DEFAULT_BUSY_TIMEOUT_MS)
        cache_kib = _int("CACHE_SIZE_KIB", DEFAULT_CACHE_KIB)
        journal_mode = _choice("JOURNAL_MODE", JOURNAL_MODES, "WAL")
        synchronous = _choice("SYNCHRONOUS", SYNCHRONOUS_MODES, "NORMAL")
        verify = os.environ.get("VERIFY_ON_CONNECT", "0") == "1"
        # Clamp
        adjusted = {}
        if busy < 0 or busy > MAX_BUSY_TIMEOUT_MS:
            adjusted["busy_timeout_ms"] = busy
            busy = min(MAX_BUSY_TIMEOUT_MS, max(0, busy))
        if cache_kib < MIN_CACHE_KIB or cache_kib > MAX_CACHE_KIB:
            adjusted["cache_kib"] = cache_kib
            cache_kib = min(MAX_CACHE_KIB, max(MIN_CACHE_KIB, cache_kib))
        if adjusted:
            warn("connection_config_clamped", original=adjusted,
                 clamped={"busy_timeout_ms": busy, "cache_kib": cache_kib})
        return cls(busy_timeout_ms=busy, journal_mode=journal_mode, synchronous=synchronous,
                   cache_kib=cache_kib, verify_on_connect=verify)


class Transaction:
    """Token returned by Connection.begin_transaction().

    Valid only on the Connection that issued it, from the thread that began
    it, until it is committed or rolled back.
    """
    __slots__ = ("connection", "owner", "active")

    def __init__(self, connection: "Connection", owner: int):
        self.connection = connection
        self.owner = owner
        self.active = True

    def __repr__(self):
        state = "active" if self.active else "finished"
        return f"<Transaction {state} owner={self.owner} path={self.connection.path!r}>"


def _engine_serialized() -> bool:
    # sqlite3.threadsafety only reports the compiled engine mode from 3.11 on
    if sys.version_info < (3, 11):
        return True
    return sqlite3.threadsafety == 3


def _decode(value: Any) -> Value:
    """Cell value as text.

    BLOBs are decoded as UTF-8; bytes that are not valid UTF-8 become U+FFFD,
    so binary payloads do not survive a read. Store them hex or base64 encoded.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class Connection:
    """CRUD access to one SQLite file through a single shared handle.

    Lifecycle: construct bound to a path, then open(). open() never raises;
    it reports failure by returning False and leaves the object unopened.
    """

    def __init__(self, path: str, config: Optional[ConnectionConfig] = None):
        self.path = os.fspath(path)
        self.config = config or ConnectionConfig.from_env()
        self._db: Optional[sqlite3.Connection] = None
        self._write_lock = threading.Lock()
        self._active: Optional[Transaction] = None
        # unlocked reads in flight; close() waits for them to drain
        self._reads = threading.Condition()
        self._readers = 0

    # --- Lifecycle --------------------------------------------------------------------
    @property
    def database_path(self) -> str:
        return self.path

    def open(self) -> bool:
        """Open (or create) the database file read-write.

        Installs the busy timeout and pragmas. Returns False on failure.
        """
        if self._db is not None:
            return True
        if os.path.isdir(self.path):
            warn("open_failed", path=self.path, error="path points to a directory")
            return False
        if not _engine_serialized():
            # reads share the handle without a lock
            warn("sqlite_not_serialized", path=self.path, threadsafety=sqlite3.threadsafety)
        try:
            db = sqlite3.connect(self.path, timeout=self.config.busy_timeout_ms / 1000.0,
                                 check_same_thread=False, isolation_level=None)
        except sqlite3.Error as e:
            warn("open_failed", path=self.path, error=str(e))
            return False
        try:
            db.execute(f"PRAGMA busy_timeout={int(self.config.busy_timeout_ms)}")
            # Touch the schema so a non-database file fails here rather than later
            db.execute(f"SELECT count(*) FROM {CATALOG_TABLE}").fetchone()
        except sqlite3.Error as e:
            db.close()
            warn("open_failed", path=self.path, error=str(e))
            return False
        self._apply_pragmas(db)
        if self.config.verify_on_connect:
            try:
                res = db.execute("PRAGMA integrity_check").fetchone()[0]
                if res != "ok":
                    warn("integrity_check_failed", path=self.path, result=res)
            except sqlite3.Error as e:  # pragma: no cover - unexpected
                warn("integrity_check_error", path=self.path, error=str(e))
        self._db = db
        debug("connection_opened", path=self.path, busy_timeout_ms=self.config.busy_timeout_ms)
        return True

    def is_open(self) -> bool:
        return self._db is not None

    def close(self) -> None:
        """Close the handle once in-flight statements have finished.

        Blocks on the write lock until running writes complete, then waits
        for running reads. Statements issued afterwards raise ProgrammingError.
        """
        if self._active is not None:
            raise TransactionError("cannot close a connection with an open transaction")
        with self._write_lock:
            with self._reads:
                db, self._db = self._db, None
                self._reads.wait_for(lambda: self._readers == 0)
            if db is not None:
                db.close()
                debug("connection_closed", path=self.path)

    def __enter__(self) -> "Connection":
        if not self.open():
            raise sqlite3.OperationalError(f"Database could not be opened: {self.path}")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def in_transaction(self) -> bool:
        return self._active is not None

    # --- Transactions -----------------------------------------------------------------
    def begin_transaction(self, enable_foreign_keys: bool = True) -> Transaction:
        """Begin a transaction, holding the write lock until it ends.

        enable_foreign_keys=False is required when tables are dropped and
        recreated, otherwise dependent tables would be dropped on cascade.
        """
        self._require_open()
        me = threading.get_ident()
        active = self._active
        if active is not None and active.owner == me:
            raise TransactionError("nested transactions are not supported")
        self._write_lock.acquire()
        try:
            # re-check: close() may have run while this thread waited
            db = self._require_open()
            self._execute(db, sb.Statement(f"PRAGMA foreign_keys={'ON' if enable_foreign_keys else 'OFF'};"))
            self._execute(db, sb.Statement("BEGIN;"))
        except BaseException:
            self._write_lock.release()
            raise
        txn = Transaction(self, me)
        self._active = txn
        debug("transaction_begin", path=self.path, foreign_keys=enable_foreign_keys)
        return txn

    def commit_transaction(self, transaction: Transaction) -> None:
        self._finish(transaction, "COMMIT;")
        debug("transaction_commit", path=self.path)

    def rollback_transaction(self, transaction: Transaction) -> None:
        self._finish(transaction, "ROLLBACK;")
        debug("transaction_rollback", path=self.path)

    @contextmanager
    def transaction(self, enable_foreign_keys: bool = True) -> Iterator[Transaction]:
        """Commit on success, roll back and re-raise on error."""
        txn = self.begin_transaction(enable_foreign_keys)
        try:
            yield txn
        except BaseException:
            if txn.active:
                self.rollback_transaction(txn)
            raise
        else:
            if txn.active:
                self.commit_transaction(txn)

    def _finish(self, transaction: Transaction, sql: str) -> None:
        self._check_token(transaction)
        db = self._require_open()
        try:
            self._execute(db, sb.Statement(sql))
        except sqlite3.Error:
            # A failed COMMIT leaves the engine transaction open; close it out
            if db.in_transaction:
                try:
                    db.execute("ROLLBACK;")
                except sqlite3.Error as e:
                    warn("rollback_after_failure_failed", path=self.path, error=str(e))
            raise
        finally:
            transaction.active = False
            self._active = None
            self._write_lock.release()

    def _check_token(self, transaction: Transaction) -> None:
        if not isinstance(transaction, Transaction) or transaction.connection is not self:
            raise TransactionError("transaction token does not belong to this connection")
        if not transaction.active or transaction is not self._active:
            raise TransactionError("transaction is no longer active")
        if transaction.owner != threading.get_ident():
            raise TransactionError("transaction token used from a thread that did not begin it")

    @contextmanager
    def _write_access(self, transaction: Optional[Transaction]) -> Iterator[sqlite3.Connection]:
        if transaction is not None:
            # lock already held by this thread since begin_transaction()
            self._check_token(transaction)
            yield self._require_open()
            return
        self._require_open()
        active = self._active
        if active is not None and active.owner == threading.get_ident():
            raise TransactionError("write issued without its transaction token by the thread that holds the "
                                   "open transaction; pass transaction=<token>")
        with self._write_lock:
            yield self._require_open()

    # --- Execution --------------------------------------------------------------------
    def _require_open(self) -> sqlite3.Connection:
        db = self._db
        if db is None:
            raise sqlite3.ProgrammingError(f"Connection is not open: {self.path}")
        return db

    def _execute(self, target, stmt: sb.Statement) -> sqlite3.Cursor:
        if enabled("DEBUG"):
            debug("built_sql", sql=stmt.to_literal())
        try:
            return target.execute(stmt.sql, stmt.params)
        except sqlite3.Error as e:
            error("statement_failed", path=self.path, sql=stmt.to_literal(), error=str(e))
            raise

    @contextmanager
    def _read_access(self) -> Iterator[sqlite3.Connection]:
        with self._reads:
            db = self._require_open()
            self._readers += 1
        try:
            yield db
        finally:
            with self._reads:
                self._readers -= 1
                if not self._readers:
                    self._reads.notify_all()

    def _query(self, stmt: sb.Statement) -> Rows:
        with self._read_access() as db:
            cur = self._execute(db, stmt)
            try:
                return [[_decode(v) for v in rec] for rec in cur.fetchall()]
            finally:
                cur.close()

    def _scalar(self, stmt: sb.Statement) -> Any:
        with self._read_access() as db:
            cur = self._execute(db, stmt)
            try:
                row = cur.fetchone()
                return row[0] if row else None
            finally:
                cur.close()

    # --- Public API -------------------------------------------------------------------
    def apply_sql(self, sql: str, transaction: Optional[Transaction] = None) -> None:
        """Execute one raw SQL statement (DDL, pragmas) under the write lock."""
        with self._write_access(transaction) as db:
            self._execute(db, sb.Statement(sql)).close()

    def table_exists(self, table: str) -> bool:
        rows = self.select_column(CATALOG_TABLE, "name", [("type", "table"), ("name", table)])
        if not rows or not rows[0]:
            return False
        return rows[0][0] is not None

    def select(self, table: str, filters: KeyValuesLike = None) -> Rows:
        """All columns of every matching row, cells as text (None for NULL)."""
        return self._query(sb.build_select(table, "*", as_key_values(filters)))

    def select_column(self, table: str, column: str, filters: KeyValuesLike = None) -> Rows:
        return self._query(sb.build_select(table, column, as_key_values(filters)))

    def insert(self, table: str, key_values: KeyValuesLike, transaction: Optional[Transaction] = None) -> PrimaryKey:
        return self._insert_row(table, key_values, transaction, replace=False)

    def insert_or_replace(self, table: str, key_values: KeyValuesLike,
                          transaction: Optional[Transaction] = None) -> PrimaryKey:
        return self._insert_row(table, key_values, transaction, replace=True)

    def insert_rows(self, table: str, rows: Sequence[Sequence[Any]],
                    transaction: Optional[Transaction] = None) -> PrimaryKeys:
        return self._insert_rows(table, rows, transaction, replace=False)

    def insert_or_replace_rows(self, table: str, rows: Sequence[Sequence[Any]],
                               transaction: Optional[Transaction] = None) -> PrimaryKeys:
        return self._insert_rows(table, rows, transaction, replace=True)

    def update(self, table: str, assignments: KeyValuesLike, filters: KeyValuesLike = None,
               transaction: Optional[Transaction] = None) -> None:
        """Update matching rows. Empty filters update every row in table."""
        kvs = as_key_values(filters)
        stmt = sb.build_update(table, as_key_values(assignments), kvs)
        if not kvs:
            debug("unfiltered_write", op="update", table=table)
        with self._write_access(transaction) as db:
            self._execute(db, stmt).close()

    def delete_rows(self, table: str, filters: KeyValuesLike = None,
                    transaction: Optional[Transaction] = None) -> None:
        """Delete matching rows. Empty filters delete every row in table."""
        kvs = as_key_values(filters)
        stmt = sb.build_delete(table, kvs)
        if not kvs:
            debug("unfiltered_write", op="delete", table=table)
        with self._write_access(transaction) as db:
            self._execute(db, stmt).close()

    def count(self, table: str, column: str = "*", filters: KeyValuesLike = None) -> int:
        """COUNT(column); with a named column only non-NULL values count."""
        return int(self._scalar(sb.build_count(table, column, as_key_values(filters))) or 0)

    def sum(self, table: str, column: str, filters: KeyValuesLike = None) -> float:
        """SUM of non-NULL values; 0.0 when nothing matches."""
        value = self._scalar(sb.build_sum(table, column, as_key_values(filters)))
        return float(value) if value is not None else 0.0

    def average(self, table: str, column: str, filters: KeyValuesLike = None) -> float:
        """AVG of non-NULL values; 0.0 when nothing matches."""
        value = self._scalar(sb.build_average(table, column, as_key_values(filters)))
        return float(value) if value is not None else 0.0

    def health_check(self) -> Dict[str, Any]:
        """Return current core pragma values and basic status."""
        try:
            with self._read_access() as db:
                rows = {
                    "foreign_keys": db.execute("PRAGMA foreign_keys").fetchone()[0],
                    "journal_mode": db.execute("PRAGMA journal_mode").fetchone()[0],
                    "synchronous": db.execute("PRAGMA synchronous").fetchone()[0],
                    "busy_timeout": db.execute("PRAGMA busy_timeout").fetchone()[0],
                    "cache_size": db.execute("PRAGMA cache_size").fetchone()[0],
                }
        except sqlite3.ProgrammingError:
            return {"ok": False, "path": self.path, "error": "connection is not open"}
        except sqlite3.Error as e:
            return {"ok": False, "path": self.path, "error": str(e)}
        return {"ok": True, "path": self.path, "in_transaction": self.in_transaction, **rows}

    # --- Internal ---------------------------------------------------------------------
    def _insert_row(self, table: str, key_values: KeyValuesLike, transaction: Optional[Transaction],
                    replace: bool) -> PrimaryKey:
        stmt = sb.build_insert(table, as_key_values(key_values), replace)
        if not stmt:
            raise ValueError("insert requires at least one key-value pair")
        with self._write_access(transaction) as db:
            cur = self._execute(db, stmt)
            try:
                return int(cur.lastrowid)
            finally:
                cur.close()

    def _insert_rows(self, table: str, rows: Sequence[Sequence[Any]], transaction: Optional[Transaction],
                     replace: bool) -> PrimaryKeys:
        if not rows:
            return []
        prepared = [as_row(r) for r in rows]
        template = sb.build_insert_placeholders(table, len(prepared[0]), replace)
        keys: PrimaryKeys = []
        with self._write_access(transaction) as db:
            cur = db.cursor()
            try:
                for row in prepared:
                    self._execute(cur, sb.Statement(template.sql, tuple(row)))
                    keys.append(int(cur.lastrowid))
            finally:
                cur.close()
        return keys

    def _apply_pragmas(self, db: sqlite3.Connection) -> None:
        try:
            db.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            warn("pragma_failed", pragma="foreign_keys=ON", path=self.path, error=str(e))
        try:
            jm = db.execute(f"PRAGMA journal_mode={self.config.journal_mode}").fetchone()[0]
            if str(jm).upper() != self.config.journal_mode:
                warn("journal_mode_unexpected", wanted=self.config.journal_mode, got=jm, path=self.path)
        except sqlite3.Error as e:
            warn("pragma_failed", pragma=f"journal_mode={self.config.journal_mode}", path=self.path, error=str(e))
        # Tunables
        pragmas = [
            (f"synchronous={self.config.synchronous}", "synchronous"),
            (f"cache_size=-{self.config.cache_kib}", "cache_size"),  # negative => KiB
        ]
        for p, tag in pragmas:
            try:
                db.execute(f"PRAGMA {p}")
            except sqlite3.Error as e:
                warn("pragma_failed", pragma=p, tag=tag, path=self.path, error=str(e))


def cli_dump_config(argv: Optional[Sequence[str]] = None) -> int:  # pragma: no cover - thin CLI wrapper
    """CLI helper: print resolved ConnectionConfig + health_check JSON."""
    import argparse, json
    ap = argparse.ArgumentParser(description='Dump connection config and health info')
    ap.add_argument('db', help='Path to SQLite database')
    args = ap.parse_args(argv)
    conn = Connection(args.db)
    conn.open()
    try:
        out = {'config': conn.config.__dict__.copy(), 'health_check': conn.health_check()}
    finally:
        conn.close()
    print(json.dumps(out, indent=2))
    return 0 if out['health_check'].get('ok') else 1


if __name__ == '__main__':  # pragma: no cover
    raise SystemExit(cli_dump_config())
