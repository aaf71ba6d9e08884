import sqlite3, threading
import pytest
from sqlite_wrapper import Transaction, TransactionError
from conftest import TEST_TABLE


def test_commit_persists_writes(conn, make_conn):
    other = make_conn()
    txn = conn.begin_transaction()
    assert isinstance(txn, Transaction)
    assert conn.in_transaction
    conn.insert(TEST_TABLE, {'number': 1, 'string': 'one'}, transaction=txn)
    conn.insert_rows(TEST_TABLE, [[2, 'two'], [3, 'three']], transaction=txn)
    conn.update(TEST_TABLE, {'string': 'uno'}, {'number': 1}, transaction=txn)
    conn.delete_rows(TEST_TABLE, {'number': 3}, transaction=txn)
    # the owning connection sees its own uncommitted writes
    assert conn.count(TEST_TABLE) == 2
    assert other.count(TEST_TABLE) == 0
    conn.commit_transaction(txn)
    assert not conn.in_transaction
    assert not txn.active
    assert other.select(TEST_TABLE) == [['1', 'uno'], ['2', 'two']]


def test_rollback_discards_writes(conn):
    txn = conn.begin_transaction()
    conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
    conn.rollback_transaction(txn)
    assert conn.count(TEST_TABLE) == 0
    # connection is usable again
    conn.insert(TEST_TABLE, {'number': 2})
    assert conn.count(TEST_TABLE) == 1


def test_context_manager_commits(conn):
    with conn.transaction() as txn:
        conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
    assert not conn.in_transaction
    assert conn.count(TEST_TABLE) == 1


def test_context_manager_rolls_back_on_error(conn):
    with pytest.raises(RuntimeError, match='boom'):
        with conn.transaction() as txn:
            conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
            raise RuntimeError('boom')
    assert not conn.in_transaction
    assert conn.count(TEST_TABLE) == 0


def test_foreign_keys_toggle(conn):
    txn = conn.begin_transaction(enable_foreign_keys=False)
    assert conn.health_check()['foreign_keys'] == 0
    conn.commit_transaction(txn)
    txn = conn.begin_transaction(enable_foreign_keys=True)
    assert conn.health_check()['foreign_keys'] == 1
    conn.commit_transaction(txn)


def test_disabled_foreign_keys_allow_drop_without_cascade(conn):
    conn.apply_sql('CREATE TABLE parent (id INTEGER PRIMARY KEY)')
    conn.apply_sql('CREATE TABLE child (id INTEGER PRIMARY KEY, parent_id INTEGER REFERENCES parent(id) ON DELETE CASCADE)')
    conn.insert('parent', {'id': 1})
    conn.insert('child', {'id': 10, 'parent_id': 1})
    with conn.transaction(enable_foreign_keys=False) as txn:
        conn.apply_sql('ALTER TABLE parent RENAME TO parent_old', transaction=txn)
        conn.apply_sql('CREATE TABLE parent (id INTEGER PRIMARY KEY, name TEXT)', transaction=txn)
        conn.apply_sql('INSERT INTO parent (id) SELECT id FROM parent_old', transaction=txn)
        conn.apply_sql('DROP TABLE parent_old', transaction=txn)
    assert conn.count('child') == 1


def test_write_without_token_from_owner_thread_raises(conn):
    txn = conn.begin_transaction()
    with pytest.raises(TransactionError):
        conn.insert(TEST_TABLE, {'number': 1})
    with pytest.raises(TransactionError):
        conn.insert_rows(TEST_TABLE, [[1, 'a']])
    conn.rollback_transaction(txn)


def test_nested_begin_raises(conn):
    txn = conn.begin_transaction()
    with pytest.raises(TransactionError):
        conn.begin_transaction()
    conn.commit_transaction(txn)


def test_stale_token_rejected(conn):
    txn = conn.begin_transaction()
    conn.commit_transaction(txn)
    with pytest.raises(TransactionError):
        conn.commit_transaction(txn)
    with pytest.raises(TransactionError):
        conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
    # lock was released exactly once
    txn2 = conn.begin_transaction()
    conn.rollback_transaction(txn2)


def test_foreign_connection_token_rejected(conn, make_conn):
    other = make_conn()
    txn = other.begin_transaction()
    with pytest.raises(TransactionError):
        conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
    other.rollback_transaction(txn)


def test_token_from_another_thread_rejected(conn):
    txn = conn.begin_transaction()
    errors = []

    def worker():
        try:
            conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
        except TransactionError as e:
            errors.append(e)

    t = threading.Thread(target=worker)
    t.start()
    t.join(timeout=10)
    assert not t.is_alive()
    assert len(errors) == 1
    conn.rollback_transaction(txn)


def test_close_with_open_transaction_raises(conn):
    txn = conn.begin_transaction()
    with pytest.raises(TransactionError):
        conn.close()
    conn.rollback_transaction(txn)
    conn.close()


def test_failed_statement_inside_transaction_keeps_transaction_open(conn):
    txn = conn.begin_transaction()
    conn.insert(TEST_TABLE, {'number': 1}, transaction=txn)
    with pytest.raises(sqlite3.OperationalError):
        conn.insert('missing_table', {'number': 2}, transaction=txn)
    assert conn.in_transaction
    conn.rollback_transaction(txn)
    assert conn.count(TEST_TABLE) == 0
