import sqlite3, pytest
from sqlite_wrapper import Connection, ConnectionConfig

TEST_TABLE = 'test_table'
NAMES = ['zero','one','two','three','four','five','six','seven','eight','nine']


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / 'test_db.db'
    conn = sqlite3.connect(path)
    try:
        conn.execute("DROP TABLE IF EXISTS test_table")
        conn.execute("CREATE TABLE test_table (number INTEGER, string TEXT)")
        conn.commit()
    finally:
        conn.close()
    return str(path)


@pytest.fixture()
def make_conn(db_path):
    """Factory for opened connections to the same file; all closed at teardown."""
    opened = []
    def _make(config=None):
        c = Connection(db_path, config or ConnectionConfig())
        assert c.open()
        opened.append(c)
        return c
    yield _make
    for c in opened:
        if not c.in_transaction:
            c.close()


@pytest.fixture()
def conn(make_conn):
    return make_conn()


@pytest.fixture()
def filled(conn):
    keys = conn.insert_rows(TEST_TABLE, [[str(i), name] for i, name in enumerate(NAMES)])
    assert len(keys) == 10
    return conn
