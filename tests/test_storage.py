"""
Tests for storage backends and unit-of-work support
"""

import pytest
import sys
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

from bank_ledger.errors import ConflictError
from bank_ledger.storage import (
    InMemoryStorage, SQLiteStorage, PostgreSQLStorage, create_storage
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "version": 0,
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request, tmp_path):
    """Each test runs against the in-memory and the SQLite backend"""
    if request.param == "memory":
        backend = InMemoryStorage()
    else:
        backend = SQLiteStorage(tmp_path / "test.db")
    yield backend
    backend.close()


class TestStorageBasics:
    """CRUD operations shared by all backends"""

    def test_basic_operations(self, storage):
        # Test save and load
        storage.save("test_table", "record_1", test_data)
        loaded = storage.load("test_table", "record_1")
        assert loaded == test_data

        # Test exists
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "non_existent")

        # Test load_all
        storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
        assert len(storage.load_all("test_table")) == 2

        # Test find
        results = storage.find("test_table", {"id": "test_001"})
        assert len(results) == 1
        assert results[0]["name"] == "Test Record"

        # Test count
        assert storage.count("test_table") == 2

        # Test delete
        assert storage.delete("test_table", "record_1")
        assert not storage.delete("test_table", "record_1")
        assert storage.count("test_table") == 1

        # Test clear_table
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0

    def test_load_missing_record(self, storage):
        assert storage.load("test_table", "missing") is None
        assert storage.load_for_update("test_table", "missing") is None

    def test_find_with_multiple_filters(self, storage):
        storage.save("items", "a", {"id": "a", "owner": "u1", "status": "active", "n": 1})
        storage.save("items", "b", {"id": "b", "owner": "u1", "status": "closed", "n": 2})
        storage.save("items", "c", {"id": "c", "owner": "u2", "status": "active", "n": 1})

        results = storage.find("items", {"owner": "u1", "status": "active"})
        assert [r["id"] for r in results] == ["a"]

        assert len(storage.find("items", {"n": 1})) == 2
        assert storage.find("items", {"owner": "nobody"}) == []

    def test_loaded_records_are_copies(self, storage):
        storage.save("test_table", "record_1", {"id": "record_1", "tags": ["x"]})
        loaded = storage.load("test_table", "record_1")
        loaded["tags"].append("y")
        assert storage.load("test_table", "record_1")["tags"] == ["x"]

    def test_ping(self, storage):
        assert storage.ping() is True


class TestSaveIfVersion:
    """Compare-and-swap on the stored version"""

    def test_matching_version_replaces_record(self, storage):
        storage.save("accounts", "acc_1", {"id": "acc_1", "balance": "0.00", "version": 0})

        storage.save_if_version("accounts", "acc_1",
                                {"id": "acc_1", "balance": "10.00", "version": 1}, 0)

        loaded = storage.load("accounts", "acc_1")
        assert loaded["balance"] == "10.00"
        assert loaded["version"] == 1

    def test_stale_version_raises_conflict(self, storage):
        storage.save("accounts", "acc_1", {"id": "acc_1", "balance": "5.00", "version": 3})

        with pytest.raises(ConflictError):
            storage.save_if_version("accounts", "acc_1",
                                    {"id": "acc_1", "balance": "10.00", "version": 3}, 2)

        assert storage.load("accounts", "acc_1")["balance"] == "5.00"

    def test_missing_record_raises_conflict(self, storage):
        with pytest.raises(ConflictError):
            storage.save_if_version("accounts", "ghost", {"id": "ghost", "version": 1}, 0)


class TestAtomic:
    """Units of work commit together or not at all"""

    def test_commit_on_success(self, storage):
        with storage.atomic():
            storage.save("accounts", "acc_1", {"id": "acc_1", "version": 0})
            storage.save("transactions", "txn_1", {"id": "txn_1"})

        assert storage.exists("accounts", "acc_1")
        assert storage.exists("transactions", "txn_1")

    def test_rollback_on_error(self, storage):
        storage.save("accounts", "acc_1", {"id": "acc_1", "balance": "100.00", "version": 0})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save_if_version("accounts", "acc_1",
                                        {"id": "acc_1", "balance": "70.00", "version": 1}, 0)
                storage.save("transactions", "txn_1", {"id": "txn_1"})
                storage.delete("accounts", "does_not_matter")
                raise RuntimeError("transaction write failed")

        loaded = storage.load("accounts", "acc_1")
        assert loaded["balance"] == "100.00"
        assert loaded["version"] == 0
        assert not storage.exists("transactions", "txn_1")

    def test_rollback_restores_deleted_record(self, storage):
        storage.save("accounts", "acc_1", {"id": "acc_1", "version": 0})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.delete("accounts", "acc_1")
                raise RuntimeError("abort")

        assert storage.exists("accounts", "acc_1")

    def test_rollback_of_new_table(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh_table", "r1", {"id": "r1"})
                raise RuntimeError("abort")

        # Table is usable after the rollback
        assert storage.count("fresh_table") == 0
        storage.save("fresh_table", "r2", {"id": "r2"})
        assert storage.count("fresh_table") == 1

    def test_nested_atomic_joins_outer_unit(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("accounts", "inner", {"id": "inner"})
                storage.save("accounts", "outer", {"id": "outer"})
                raise RuntimeError("abort outer")

        assert not storage.exists("accounts", "inner")
        assert not storage.exists("accounts", "outer")

    def test_storage_usable_after_rollback(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "acc_1", {"id": "acc_1"})
                raise RuntimeError("abort")

        with storage.atomic():
            storage.save("accounts", "acc_2", {"id": "acc_2"})

        assert not storage.exists("accounts", "acc_1")
        assert storage.exists("accounts", "acc_2")

    def test_units_of_work_do_not_interleave(self, storage):
        """Concurrent read-modify-write units never lose an update"""
        storage.save("counters", "c", {"id": "c", "value": 0})

        def increment():
            for _ in range(50):
                with storage.atomic():
                    current = storage.load_for_update("counters", "c")
                    current["value"] += 1
                    storage.save("counters", "c", current)

        threads = [threading.Thread(target=increment) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert storage.load("counters", "c")["value"] == 200


class TestSQLitePersistence:
    """SQLite data survives reopening the file"""

    def test_data_persists(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"

            storage = SQLiteStorage(db_path)
            with storage.atomic():
                storage.save("test_table", "record_1", test_data)
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("test_table", "record_1") == test_data
            reopened.close()


class TestCreateStorage:
    """Storage factory from database URLs"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self, tmp_path):
        db_file = tmp_path / "bank.db"
        storage = create_storage(f"sqlite:///{db_file}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(db_file)
        storage.close()

    def test_sqlite_in_memory_url(self):
        storage = create_storage("sqlite://")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == ":memory:"
        storage.close()

    def test_unsupported_url(self):
        with pytest.raises(ValueError):
            create_storage("mysql://localhost/bank")

    def test_postgres_without_driver_gives_install_hint(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "psycopg2", None)
        with pytest.raises(ImportError, match="pip install psycopg2-binary"):
            PostgreSQLStorage("postgresql://localhost/bank")


class FakeCursor:
    """Records statements on its connection and returns canned results"""

    def __init__(self, connection):
        self.connection = connection
        self.rowcount = -1

    def execute(self, sql, params=None):
        self.connection.statements.append(" ".join(sql.split()))
        self.rowcount = self.connection.rowcount

    def fetchone(self):
        return self.connection.row

    def fetchall(self):
        return []

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class FakeConnection:
    """Stands in for a server connection handed out by psycopg2.connect"""

    def __init__(self):
        from psycopg2.extensions import TRANSACTION_STATUS_IDLE
        self.closed = 0
        self.info = SimpleNamespace(transaction_status=TRANSACTION_STATUS_IDLE)
        self.statements = []
        self.commits = 0
        self.rollbacks = 0
        self.rowcount = 1
        self.row = None

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = 1


class FakePostgres:
    """Real psycopg2 connection pool over fake connections, with checkouts tracked"""

    def __init__(self, monkeypatch, psycopg2):
        self.monkeypatch = monkeypatch
        self.connections = []
        self.checkouts = []
        self.returned = []
        monkeypatch.setattr(psycopg2, "connect", self._connect)

    def _connect(self, *args, **kwargs):
        conn = FakeConnection()
        self.connections.append(conn)
        return conn

    def open(self, pool_size=2, tables=()):
        storage = PostgreSQLStorage("postgresql://localhost/bank", pool_size=pool_size, tables=tables)
        pool = storage._pool
        getconn, putconn = pool.getconn, pool.putconn

        def tracked_getconn(*args, **kwargs):
            conn = getconn(*args, **kwargs)
            self.checkouts.append(conn)
            return conn

        def tracked_putconn(conn, *args, **kwargs):
            self.returned.append(conn)
            return putconn(conn, *args, **kwargs)

        self.monkeypatch.setattr(pool, "getconn", tracked_getconn)
        self.monkeypatch.setattr(pool, "putconn", tracked_putconn)
        return storage


@pytest.fixture
def fake_postgres(monkeypatch):
    psycopg2 = pytest.importorskip("psycopg2")
    return FakePostgres(monkeypatch, psycopg2)


class TestPostgreSQLUnitOfWork:
    """Connection handling of the pooled PostgreSQL backend"""

    def test_tables_created_at_construction(self, fake_postgres):
        storage = fake_postgres.open(tables=("accounts", "transactions"))

        statements = fake_postgres.connections[0].statements
        assert any(s.startswith("CREATE TABLE IF NOT EXISTS accounts") for s in statements)
        assert any(s.startswith("CREATE TABLE IF NOT EXISTS transactions") for s in statements)
        assert {"accounts", "transactions"} <= storage._known_tables
        storage.close()

    def test_unit_of_work_uses_one_connection(self, fake_postgres):
        storage = fake_postgres.open()

        with storage.atomic():
            storage.save("accounts", "acc-1", {"version": 0})
            storage.save("transactions", "txn-1", {"amount": "10.00"})

        assert len(fake_postgres.checkouts) == 1
        assert fake_postgres.returned == fake_postgres.checkouts
        conn = fake_postgres.checkouts[0]
        assert conn.commits == 1
        assert conn.rollbacks == 0
        # Table creation ran on the unit's own connection
        assert any(s.startswith("CREATE TABLE IF NOT EXISTS transactions") for s in conn.statements)
        assert {"accounts", "transactions"} <= storage._known_tables
        storage.close()

    def test_error_rolls_back_and_returns_connection(self, fake_postgres):
        storage = fake_postgres.open()

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "acc-1", {"version": 0})
                raise RuntimeError("boom")

        conn = fake_postgres.checkouts[0]
        assert conn.commits == 0
        assert conn.rollbacks == 1
        assert fake_postgres.returned == [conn]
        # The table creation was rolled back with the unit
        assert "accounts" not in storage._known_tables
        storage.close()

    def test_nested_atomic_joins_outer_unit(self, fake_postgres):
        storage = fake_postgres.open(tables=("accounts",))
        fake_postgres.checkouts.clear()

        with storage.atomic():
            with storage.atomic():
                storage.save("accounts", "acc-1", {"version": 0})
            storage.save("accounts", "acc-2", {"version": 0})

        assert len(fake_postgres.checkouts) == 1
        conn = fake_postgres.checkouts[0]
        inserts = [s for s in conn.statements if s.startswith("INSERT INTO accounts")]
        assert len(inserts) == 2
        storage.close()

    def test_load_for_update_locks_row(self, fake_postgres):
        storage = fake_postgres.open(tables=("accounts",))

        with storage.atomic():
            conn = storage._local.conn
            conn.row = {"data": {"id": "acc-1", "version": 3}}
            assert storage.load_for_update("accounts", "acc-1") == {"id": "acc-1", "version": 3}

        assert "SELECT data FROM accounts WHERE id = %s FOR UPDATE" in conn.statements
        storage.close()

    def test_version_conflict_rolls_back_unit(self, fake_postgres):
        storage = fake_postgres.open()

        with pytest.raises(ConflictError):
            with storage.atomic():
                storage._local.conn.rowcount = 0
                storage.save_if_version("accounts", "acc-1", {"version": 1}, expected_version=0)

        conn = fake_postgres.checkouts[0]
        assert conn.rollbacks == 1
        assert conn.commits == 0
        assert fake_postgres.returned[-1] is conn
        storage.close()

    def test_statement_outside_unit_commits_and_returns(self, fake_postgres):
        storage = fake_postgres.open(tables=("accounts",))
        fake_postgres.checkouts.clear()
        fake_postgres.returned.clear()

        assert storage.ping()

        assert len(fake_postgres.checkouts) == 1
        assert fake_postgres.returned == fake_postgres.checkouts
        storage.close()

    def test_checkout_waits_for_free_connection(self, fake_postgres):
        storage = fake_postgres.open(pool_size=2, tables=("accounts",))
        holding = threading.Barrier(3)
        release = threading.Event()
        late_entered = threading.Event()
        errors = []

        def hold_connection():
            try:
                with storage.atomic():
                    holding.wait(timeout=5)
                    release.wait(timeout=5)
            except Exception as e:
                errors.append(e)

        def late_unit():
            try:
                with storage.atomic():
                    late_entered.set()
            except Exception as e:
                errors.append(e)

        holders = [threading.Thread(target=hold_connection) for _ in range(2)]
        for thread in holders:
            thread.start()
        holding.wait(timeout=5)

        late = threading.Thread(target=late_unit)
        late.start()

        # Both connections are checked out, so the third unit has to wait
        assert not late_entered.wait(timeout=0.2)

        release.set()
        for thread in holders + [late]:
            thread.join(timeout=5)

        assert errors == []
        assert late_entered.is_set()
        storage.close()

    def test_create_storage_passes_tables(self, fake_postgres):
        storage = create_storage("postgresql://localhost/bank", pool_size=2, tables=("users",))
        assert isinstance(storage, PostgreSQLStorage)
        assert "users" in storage._known_tables
        storage.close()
