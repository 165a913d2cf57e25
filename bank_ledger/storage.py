"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (single node) and PostgreSQL (pooled connections). Records are JSON
documents keyed by (table, id); monetary values are stored as Decimal strings.

Every backend supports atomic() units of work that roll back completely on
error, and save_if_version() for optimistic compare-and-swap updates.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import ConflictError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass

    @abstractmethod
    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        """
        Replace a record only if its stored 'version' equals expected_version.

        Raises:
            ConflictError: If the record is missing or its version moved on
        """
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and lock it until the enclosing unit of work ends"""
        return self.load(table, record_id)

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def ping(self) -> bool:
        """Check that the backend is reachable"""
        return True

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class _LockedUnitOfWork:
    """
    atomic() for single-connection backends: the backend lock is held for the
    whole unit of work so no other thread can interleave writes into it.
    Units of work on these backends therefore run one at a time, even when
    they touch different accounts. Nested atomic() calls join the outermost
    unit.
    """

    _lock: threading.RLock
    _depth: int = 0

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            self._depth = 1
            self.begin_transaction()
            try:
                yield
            except BaseException:
                self.rollback()
                raise
            else:
                self.commit()
            finally:
                self._depth = 0


class InMemoryStorage(_LockedUnitOfWork, StorageInterface):
    """In-memory storage implementation for testing and development"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        # (table, record_id, previous value) entries for the open unit of work
        self._undo_log: Optional[List[Tuple[str, str, Optional[Dict[str, Any]]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def _remember(self, table: str, record_id: str) -> None:
        if self._undo_log is not None:
            self._undo_log.append((table, record_id, self._data[table].get(record_id)))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or current.get('version') != expected_version:
                raise ConflictError(f"Version conflict on {table}:{record_id}")
            self.save(table, record_id, data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            for record_id in list(self._data[table]):
                self._remember(table, record_id)
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        with self._lock:
            self._undo_log = []

    def commit(self) -> None:
        with self._lock:
            self._undo_log = None

    def rollback(self) -> None:
        """Undo every write of the open unit of work, newest first"""
        with self._lock:
            undo_log, self._undo_log = self._undo_log or [], None
            for table, record_id, previous in reversed(undo_log):
                if previous is None:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous


class SQLiteStorage(_LockedUnitOfWork, StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # Transactions are opened explicitly with BEGIN IMMEDIATE in begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._in_transaction = False
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            if not self._in_transaction:
                self._connection.commit()
            self._known_tables.add(table)

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._commit_unless_in_transaction()

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.version') = ?
            """, (json.dumps(data, default=str), now, record_id, expected_version))
            if cursor.rowcount == 0:
                raise ConflictError(f"Version conflict on {table}:{record_id}")
            self._commit_unless_in_transaction()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """
        Find records matching filters.
        String and integer filters are pushed down with json_extract; the
        result is re-checked in Python so other value types still match exactly.
        """
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                if isinstance(value, (str, int)) and not isinstance(value, bool):
                    conditions.append("json_extract(data, ?) = ?")
                    params.extend([f"$.{key}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, params)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def ping(self) -> bool:
        with self._lock:
            self._connection.execute("SELECT 1").fetchone()
            return True

    def begin_transaction(self) -> None:
        """Start a database transaction holding the write lock"""
        with self._lock:
            if not self._in_transaction:
                self._connection.execute("BEGIN IMMEDIATE")
                self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False
                # Tables created inside the rolled back transaction are gone
                self._known_tables.clear()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """
    PostgreSQL storage backend with a thread-safe connection pool.

    Each unit of work checks one connection out of the pool for its whole
    duration and returns it on every exit path. Statements outside atomic()
    run on a short-lived checkout and commit immediately. When every pooled
    connection is in use, a checkout waits for one to come back.
    """

    def __init__(self, connection_string: str, pool_size: int = 10,
                 tables: Iterable[str] = ()):
        try:
            import psycopg2
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        max_connections = max(pool_size, 2)
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            1, max_connections, connection_string,
            cursor_factory=psycopg2.extras.RealDictCursor
        )
        # ThreadedConnectionPool raises PoolError when exhausted instead of blocking
        self._slots = threading.BoundedSemaphore(max_connections)
        self._local = threading.local()
        self._known_tables = set()
        self._tables_lock = threading.Lock()

        for table in tables:
            self._ensure_table(table)

    @contextmanager
    def _connection(self):
        """Check a connection out of the pool, waiting for a free slot"""
        self._slots.acquire()
        try:
            conn = self._pool.getconn()
            try:
                yield conn
            finally:
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    @contextmanager
    def _cursor(self):
        """Cursor on the unit-of-work connection, or on a fresh checkout"""
        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            cursor = conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
            return

        with self._connection() as conn:
            cursor = conn.cursor()
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def atomic(self):
        if getattr(self._local, 'conn', None) is not None:
            yield
            return

        with self._connection() as conn:
            self._local.conn = conn
            self._local.pending_tables = set()
            try:
                yield
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            else:
                self._known_tables.update(self._local.pending_tables)
            finally:
                self._local.conn = None
                self._local.pending_tables = set()

    def _create_table(self, cursor, table: str) -> None:
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            )
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        cursor.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)

    def _ensure_table(self, table: str) -> None:
        """
        Create the table if this process has not seen it yet.

        Inside a unit of work the DDL runs on the unit's own connection, and
        the table only counts as known once that unit commits.
        """
        if table in self._known_tables:
            return

        conn = getattr(self._local, 'conn', None)
        if conn is not None:
            if table not in self._local.pending_tables:
                with conn.cursor() as cursor:
                    self._create_table(cursor, table)
                self._local.pending_tables.add(table)
            return

        with self._tables_lock:
            if table in self._known_tables:
                return
            with self._connection() as conn:
                try:
                    with conn.cursor() as cursor:
                        self._create_table(cursor, table)
                    conn.commit()
                except Exception:
                    conn.rollback()
                    raise
            self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        with self._cursor() as cursor:
            cursor.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))

    def save_if_version(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> None:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"""
                UPDATE {table} SET data = %s, updated_at = %s
                WHERE id = %s AND (data ->> 'version')::int = %s
            """, (json.dumps(data, default=str), datetime.now(timezone.utc),
                  record_id, expected_version))
            if cursor.rowcount == 0:
                raise ConflictError(f"Version conflict on {table}:{record_id}")

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Row lock held until the enclosing unit of work commits or rolls back"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
            row = cursor.fetchone()
            return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [dict(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        self._ensure_table(table)
        with self._cursor() as cursor:
            if not filters:
                cursor.execute(f"SELECT data FROM {table} ORDER BY created_at")
            else:
                cursor.execute(f"""
                    SELECT data FROM {table}
                    WHERE data @> %s::jsonb
                    ORDER BY created_at
                """, (json.dumps(filters, default=str),))
            return [dict(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        self._ensure_table(table)
        with self._cursor() as cursor:
            cursor.execute(f"DELETE FROM {table}")

    def ping(self) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1")
            return True

    def close(self) -> None:
        """Close every pooled connection"""
        if self._pool:
            self._pool.closeall()
            self._pool = None


def create_storage(database_url: str, pool_size: int = 10,
                   tables: Iterable[str] = ()) -> StorageInterface:
    """
    Create a storage backend from a URL.

    Supported forms:
        memory://                      in-process storage
        sqlite:///path/to/file.db      SQLite file (sqlite:// for in-memory SQLite)
        postgresql://user:pw@host/db   PostgreSQL with a connection pool

    tables are created up front on backends that need it.
    """
    if database_url in ("memory://", ":memory:"):
        return InMemoryStorage()

    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")

    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, pool_size=pool_size, tables=tables)

    raise ValueError(f"Unsupported database URL: {database_url}")
