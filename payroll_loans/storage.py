"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend supports multi-statement transactions through ``atomic()`` and
per-record locks through ``record_lock()``; the loan engine uses both to keep
a loan aggregate and its installment ledger consistent.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Tuple, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .config import get_config
from .errors import StorageError, TransactionFailed


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

    _registry_guard = threading.Lock()

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

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

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    def in_transaction(self) -> bool:
        """Whether the calling thread has an open transaction"""
        return False

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        A nested ``atomic()`` joins the enclosing transaction; only the
        outermost block commits or rolls back.
        """
        if self.in_transaction():
            yield
            return

        self.begin_transaction()
        try:
            yield
            self.commit()
        except BaseException:
            self.rollback()
            raise

    def _record_lock_for(self, table: str, record_id: str) -> threading.RLock:
        with StorageInterface._registry_guard:
            registry: Dict[Tuple[str, str], threading.RLock] = self.__dict__.setdefault('_record_locks', {})
            lock = registry.get((table, record_id))
            if lock is None:
                lock = threading.RLock()
                registry[(table, record_id)] = lock
            return lock

    @contextmanager
    def record_lock(self, table: str, record_id: str):
        """
        Exclusive, re-entrant lock on a single record.

        Writers of the same record are serialized; writers of different
        records never contend.
        """
        lock = self._record_lock_for(table, record_id)
        with lock:
            yield


def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
    # Deep copy to prevent external mutation
    return json.loads(json.dumps(record, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions are per thread: writes made inside ``atomic()`` go to a
    private write set that is applied in one step on commit and discarded
    on rollback, so other threads never observe uncommitted data.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._local = threading.local()

    def _write_set(self) -> Optional[Dict[str, Dict[str, Optional[Dict[str, Any]]]]]:
        return getattr(self._local, 'write_set', None)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _view(self, table: str) -> Dict[str, Dict[str, Any]]:
        """Committed rows of a table overlaid with this thread's pending writes"""
        with self._lock:
            self._ensure_table(table)
            rows = dict(self._data[table])
        pending = (self._write_set() or {}).get(table, {})
        for record_id, record in pending.items():
            if record is None:
                rows.pop(record_id, None)
            else:
                rows[record_id] = record
        return rows

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        record = _copy(data)
        write_set = self._write_set()
        if write_set is not None:
            write_set.setdefault(table, {})[record_id] = record
            return
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        record = self._view(table).get(record_id)
        if record:
            return _copy(record)
        return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        return [_copy(record) for record in self._view(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        present = record_id in self._view(table)
        write_set = self._write_set()
        if write_set is not None:
            if present:
                write_set.setdefault(table, {})[record_id] = None
            return present
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        return record_id in self._view(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        return [
            _copy(record) for record in self._view(table).values()
            if _matches(record, filters)
        ]

    def count(self, table: str) -> int:
        """Count records in table"""
        return len(self._view(table))

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        write_set = self._write_set()
        if write_set is not None:
            pending = write_set.setdefault(table, {})
            for record_id in self._view(table):
                pending[record_id] = None
            return
        with self._lock:
            self._data[table] = {}

    def begin_transaction(self) -> None:
        """Start a transaction for the calling thread"""
        if self._write_set() is None:
            self._local.write_set = {}

    def commit(self) -> None:
        """Apply the calling thread's pending writes in one step"""
        write_set = self._write_set()
        if write_set is None:
            return
        with self._lock:
            for table, rows in write_set.items():
                self._ensure_table(table)
                for record_id, record in rows.items():
                    if record is None:
                        self._data[table].pop(record_id, None)
                    else:
                        self._data[table][record_id] = record
        self._local.write_set = None

    def rollback(self) -> None:
        """Discard the calling thread's pending writes"""
        self._local.write_set = None

    def in_transaction(self) -> bool:
        return self._write_set() is not None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all committed data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    SQLite allows a single writer, so a transaction holds the connection
    lock until it commits or rolls back.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            # isolation_level='DEFERRED' enables manual transaction control
            self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _guard(self, operation: str):
        with self._lock:
            if self._connection is None:
                raise StorageError(f"Cannot {operation}: storage is closed")
            try:
                yield self._connection
            except sqlite3.Error as e:
                raise StorageError(f"SQLite {operation} failed: {e}") from e

    def _maybe_commit(self) -> None:
        # Only commit if not in transaction
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
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
        self._maybe_commit()
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard("save") as connection:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard("load") as connection:
            self._ensure_table(table)
            cursor = connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._guard("load_all") as connection:
            self._ensure_table(table)
            cursor = connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._guard("delete") as connection:
            self._ensure_table(table)
            cursor = connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._guard("exists") as connection:
            self._ensure_table(table)
            cursor = connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard("count") as connection:
            self._ensure_table(table)
            cursor = connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._guard("clear_table") as connection:
            self._ensure_table(table)
            connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            # SQLite with isolation_level='DEFERRED' begins on the first write
            self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._guard("commit") as connection:
            if self._in_transaction:
                # A failed commit leaves the transaction open for rollback()
                connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._in_transaction = False
                if self._connection is not None:
                    self._connection.rollback()
                # Tables created inside the aborted transaction are gone
                self._tables.clear()

    def in_transaction(self) -> bool:
        with self._lock:
            return self._in_transaction

    @contextmanager
    def atomic(self):
        """Hold the connection for the whole transaction"""
        with self._lock:
            with super().atomic():
                yield

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: Optional[str] = None) -> StorageInterface:
    """
    Build a storage backend from a URL (the configured database_url if None).

    ``memory://`` gives an InMemoryStorage, ``sqlite:///path/to.db`` a file
    backed SQLiteStorage and ``sqlite://`` an in-memory SQLite database.
    """
    database_url = database_url or get_config().database_url
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")


@contextmanager
def transactional(storage: StorageInterface, operation: str):
    """
    ``storage.atomic()`` for engine operations.

    Backend failures surface as TransactionFailed once the transaction has
    been rolled back.
    """
    try:
        with storage.atomic():
            yield
    except StorageError as e:
        raise TransactionFailed(f"{operation} could not be committed", "error", str(e)) from e
