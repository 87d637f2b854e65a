"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single node) and PostgreSQL (production). Records are
stored as JSON documents; monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_type_hints, get_origin, get_args
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
import copy
import sqlite3
import json
import threading
from dataclasses import dataclass, fields, is_dataclass
from pathlib import Path
from contextlib import contextmanager


def serialize_value(value: Any) -> Any:
    """Convert a Python value into its JSON-safe storage form"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        if hasattr(value, 'to_dict'):
            return value.to_dict()
        return {f.name: serialize_value(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [serialize_value(v) for v in value]
    return value


def coerce_value(value: Any, hint: Any) -> Any:
    """Convert a stored value back into the type named by a dataclass hint"""
    if value is None:
        return None

    origin = get_origin(hint)
    if origin is Union:
        args = [a for a in get_args(hint) if a is not type(None)]
        return coerce_value(value, args[0]) if len(args) == 1 else value
    if origin in (list, List):
        args = get_args(hint)
        if args:
            return [coerce_value(v, args[0]) for v in value]
        return list(value)

    if isinstance(hint, type):
        if issubclass(hint, Enum):
            return value if isinstance(value, hint) else hint(value)
        if hint is Decimal:
            return value if isinstance(value, Decimal) else Decimal(str(value))
        if hint is datetime:
            return datetime.fromisoformat(value) if isinstance(value, str) else value
        if hint is date:
            return date.fromisoformat(value[:10]) if isinstance(value, str) else value
        if is_dataclass(hint) and isinstance(value, dict):
            return hint.from_dict(value) if hasattr(hint, 'from_dict') else hint(**value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: serialize_value(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, ignoring storage-only keys"""
        hints = get_type_hints(cls)
        known = {f.name for f in fields(cls)}
        kwargs = {
            key: coerce_value(value, hints.get(key))
            for key, value in data.items()
            if key in known
        }
        return cls(**kwargs)

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._transaction_lock = threading.RLock()
        self._atomic_depth = 0

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
        """Find records whose fields equal every filter value"""
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
        """Liveness check used by the health endpoint"""
        self.count("_health")
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

    @property
    def in_atomic_block(self) -> bool:
        return self._atomic_depth > 0

    @contextmanager
    def atomic(self):
        """
        Run the block in one transaction.

        Nested blocks join the outermost one; only the outermost block commits
        or rolls back. The transaction lock is held for the whole block, which
        serialises writers the way row locks would.
        """
        with self._transaction_lock:
            if self._atomic_depth:
                self._atomic_depth += 1
                try:
                    yield
                finally:
                    self._atomic_depth -= 1
                return

            self._atomic_depth = 1
            self.begin_transaction()
            try:
                yield
                self.commit()
            except Exception:
                self.rollback()
                raise
            finally:
                self._atomic_depth = 0


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Round-trip through JSON so callers can't mutate stored state
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
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
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Snapshot all tables so rollback can restore them"""
        with self._lock:
            self._snapshot = copy.deepcopy(self._data)

    def commit(self) -> None:
        with self._lock:
            self._snapshot = None

    def rollback(self) -> None:
        with self._lock:
            if self._snapshot is not None:
                self._data = self._snapshot
                self._snapshot = None


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

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
            # DDL outside a transaction is committed right away; inside one
            # it rides along with the surrounding writes
            if not self._in_transaction:
                self._connection.commit()
            self._known_tables.add(table)

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

            if not self._in_transaction:
                self._connection.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
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
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))

            if not self._in_transaction:
                self._connection.commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (JSON key equality)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at, rowid
            """)
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
            if not self._in_transaction:
                self._connection.commit()

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # isolation_level='DEFERRED' opens the transaction on first write
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
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with JSONB documents"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install finance-core[postgres]")

        self.connection_string = connection_string
        self._connection = None
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()
        self._connect()

    def _connect(self) -> None:
        with self._lock:
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False

    def _execute(self, sql: str, params: Optional[tuple] = None, fetch: str = ""):
        """Run one statement, committing unless an outer transaction is open"""
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute(sql, params)
                if fetch == "one":
                    result = cursor.fetchone()
                elif fetch == "all":
                    result = cursor.fetchall()
                else:
                    result = cursor.rowcount
                if not self._in_transaction:
                    self._connection.commit()
                return result
            finally:
                cursor.close()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data JSONB NOT NULL,
                created_at TIMESTAMPTZ DEFAULT NOW(),
                updated_at TIMESTAMPTZ DEFAULT NOW()
            )
        """)
        self._execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_data
            ON {table} USING gin(data)
        """)
        self._known_tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._ensure_table(table)
        now = datetime.now(timezone.utc)
        self._execute(f"""
            INSERT INTO {table} (id, data, created_at, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE SET
                data = EXCLUDED.data,
                updated_at = EXCLUDED.updated_at
        """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_table(table)
        row = self._execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,), fetch="one")
        return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        rows = self._execute(f"SELECT data FROM {table} ORDER BY created_at", fetch="all")
        return [dict(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        return self._execute(f"DELETE FROM {table} WHERE id = %s", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        self._ensure_table(table)
        row = self._execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,), fetch="one")
        return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records using JSONB containment"""
        self._ensure_table(table)
        if not filters:
            return self.load_all(table)
        rows = self._execute(f"""
            SELECT data FROM {table}
            WHERE data @> %s::jsonb
            ORDER BY created_at
        """, (json.dumps(filters, default=str),), fetch="all")
        return [dict(row['data']) for row in rows]

    def count(self, table: str) -> int:
        self._ensure_table(table)
        return self._execute(f"SELECT COUNT(*) as count FROM {table}", fetch="one")['count']

    def clear_table(self, table: str) -> None:
        self._ensure_table(table)
        self._execute(f"DELETE FROM {table}")

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
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
                self._known_tables.clear()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory://                  -> InMemoryStorage
    sqlite:///relative.db      -> SQLiteStorage (sqlite:// alone is in-memory)
    postgresql://...           -> PostgreSQLStorage
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database_url scheme: {database_url}")


class StorageManager:
    """Typed convenience layer over a storage backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def save_record(self, record: StorageRecord, table: str) -> None:
        self.storage.save(table, record.id, record.to_dict())

    def load_record(self, record_type: type, table: str, record_id: str) -> Optional[StorageRecord]:
        data = self.storage.load(table, record_id)
        if data:
            return record_type.from_dict(data)
        return None

    def find_records(self, record_type: type, table: str, filters: Dict[str, Any]) -> List[StorageRecord]:
        return [record_type.from_dict(data) for data in self.storage.find(table, filters)]

    def find_one(self, record_type: type, table: str, filters: Dict[str, Any]) -> Optional[StorageRecord]:
        found = self.storage.find(table, filters)
        return record_type.from_dict(found[0]) if found else None

    def close(self) -> None:
        self.storage.close()
