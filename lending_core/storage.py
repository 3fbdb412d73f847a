"""
Storage Backend Module

Record persistence for loans and repayment schedules. Records are JSON
documents keyed by id inside named tables; monetary values travel as Decimal
strings. Two backends: in-memory (tests, scratch runs) and SQLite.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .exceptions import PersistenceError


_FIELD_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Records = List[Tuple[str, Dict[str, Any]]]


@dataclass
class StorageRecord:
    """Base class for stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Plain dict for storage: datetimes as ISO strings, Decimals as strings"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def save_many(self, table: str, records: Records) -> None:
        """
        Insert a batch of new records.

        The batch is all-or-nothing: if any record id already exists, or the
        backend fails part way, nothing from the batch is kept and
        PersistenceError is raised.
        """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load every record of a table"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record; False if it did not exist"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Records whose fields equal every filter value"""
        return [record for record in self.load_all(table) if _matches(record, filters)]

    def count_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Number of records matching filters"""
        return len(self.find(table, filters))

    def group_sum(self, table: str, group_field: str, sum_field: str) -> List[Dict[str, Any]]:
        """
        Group records by one field, counting them and summing another.

        Sums are computed with Decimal since amounts are stored as strings.

        Returns:
            One dict per group: {"key", "count", "total"}
        """
        groups: Dict[Any, Dict[str, Any]] = {}
        for record in self.load_all(table):
            key = record.get(group_field)
            group = groups.setdefault(key, {"key": key, "count": 0, "total": Decimal('0')})
            group["count"] += 1
            value = record.get(sum_field)
            if value is not None:
                group["total"] += Decimal(str(value))
        return list(groups.values())

    def begin_transaction(self) -> None:
        """Start a transaction (no-op unless the backend supports them)"""

    def commit(self) -> None:
        """Commit the current transaction"""

    def rollback(self) -> None:
        """Discard the current transaction"""

    @contextmanager
    def atomic(self):
        """Run a block of writes as one transaction"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """Dict-backed storage; records are copied in and out through JSON"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, str]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, str]:
        return self._tables.setdefault(table, {})

    @staticmethod
    def _encode(data: Dict[str, Any]) -> str:
        return json.dumps(data, default=str)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._encode(data)

    def save_many(self, table: str, records: Records) -> None:
        with self._lock:
            rows = self._table(table)
            batch: Dict[str, str] = {}
            for record_id, data in records:
                if record_id in rows or record_id in batch:
                    raise PersistenceError(f"Record {record_id} already exists in {table}")
                batch[record_id] = self._encode(data)
            rows.update(batch)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            raw = self._table(table).get(record_id)
        return json.loads(raw) if raw is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = list(self._table(table).values())
        return [json.loads(raw) for raw in rows]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._tables[table] = {}

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage. Each table holds (id, data JSON, created_at, updated_at).

    Writes commit immediately unless an atomic() block is open, in which case
    they are committed or rolled back together when it ends.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # DEFERRED isolation: sqlite3 opens a transaction before the first write
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _errors(self, operation: str, table: str):
        """Translate sqlite3 failures into PersistenceError"""
        try:
            yield
        except sqlite3.Error as exc:
            raise PersistenceError(f"{operation} on {table} failed: {exc}") from exc

    def _autocommit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(
            f"CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table}(created_at)"
        )
        self._autocommit()

    def _query(self, operation: str, table: str, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock, self._errors(operation, table):
            self._ensure_table(table)
            return self._connection.execute(sql, params).fetchall()

    def _write(self, operation: str, table: str, sql: str, params=()) -> int:
        with self._lock, self._errors(operation, table):
            self._ensure_table(table)
            cursor = self._connection.execute(sql, params)
            self._autocommit()
            return cursor.rowcount

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        # Replace keeps the original created_at
        self._write("save", table, f"""
            INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
            VALUES (?, ?, COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?), ?)
        """, (record_id, json.dumps(data, default=str), record_id, now, now))

    def save_many(self, table: str, records: Records) -> None:
        now = datetime.now(timezone.utc).isoformat()
        rows = [(record_id, json.dumps(data, default=str), now, now) for record_id, data in records]

        with self._lock:
            with self._errors("create", table):
                self._ensure_table(table)
            try:
                # Plain INSERT so an existing id fails the whole batch
                self._connection.executemany(
                    f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)",
                    rows
                )
                self._autocommit()
            except sqlite3.Error as exc:
                if not self._in_transaction:
                    self._connection.rollback()
                raise PersistenceError(f"batch insert on {table} failed: {exc}") from exc

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("load", table, f"SELECT data FROM {table} WHERE id = ?", (record_id,))
        return json.loads(rows[0]['data']) if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        rows = self._query("load_all", table, f"SELECT data FROM {table} ORDER BY created_at, rowid")
        return [json.loads(row['data']) for row in rows]

    def delete(self, table: str, record_id: str) -> bool:
        return self._write("delete", table, f"DELETE FROM {table} WHERE id = ?", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        return bool(self._query("exists", table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)))

    def count(self, table: str) -> int:
        return self._query("count", table, f"SELECT COUNT(*) AS n FROM {table}")[0]['n']

    def count_where(self, table: str, filters: Dict[str, Any]) -> int:
        """Count matching records inside SQLite using json_extract"""
        conditions = []
        params: List[Any] = []
        for key, value in filters.items():
            if not _FIELD_NAME.match(key):
                raise ValueError(f"Invalid filter field: {key}")
            conditions.append(f"json_extract(data, '$.{key}') = ?")
            params.append(value)
        where = " AND ".join(conditions) or "1 = 1"
        return self._query("count_where", table, f"SELECT COUNT(*) AS n FROM {table} WHERE {where}", params)[0]['n']

    def clear_table(self, table: str) -> None:
        self._write("clear", table, f"DELETE FROM {table}")

    @contextmanager
    def atomic(self):
        """
        Run a block of writes as one transaction.

        The connection lock is held for the whole block: writes from other
        threads wait until it commits or rolls back instead of joining it.
        """
        with self._lock:
            with super().atomic():
                yield

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                with self._errors("commit", "transaction"):
                    self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._in_transaction = False
                self._connection.rollback()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(backend: str, database_path: Union[str, Path] = ":memory:") -> StorageInterface:
    """Build a storage backend by name ("sqlite" or "memory")"""
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(database_path)
    raise ValueError(f"Unsupported storage backend: {backend}")
