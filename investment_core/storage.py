"""
Storage Backend Module

Document storage for engine records. Each record is a JSON document filed
under a collection name ("investments", "audit_events", ...) and a record id.
Decimals are written as strings and datetimes as ISO-8601, so amounts and
rates survive a round trip exactly.

Two backends are provided: InMemoryStorage for tests and SQLiteStorage for
persistence. Both implement nestable transactions through ``atomic()``; the
outermost transaction holds the backend lock until it finishes, and an inner
``atomic()`` is a savepoint that can fail without undoing the outer work.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, fields, is_dataclass
from pathlib import Path
from contextlib import contextmanager

Document = Dict[str, Any]


def serialize_value(value: Any) -> Any:
    """JSON-safe form of a value, recursing through dataclasses and containers"""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if is_dataclass(value):
        return {f.name: serialize_value(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(v) for v in value]
    return value


def parse_datetime(value: Optional[Union[str, datetime]]) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def parse_decimal(value: Optional[Union[str, Decimal]]) -> Optional[Decimal]:
    if value is None or isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass
class StorageRecord:
    """Common identity and timestamps of every stored record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        return serialize_value(self)

    @classmethod
    def from_dict(cls, data: Document) -> 'StorageRecord':
        data = dict(data)
        data['created_at'] = parse_datetime(data.get('created_at'))
        data['updated_at'] = parse_datetime(data.get('updated_at'))
        return cls(**data)


def matches(document: Document, filters: Document) -> bool:
    """Every filter key is present in the document with an equal value"""
    return all(key in document and document[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """
    Collection/id keyed document store with nestable transactions.

    Writes made inside ``atomic()`` become visible to other threads only when
    the outermost block exits cleanly.
    """

    @abstractmethod
    def save(self, collection: str, record_id: str, data: Document) -> None:
        """Insert or replace the document ``record_id``"""

    @abstractmethod
    def load(self, collection: str, record_id: str) -> Optional[Document]:
        """A copy of the document, or None when absent"""

    @abstractmethod
    def load_all(self, collection: str) -> List[Document]:
        """Every document of the collection in insertion order"""

    def find(self, collection: str, filters: Document) -> List[Document]:
        """Documents whose fields equal every value in ``filters``"""
        return [doc for doc in self.load_all(collection) if matches(doc, filters)]

    @abstractmethod
    def count(self, collection: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def begin_transaction(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        pass

    @contextmanager
    def atomic(self):
        """Run the block as one transaction, rolling back on any exception"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed storage for tests.

    An open transaction journals the prior value of every document it
    overwrites; rollback replays the journal back to the savepoint.
    """

    def __init__(self):
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()
        self._journal: List[tuple] = []
        self._savepoints: List[int] = []

    @staticmethod
    def _copy(document: Optional[Document]) -> Optional[Document]:
        if document is None:
            return None
        return json.loads(json.dumps(document, default=str))

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    def save(self, collection: str, record_id: str, data: Document) -> None:
        with self._lock:
            documents = self._collection(collection)
            if self._savepoints:
                self._journal.append((collection, record_id, self._copy(documents.get(record_id))))
            documents[record_id] = self._copy(data)

    def load(self, collection: str, record_id: str) -> Optional[Document]:
        with self._lock:
            return self._copy(self._collection(collection).get(record_id))

    def load_all(self, collection: str) -> List[Document]:
        with self._lock:
            return [self._copy(doc) for doc in self._collection(collection).values()]

    def count(self, collection: str) -> int:
        with self._lock:
            return len(self._collection(collection))

    def close(self) -> None:
        pass

    @property
    def in_transaction(self) -> bool:
        return bool(self._savepoints)

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._savepoints.append(len(self._journal))

    def commit(self) -> None:
        try:
            self._savepoints.pop()
            if not self._savepoints:
                self._journal = []
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            savepoint = self._savepoints.pop()
            while len(self._journal) > savepoint:
                collection, record_id, previous = self._journal.pop()
                if previous is None:
                    self._collections[collection].pop(record_id, None)
                else:
                    self._collections[collection][record_id] = previous
        finally:
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """
    SQLite persistence in a single ``documents`` table keyed by (collection, id).

    The connection runs in autocommit mode; the outermost transaction issues
    BEGIN and nested ones use numbered SAVEPOINTs.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            id TEXT NOT NULL,
            body TEXT NOT NULL,
            inserted_at TEXT NOT NULL,
            PRIMARY KEY (collection, id)
        )
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._lock = threading.RLock()
        self._depth = 0
        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute(self.SCHEMA)

    def save(self, collection: str, record_id: str, data: Document) -> None:
        body = json.dumps(data, default=str)
        with self._lock:
            updated = self._connection.execute(
                "UPDATE documents SET body = ? WHERE collection = ? AND id = ?",
                (body, collection, record_id)
            )
            if updated.rowcount == 0:
                self._connection.execute(
                    "INSERT INTO documents (collection, id, body, inserted_at) VALUES (?, ?, ?, ?)",
                    (collection, record_id, body, datetime.now(timezone.utc).isoformat())
                )

    def load(self, collection: str, record_id: str) -> Optional[Document]:
        with self._lock:
            row = self._connection.execute(
                "SELECT body FROM documents WHERE collection = ? AND id = ?",
                (collection, record_id)
            ).fetchone()
        return json.loads(row[0]) if row else None

    def load_all(self, collection: str) -> List[Document]:
        with self._lock:
            rows = self._connection.execute(
                "SELECT body FROM documents WHERE collection = ? ORDER BY rowid",
                (collection,)
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def count(self, collection: str) -> int:
        with self._lock:
            (total,) = self._connection.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?", (collection,)
            ).fetchone()
        return total

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        self._lock.acquire()
        try:
            self._connection.execute("BEGIN" if self._depth == 0 else f"SAVEPOINT sp_{self._depth}")
        except sqlite3.Error:
            self._lock.release()
            raise
        self._depth += 1

    def commit(self) -> None:
        try:
            self._depth -= 1
            self._connection.execute("COMMIT" if self._depth == 0 else f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Storage backend for a database URL.

    ``memory://`` selects InMemoryStorage. ``sqlite:///relative.db`` and
    ``sqlite:////absolute/path.db`` select SQLiteStorage; a bare ``sqlite://``
    is an in-memory SQLite database.

    Raises:
        ValueError: If the URL scheme is not supported
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
