"""
Document store used to persist server, package and secret records.

Documents are JSON objects grouped into named collections. Filters are
equality matches on top-level fields. No transactions are assumed by
callers.
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp_gateway.core.base import Resource
from mcp_gateway.utils.logging import get_logger

logger = get_logger(__name__)

Document = Dict[str, Any]
Filter = Dict[str, Any]


def _matches(document: Document, filter_: Filter) -> bool:
    return all(document.get(key) == value for key, value in filter_.items())


class DocumentStore(Resource, ABC):
    """CRUD over JSON documents in one collection."""

    @abstractmethod
    def insert(self, document: Document) -> None:
        """Insert a new document."""

    @abstractmethod
    def find(self, filter_: Optional[Filter] = None) -> List[Document]:
        """All documents matching the filter."""

    def find_one(self, filter_: Filter) -> Optional[Document]:
        """First document matching the filter, if any."""
        matches = self.find(filter_)
        return matches[0] if matches else None

    @abstractmethod
    def update(self, changes: Document, filter_: Filter) -> int:
        """Merge ``changes`` into every matching document; returns match count."""

    def upsert(self, document: Document, filter_: Filter) -> None:
        """Update matching documents, or insert when none match."""
        if self.update(document, filter_) == 0:
            self.insert({**filter_, **document})

    @abstractmethod
    def delete(self, filter_: Filter) -> int:
        """Delete matching documents; returns deleted count."""


class MemoryDocumentStore(DocumentStore):
    """Process-local store; contents vanish with the process."""

    def __init__(self, collection: str = "default"):
        self.collection = collection
        self._documents: List[Document] = []

    def insert(self, document: Document) -> None:
        self._documents.append(copy.deepcopy(document))

    def find(self, filter_: Optional[Filter] = None) -> List[Document]:
        filter_ = filter_ or {}
        return [copy.deepcopy(doc) for doc in self._documents if _matches(doc, filter_)]

    def update(self, changes: Document, filter_: Filter) -> int:
        count = 0
        for doc in self._documents:
            if _matches(doc, filter_):
                doc.update(copy.deepcopy(changes))
                count += 1
        return count

    def delete(self, filter_: Filter) -> int:
        before = len(self._documents)
        self._documents = [doc for doc in self._documents if not _matches(doc, filter_)]
        return before - len(self._documents)


class SQLiteDocumentStore(DocumentStore):
    """
    SQLite-backed store. Each collection is a table of JSON text rows;
    filtering happens in Python since collections stay small.
    """

    def __init__(self, db_path: Path, collection: str):
        self.db_path = Path(db_path)
        self.collection = collection
        self._table = "docs_" + "".join(c if c.isalnum() else "_" for c in collection)
        self._lock = threading.Lock()

    async def init(self) -> None:
        """Ensure the database file and collection table exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute(
                f"CREATE TABLE IF NOT EXISTS {self._table} ("
                "id INTEGER PRIMARY KEY AUTOINCREMENT, "
                "body TEXT NOT NULL)"
            )
            conn.commit()
        logger.debug(f"Document collection ready: {self.collection} ({self.db_path})")

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _rows(self, conn: sqlite3.Connection) -> List[tuple]:
        cursor = conn.execute(f"SELECT id, body FROM {self._table} ORDER BY id")
        return [(row_id, json.loads(body)) for row_id, body in cursor.fetchall()]

    def insert(self, document: Document) -> None:
        with self._lock, closing(self._connect()) as conn:
            conn.execute(
                f"INSERT INTO {self._table} (body) VALUES (?)",
                (json.dumps(document, default=str),),
            )
            conn.commit()

    def find(self, filter_: Optional[Filter] = None) -> List[Document]:
        filter_ = filter_ or {}
        with self._lock, closing(self._connect()) as conn:
            return [doc for _, doc in self._rows(conn) if _matches(doc, filter_)]

    def update(self, changes: Document, filter_: Filter) -> int:
        count = 0
        with self._lock, closing(self._connect()) as conn:
            for row_id, doc in self._rows(conn):
                if not _matches(doc, filter_):
                    continue
                doc.update(changes)
                conn.execute(
                    f"UPDATE {self._table} SET body = ? WHERE id = ?",
                    (json.dumps(doc, default=str), row_id),
                )
                count += 1
            conn.commit()
        return count

    def delete(self, filter_: Filter) -> int:
        count = 0
        with self._lock, closing(self._connect()) as conn:
            for row_id, doc in self._rows(conn):
                if _matches(doc, filter_):
                    conn.execute(f"DELETE FROM {self._table} WHERE id = ?", (row_id,))
                    count += 1
            conn.commit()
        return count
