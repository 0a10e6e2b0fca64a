"""SQLite-backed document store for users, sessions and the catalog."""
from __future__ import annotations

import json
import logging
import re
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import DuplicateKey, StoreUnavailable

logger = logging.getLogger("library.database")

Document = Dict[str, Any]

# Collection name -> fields carrying a unique index.
COLLECTIONS: Dict[str, Tuple[str, ...]] = {
    "users": ("email", "username", "externalId"),
    "sessions": ("tokenDigest",),
    "authors": (),
    "books": (),
}

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")
_UNIQUE_INDEX_PATTERN = re.compile(r"index '(?:uq_\w+?__)(\w+)'")


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "library.sqlite3").resolve(strict=False)


def new_document_id() -> str:
    return uuid.uuid4().hex


def _json_path(field: str) -> str:
    if not _FIELD_PATTERN.match(field):
        raise ValueError(f"Invalid document field name: {field!r}")
    return "$." + field


def _index_name(collection: str, field: str) -> str:
    return f"uq_{collection}__{field}"


class Database:
    """Document-oriented wrapper around a single SQLite connection.

    Every collection is a table of JSON documents keyed by an opaque string
    ``id``. Filters are equality matches on top-level or dotted fields; a
    ``None`` value matches documents where the field is missing or null.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def open(self) -> "Database":
        """Connect and make sure every collection and index exists."""

        with self._lock:
            if self._conn is not None:
                return self
            _ensure_directory(self._path)
            try:
                conn = sqlite3.connect(self._path, check_same_thread=False)
            except sqlite3.Error as exc:
                raise StoreUnavailable(f"Could not open database at {self._path}") from exc
            conn.row_factory = sqlite3.Row
            self._conn = conn
            self.initialize()
        logger.info("Database opened at %s", self._path)
        return self

    def initialize(self) -> None:
        """Create the collection tables and unique indexes if missing."""

        statements: List[str] = []
        for collection, unique_fields in COLLECTIONS.items():
            statements.append(
                f"CREATE TABLE IF NOT EXISTS {collection} ("
                " id TEXT PRIMARY KEY,"
                " document TEXT NOT NULL"
                ")"
            )
            for field in unique_fields:
                statements.append(
                    f"CREATE UNIQUE INDEX IF NOT EXISTS {_index_name(collection, field)}"
                    f" ON {collection}(json_extract(document, '{_json_path(field)}'))"
                )
        with self._transaction() as conn:
            for statement in statements:
                conn.execute(statement)

    def close(self) -> None:
        with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            conn.close()
            logger.info("Database at %s closed", self._path)

    def __enter__(self) -> "Database":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def ping(self) -> None:
        with self._transaction() as conn:
            conn.execute("SELECT 1").fetchone()

    # ------------------------------------------------------------------
    # Document operations
    # ------------------------------------------------------------------
    def find_one(self, collection: str, filter: Mapping[str, Any]) -> Optional[Document]:
        where, params = self._where(filter)
        with self._transaction() as conn:
            row = conn.execute(
                f"SELECT id, document FROM {self._table(collection)} WHERE {where} LIMIT 1",
                params,
            ).fetchone()
        return self._row_to_document(row) if row is not None else None

    def find(self, collection: str, filter: Optional[Mapping[str, Any]] = None) -> List[Document]:
        where, params = self._where(filter or {})
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT id, document FROM {self._table(collection)} WHERE {where} ORDER BY rowid",
                params,
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> Document:
        """Store ``document`` under a new id and return the stored copy."""

        stored = {key: value for key, value in document.items() if key != "id"}
        document_id = new_document_id()
        with self._transaction() as conn:
            conn.execute(
                f"INSERT INTO {self._table(collection)} (id, document) VALUES (?, ?)",
                (document_id, json.dumps(stored)),
            )
        return {"id": document_id, **stored}

    def update_one(
        self,
        collection: str,
        filter: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> int:
        """Set the fields in ``patch`` on the first matching document.

        ``None`` values remove the field. Returns the number of matched
        documents (0 or 1).
        """

        return self._update(collection, filter, patch, limit=1)

    def update_many(
        self,
        collection: str,
        filter: Mapping[str, Any],
        patch: Mapping[str, Any],
    ) -> int:
        return self._update(collection, filter, patch, limit=None)

    def delete_one(self, collection: str, filter: Mapping[str, Any]) -> int:
        where, params = self._where(filter)
        table = self._table(collection)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"DELETE FROM {table} WHERE id IN (SELECT id FROM {table} WHERE {where} LIMIT 1)",
                params,
            )
            return cursor.rowcount

    def delete_many(self, collection: str, filter: Mapping[str, Any]) -> int:
        where, params = self._where(filter)
        with self._transaction() as conn:
            cursor = conn.execute(f"DELETE FROM {self._table(collection)} WHERE {where}", params)
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _update(
        self,
        collection: str,
        filter: Mapping[str, Any],
        patch: Mapping[str, Any],
        *,
        limit: Optional[int],
    ) -> int:
        if "id" in patch:
            raise ValueError("Document ids are immutable")
        where, params = self._where(filter)
        table = self._table(collection)
        query = f"SELECT id, document FROM {table} WHERE {where}"
        if limit is not None:
            query += f" LIMIT {int(limit)}"

        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
            for row in rows:
                document = json.loads(row["document"])
                for key, value in patch.items():
                    if value is None:
                        document.pop(key, None)
                    else:
                        document[key] = value
                conn.execute(
                    f"UPDATE {table} SET document = ? WHERE id = ?",
                    (json.dumps(document), row["id"]),
                )
        return len(rows)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._conn
            if conn is None:
                raise StoreUnavailable("Database is not open")
            try:
                with conn:
                    yield conn
            except sqlite3.IntegrityError as exc:
                raise DuplicateKey(str(exc), key=self._violated_field(exc)) from exc
            except sqlite3.Error as exc:
                logger.exception("Document store operation failed")
                raise StoreUnavailable() from exc

    @staticmethod
    def _violated_field(exc: sqlite3.IntegrityError) -> Optional[str]:
        match = _UNIQUE_INDEX_PATTERN.search(str(exc))
        return match.group(1) if match else None

    @staticmethod
    def _table(collection: str) -> str:
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection!r}")
        return collection

    @staticmethod
    def _where(filter: Mapping[str, Any]) -> Tuple[str, Sequence[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for field, value in filter.items():
            if field == "id":
                column = "id"
            else:
                column = f"json_extract(document, '{_json_path(field)}')"
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        return (" AND ".join(clauses) or "1 = 1"), params

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        document = json.loads(row["document"])
        document["id"] = str(row["id"])
        return document


__all__ = ["COLLECTIONS", "Database", "Document", "new_document_id", "resolve_database_path"]
