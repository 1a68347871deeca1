from __future__ import annotations

import copy
import json
import os
import sqlite3
import threading
import uuid
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

T = TypeVar("T")

FILTER_OPERATORS = {"==", "!=", "<", "<=", ">", ">=", "in"}


def utc_iso(value: datetime | None = None) -> str:
    dt = value if value is not None else datetime.now(UTC)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_iso(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class DocumentNotFoundError(LookupError):
    def __init__(self, path: str) -> None:
        super().__init__(f"document not found: {path}")
        self.path = path


@dataclass
class Document:
    path: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def collection(self) -> str:
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""


def _validate_path(path: str) -> str:
    parts = [part for part in str(path).split("/") if part]
    if not parts or len(parts) % 2 != 0:
        raise ValueError(f"invalid document path: {path!r}")
    return "/".join(parts)


def _collection_of(path: str) -> str:
    return path.rsplit("/", 1)[0]


def _apply_update(data: dict[str, Any], changes: Mapping[str, Any]) -> dict[str, Any]:
    """Merge `changes` into a copy of `data`; dotted keys address nested maps."""
    merged = copy.deepcopy(data)
    for key, value in changes.items():
        parts = str(key).split(".")
        target = merged
        for part in parts[:-1]:
            nxt = target.get(part)
            if not isinstance(nxt, dict):
                nxt = {}
                target[part] = nxt
            target = nxt
        target[parts[-1]] = copy.deepcopy(value)
    return merged


def _field_value(data: Mapping[str, Any], field_path: str) -> tuple[bool, Any]:
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return False, None
        current = current[part]
    return True, current


def _matches(data: Mapping[str, Any], filters: Iterable[tuple[str, str, Any]]) -> bool:
    for field_path, op, expected in filters:
        present, actual = _field_value(data, field_path)
        if not present:
            return False
        try:
            if op == "==" and not actual == expected:
                return False
            if op == "!=" and not actual != expected:
                return False
            if op == "<" and not actual < expected:
                return False
            if op == "<=" and not actual <= expected:
                return False
            if op == ">" and not actual > expected:
                return False
            if op == ">=" and not actual >= expected:
                return False
            if op == "in" and actual not in expected:
                return False
        except TypeError:
            return False
    return True


def _order_value(value: Any) -> tuple[int, Any]:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    return (4, json.dumps(value, sort_keys=True, default=str))


def _sort_key(doc: Document, order_by: str | None) -> tuple[Any, ...]:
    if not order_by:
        return (doc.id,)
    _, value = _field_value(doc.data, order_by)
    return (_order_value(value), doc.id)


def _check_filters(filters: Iterable[tuple[str, str, Any]] | None) -> list[tuple[str, str, Any]]:
    checked: list[tuple[str, str, Any]] = []
    for item in filters or []:
        field_path, op, value = item
        if op not in FILTER_OPERATORS:
            raise ValueError(f"unsupported filter operator: {op}")
        checked.append((str(field_path), op, value))
    return checked


def _run_query(
    docs: Iterable[Document],
    *,
    filters: list[tuple[str, str, Any]],
    order_by: str | None,
    direction: str,
    start_after: Document | None,
    limit: int | None,
) -> list[Document]:
    descending = direction.lower() == "desc"
    rows = [doc for doc in docs if _matches(doc.data, filters)]
    rows.sort(key=lambda doc: _sort_key(doc, order_by), reverse=descending)
    if start_after is not None:
        cursor_key = _sort_key(start_after, order_by)
        if descending:
            rows = [doc for doc in rows if _sort_key(doc, order_by) < cursor_key]
        else:
            rows = [doc for doc in rows if _sort_key(doc, order_by) > cursor_key]
    if limit is not None:
        rows = rows[: max(0, int(limit))]
    return rows


class Transaction:
    """Buffered read-modify-write handle; writes land atomically on commit."""

    def __init__(self, reader: Callable[[str], dict[str, Any] | None]) -> None:
        self._reader = reader
        self._writes: dict[str, dict[str, Any] | None] = {}

    def get(self, path: str) -> Document | None:
        path = _validate_path(path)
        if path in self._writes:
            data = self._writes[path]
            return None if data is None else Document(path=path, data=copy.deepcopy(data))
        data = self._reader(path)
        return None if data is None else Document(path=path, data=data)

    def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> None:
        path = _validate_path(path)
        if merge:
            current = self.get(path)
            base = current.data if current is not None else {}
            self._writes[path] = _apply_update(base, data)
            return
        self._writes[path] = copy.deepcopy(dict(data))

    def update(self, path: str, changes: Mapping[str, Any]) -> None:
        current = self.get(path)
        if current is None:
            raise DocumentNotFoundError(path)
        self._writes[current.path] = _apply_update(current.data, changes)

    def delete(self, path: str) -> None:
        self._writes[_validate_path(path)] = None

    @property
    def writes(self) -> dict[str, dict[str, Any] | None]:
        return self._writes


class InMemoryDocumentStore:
    """Path-keyed document store kept in process memory."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._docs: dict[str, dict[str, Any]] = {}

    def _read(self, path: str) -> dict[str, Any] | None:
        data = self._docs.get(path)
        return None if data is None else copy.deepcopy(data)

    def get(self, path: str) -> Document | None:
        path = _validate_path(path)
        with self._lock:
            data = self._read(path)
        return None if data is None else Document(path=path, data=data)

    def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> Document:
        def _write(txn: Transaction) -> Document:
            txn.set(path, data, merge=merge)
            return txn.get(path)  # type: ignore[return-value]

        return self.run_transaction(_write)

    def update(self, path: str, changes: Mapping[str, Any]) -> Document:
        def _write(txn: Transaction) -> Document:
            txn.update(path, changes)
            return txn.get(path)  # type: ignore[return-value]

        return self.run_transaction(_write)

    def delete(self, path: str) -> bool:
        path = _validate_path(path)
        with self._lock:
            return self._docs.pop(path, None) is not None

    def batch_delete(self, paths: Iterable[str]) -> int:
        normalized = [_validate_path(path) for path in paths]
        with self._lock:
            deleted = 0
            for path in normalized:
                if self._docs.pop(path, None) is not None:
                    deleted += 1
            return deleted

    @staticmethod
    def new_document_path(collection: str) -> str:
        return f"{collection.strip('/')}/{uuid.uuid4().hex[:20]}"

    def query(
        self,
        collection: str,
        *,
        filters: Iterable[tuple[str, str, Any]] | None = None,
        order_by: str | None = None,
        direction: str = "asc",
        start_after: Document | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        checked = _check_filters(filters)
        collection = collection.strip("/")
        with self._lock:
            docs = [
                Document(path=path, data=copy.deepcopy(data))
                for path, data in self._docs.items()
                if _collection_of(path) == collection
            ]
        return _run_query(
            docs,
            filters=checked,
            order_by=order_by,
            direction=direction,
            start_after=start_after,
            limit=limit,
        )

    def collection_group(self, name: str, *, limit: int | None = None) -> list[Document]:
        with self._lock:
            docs = [
                Document(path=path, data=copy.deepcopy(data))
                for path, data in sorted(self._docs.items())
                if _collection_of(path).rsplit("/", 1)[-1] == name
            ]
        return docs if limit is None else docs[: max(0, int(limit))]

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            txn = Transaction(self._read)
            result = fn(txn)
            for path, data in txn.writes.items():
                if data is None:
                    self._docs.pop(path, None)
                else:
                    self._docs[path] = data
            return result

    def reset(self) -> None:
        with self._lock:
            self._docs.clear()


class SqliteDocumentStore:
    """SQLite-backed document store shared by processes on one host."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    written_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_documents_collection
                ON documents(collection, doc_id)
                """
            )
            conn.commit()

    @staticmethod
    def _dumps(data: Mapping[str, Any]) -> str:
        return json.dumps(data, ensure_ascii=True, sort_keys=True)

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> Document:
        return Document(path=str(row["path"]), data=json.loads(row["data"]))

    def get(self, path: str) -> Document | None:
        path = _validate_path(path)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT path, data FROM documents WHERE path = ?", (path,)).fetchone()
        return None if row is None else self._row_to_document(row)

    def set(self, path: str, data: Mapping[str, Any], *, merge: bool = False) -> Document:
        def _write(txn: Transaction) -> Document:
            txn.set(path, data, merge=merge)
            return txn.get(path)  # type: ignore[return-value]

        return self.run_transaction(_write)

    def update(self, path: str, changes: Mapping[str, Any]) -> Document:
        def _write(txn: Transaction) -> Document:
            txn.update(path, changes)
            return txn.get(path)  # type: ignore[return-value]

        return self.run_transaction(_write)

    def delete(self, path: str) -> bool:
        return self.batch_delete([path]) == 1

    def batch_delete(self, paths: Iterable[str]) -> int:
        normalized = [_validate_path(path) for path in paths]
        if not normalized:
            return 0
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                deleted = 0
                for path in normalized:
                    cursor = conn.execute("DELETE FROM documents WHERE path = ?", (path,))
                    deleted += int(cursor.rowcount or 0)
                conn.commit()
        return deleted

    @staticmethod
    def new_document_path(collection: str) -> str:
        return InMemoryDocumentStore.new_document_path(collection)

    def query(
        self,
        collection: str,
        *,
        filters: Iterable[tuple[str, str, Any]] | None = None,
        order_by: str | None = None,
        direction: str = "asc",
        start_after: Document | None = None,
        limit: int | None = None,
    ) -> list[Document]:
        checked = _check_filters(filters)
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT path, data FROM documents WHERE collection = ?",
                    (collection.strip("/"),),
                ).fetchall()
        return _run_query(
            (self._row_to_document(row) for row in rows),
            filters=checked,
            order_by=order_by,
            direction=direction,
            start_after=start_after,
            limit=limit,
        )

    def collection_group(self, name: str, *, limit: int | None = None) -> list[Document]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT path, collection, data FROM documents
                    WHERE collection = ? OR collection LIKE ?
                    ORDER BY path ASC
                    """,
                    (name, f"%/{name}"),
                ).fetchall()
        docs = [
            self._row_to_document(row)
            for row in rows
            if str(row["collection"]).rsplit("/", 1)[-1] == name
        ]
        return docs if limit is None else docs[: max(0, int(limit))]

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")

                def _read(path: str) -> dict[str, Any] | None:
                    row = conn.execute("SELECT data FROM documents WHERE path = ?", (path,)).fetchone()
                    return None if row is None else json.loads(row["data"])

                txn = Transaction(_read)
                result = fn(txn)
                now = utc_iso()
                for path, data in txn.writes.items():
                    if data is None:
                        conn.execute("DELETE FROM documents WHERE path = ?", (path,))
                        continue
                    conn.execute(
                        """
                        INSERT INTO documents(path, collection, doc_id, data, written_at)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(path) DO UPDATE SET data = excluded.data, written_at = excluded.written_at
                        """,
                        (path, _collection_of(path), path.rsplit("/", 1)[-1], self._dumps(data), now),
                    )
                conn.commit()
                return result
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM documents")
                conn.commit()


DocumentStore = InMemoryDocumentStore | SqliteDocumentStore


def create_document_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryDocumentStore | SqliteDocumentStore:
    env = os.environ if environ is None else environ
    backend = env.get("CONCIERGE_DOCSTORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "sqlite":
        db_path = env.get("CONCIERGE_DOCSTORE_SQLITE_PATH", ".runtime/concierge_docs.sqlite3")
        return SqliteDocumentStore(db_path)
    raise RuntimeError(f"unsupported document store backend: {backend}")
