from __future__ import annotations

import json
import sqlite3
from typing import Any, Callable, Dict, List

from .errors import DocumentExists, DocumentNotFound, StoreError
from .sqlite_backend import SQLiteBackend
from .store import BaseDocumentStore, Document, _now_ms


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(id=row["doc_id"], data=json.loads(row["data_json"]), seq=row["seq"], version=row["version"])


class SQLiteDocumentStore(BaseDocumentStore):
    """Durable document store backed by SQLite."""

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(now_func=now_func)
        self._backend = backend

    def _scan(self, collection: str) -> List[Document]:
        try:
            with self._backend.lock:
                rows = self._backend.connection.execute(
                    "SELECT seq, doc_id, version, data_json FROM documents WHERE collection=? ORDER BY seq ASC",
                    (collection,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreError(f"scan of {collection} failed: {exc}") from exc
        return [_row_to_document(row) for row in rows]

    def _load(self, collection: str, doc_id: str) -> Document | None:
        try:
            with self._backend.lock:
                row = self._backend.connection.execute(
                    "SELECT seq, doc_id, version, data_json FROM documents WHERE collection=? AND doc_id=?",
                    (collection, doc_id),
                ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(f"read of {collection}/{doc_id} failed: {exc}") from exc
        if row is None:
            return None
        return _row_to_document(row)

    def _insert(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Document:
        payload = json.dumps(data, separators=(",", ":"), sort_keys=True)
        with self._backend.lock:
            conn = self._backend.connection
            try:
                cursor = conn.execute(
                    "INSERT INTO documents (collection, doc_id, version, data_json) VALUES (?, ?, 1, ?)",
                    (collection, doc_id, payload),
                )
            except sqlite3.IntegrityError as exc:
                raise DocumentExists(f"{collection}/{doc_id} already exists") from exc
            except sqlite3.Error as exc:
                raise StoreError(f"insert into {collection} failed: {exc}") from exc
        return Document(id=doc_id, data=data, seq=int(cursor.lastrowid), version=1)

    def _modify(
        self, collection: str, doc_id: str, mutate: Callable[[Dict[str, Any]], Dict[str, Any]]
    ) -> Document:
        with self._backend.lock:
            conn = self._backend.connection
            cursor = conn.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    "SELECT seq, doc_id, version, data_json FROM documents WHERE collection=? AND doc_id=?",
                    (collection, doc_id),
                ).fetchone()
                if row is None:
                    raise DocumentNotFound(f"{collection}/{doc_id} not found")
                current = _row_to_document(row)
                data = mutate(current.data)
                cursor.execute(
                    "UPDATE documents SET data_json=?, version=? WHERE seq=?",
                    (json.dumps(data, separators=(",", ":"), sort_keys=True), current.version + 1, current.seq),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(f"update of {collection}/{doc_id} failed: {exc}") from exc
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()
        return Document(id=doc_id, data=data, seq=current.seq, version=current.version + 1)
