"""
SQLite-backed vector store with per-document collections.

Each collection is a named, independently queryable set of entries. An entry is
an arbitrary JSON payload plus a numeric vector stored under a designated field
(``embedding`` by default). Queries are exact: a full scan of the collection with
a size-bounded heap keeps the top ``limit`` entries by cosine similarity.
"""
from __future__ import annotations

import heapq
import json
import math
import numbers
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from .config import VECTOR_DB_PATH, VECTOR_FIELD
from .db_migrations import SqliteMigration, apply_sqlite_migrations, utcnow_iso
from .errors import TransientIOError, ValidationError
from .observability import get_logger

logger = get_logger(__name__)

# Zero vectors have no direction; they rank below every real cosine score.
_UNDEFINED_RANK = -2.0


@dataclass(frozen=True)
class SimilarityResult:
    key: int
    entry: dict[str, Any]
    score: float


def _coerce_vector(value: Any, field: str) -> np.ndarray:
    """Validates a numeric sequence and returns it as a float64 array."""
    if value is None:
        raise ValidationError(f"Missing vector field '{field}'", field=field)
    if isinstance(value, np.ndarray):
        if value.ndim != 1 or value.dtype.kind not in "iuf":
            raise ValidationError(f"Field '{field}' must be a 1-D numeric array", field=field)
        items = value.tolist()
    elif isinstance(value, (list, tuple)):
        items = list(value)
    else:
        raise ValidationError(
            f"Field '{field}' must be a numeric sequence",
            field=field,
            details={"type": type(value).__name__},
        )
    if not items:
        raise ValidationError(f"Field '{field}' must not be empty", field=field)
    for item in items:
        if isinstance(item, bool) or not isinstance(item, numbers.Real):
            raise ValidationError(f"Field '{field}' must contain only numbers", field=field)
        if not math.isfinite(float(item)):
            raise ValidationError(f"Field '{field}' must contain only finite numbers", field=field)
    return np.asarray(items, dtype=np.float64)


def _rank(query: np.ndarray, query_norm: float, vector: np.ndarray) -> tuple[float, float]:
    """Returns (rank key, reported score) for one candidate."""
    norm = float(np.linalg.norm(vector))
    if query_norm == 0.0 or norm == 0.0:
        return _UNDEFINED_RANK, 0.0
    score = float(np.dot(query, vector)) / (query_norm * norm)
    return score, score


class VectorStore:
    """Owns the SQLite connection shared by all collections in one database file."""

    def __init__(self, db_path: str | Path | None = None):
        self.db_path = Path(db_path) if db_path else VECTOR_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = self._connect()
        self._collections: dict[str, VectorCollection] = {}
        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error:
            pass
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise TransientIOError("vector store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise TransientIOError(
                    "vector store operation failed",
                    {"db_path": str(self.db_path), "error": str(exc)},
                ) from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error:
                pass
            self._conn.close()
            self._conn = None

    def __del__(self):
        try:
            self.close()
        except Exception:
            pass

    def _ensure_schema(self):
        migrations = [
            SqliteMigration(
                version=1,
                name="create_vector_tables",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS vector_collections (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        name TEXT NOT NULL UNIQUE,
                        vector_field TEXT NOT NULL,
                        dimensions INTEGER,
                        created_at TEXT NOT NULL
                    )
                    """,
                    """
                    CREATE TABLE IF NOT EXISTS vector_entries (
                        key INTEGER PRIMARY KEY AUTOINCREMENT,
                        collection_id INTEGER NOT NULL,
                        payload_json TEXT NOT NULL,
                        vector BLOB NOT NULL,
                        dimensions INTEGER NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY(collection_id) REFERENCES vector_collections(id) ON DELETE CASCADE
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_vector_entries_collection ON vector_entries(collection_id, dimensions, key)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(conn, component="vector_store", migrations=migrations)

    def collection(
        self,
        name: str,
        *,
        vector_field: str = VECTOR_FIELD,
        dimensions: int | None = None,
    ) -> "VectorCollection":
        """Returns a handle for `name`. The collection row is created on first use."""
        clean = str(name or "").strip()
        if not clean:
            raise ValidationError("Collection name must not be empty", field="name")
        with self._lock:
            handle = self._collections.get(clean)
            if handle is None:
                handle = VectorCollection(self, clean, vector_field=vector_field, dimensions=dimensions)
                self._collections[clean] = handle
            return handle

    def collection_names(self) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute("SELECT name FROM vector_collections ORDER BY id").fetchall()
        return [row["name"] for row in rows]


class VectorCollection:
    """A named set of (payload, vector) entries inside a `VectorStore`."""

    def __init__(self, store: VectorStore, name: str, *, vector_field: str, dimensions: int | None):
        self.store = store
        self.name = name
        self.vector_field = vector_field
        self.dimensions = int(dimensions) if dimensions else None
        self._collection_id: int | None = None

    def _ensure(self, conn: sqlite3.Connection) -> int:
        if self._collection_id is not None:
            return self._collection_id
        conn.execute(
            """
            INSERT OR IGNORE INTO vector_collections (name, vector_field, dimensions, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (self.name, self.vector_field, self.dimensions, utcnow_iso()),
        )
        row = conn.execute(
            "SELECT id FROM vector_collections WHERE name = ?",
            (self.name,),
        ).fetchone()
        self._collection_id = int(row["id"])
        logger.info("vector_collection_ready", collection=self.name, collection_id=self._collection_id)
        return self._collection_id

    def _split_entry(self, entry: Any) -> tuple[str, np.ndarray]:
        if not isinstance(entry, dict):
            raise ValidationError("Entry must be a mapping", details={"type": type(entry).__name__})
        if self.vector_field not in entry:
            raise ValidationError(f"Missing vector field '{self.vector_field}'", field=self.vector_field)
        vector = _coerce_vector(entry[self.vector_field], self.vector_field)
        if self.dimensions is not None and len(vector) != self.dimensions:
            raise ValidationError(
                f"Vector length {len(vector)} does not match collection dimensions {self.dimensions}",
                field=self.vector_field,
            )
        payload = {k: v for k, v in entry.items() if k != self.vector_field}
        try:
            payload_json = json.dumps(payload, ensure_ascii=True)
        except (TypeError, ValueError) as exc:
            raise ValidationError("Entry payload is not JSON serializable", details={"error": str(exc)}) from exc
        return payload_json, vector

    def _row_to_entry(self, payload_json: str, blob: bytes) -> dict[str, Any]:
        entry = json.loads(payload_json)
        entry[self.vector_field] = np.frombuffer(blob, dtype=np.float64).tolist()
        return entry

    def insert(self, entry: dict[str, Any]) -> int:
        """Stores an entry and returns its store-assigned key."""
        payload_json, vector = self._split_entry(entry)
        with self.store._connection() as conn:
            collection_id = self._ensure(conn)
            cursor = conn.execute(
                """
                INSERT INTO vector_entries (collection_id, payload_json, vector, dimensions, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (collection_id, payload_json, vector.tobytes(), len(vector), utcnow_iso()),
            )
            return int(cursor.lastrowid)

    def update(self, key: int, entry: dict[str, Any]) -> None:
        if key is None:
            raise ValidationError("Key is required for update", field="key")
        payload_json, vector = self._split_entry(entry)
        with self.store._connection() as conn:
            collection_id = self._ensure(conn)
            cursor = conn.execute(
                """
                UPDATE vector_entries
                SET payload_json = ?, vector = ?, dimensions = ?
                WHERE key = ? AND collection_id = ?
                """,
                (payload_json, vector.tobytes(), len(vector), int(key), collection_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(key)

    def delete(self, key: int) -> None:
        if key is None:
            raise ValidationError("Key is required for delete", field="key")
        with self.store._connection() as conn:
            collection_id = self._ensure(conn)
            cursor = conn.execute(
                "DELETE FROM vector_entries WHERE key = ? AND collection_id = ?",
                (int(key), collection_id),
            )
            if cursor.rowcount == 0:
                raise KeyError(key)

    def get(self, key: int) -> dict[str, Any] | None:
        with self.store._connection() as conn:
            collection_id = self._ensure(conn)
            row = conn.execute(
                "SELECT payload_json, vector FROM vector_entries WHERE key = ? AND collection_id = ?",
                (int(key), collection_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_entry(row["payload_json"], row["vector"])

    def count(self) -> int:
        with self.store._connection() as conn:
            collection_id = self._ensure(conn)
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM vector_entries WHERE collection_id = ?",
                (collection_id,),
            ).fetchone()
        return int(row["total"])

    def query(self, vector: Any, limit: int = 10) -> list[SimilarityResult]:
        """Returns the `limit` entries most similar to `vector`, best first."""
        query_vec = _coerce_vector(vector, "query")
        if int(limit) <= 0:
            return []
        query_norm = float(np.linalg.norm(query_vec))
        heap: list[tuple[float, int, int, str, bytes, float]] = []

        # The scan runs under the store lock, so it sees the rows present when it started.
        with self.store._connection() as conn:
            collection_id = self._ensure(conn)
            cursor = conn.execute(
                """
                SELECT key, payload_json, vector FROM vector_entries
                WHERE collection_id = ? AND dimensions = ?
                ORDER BY key
                """,
                (collection_id, len(query_vec)),
            )
            for order, row in enumerate(cursor):
                candidate = np.frombuffer(row["vector"], dtype=np.float64)
                rank, score = _rank(query_vec, query_norm, candidate)
                # Earlier rows win ties: a larger -order compares greater.
                item = (rank, -order, int(row["key"]), row["payload_json"], row["vector"], score)
                if len(heap) < limit:
                    heapq.heappush(heap, item)
                elif item[:2] > heap[0][:2]:
                    heapq.heapreplace(heap, item)

        ordered = sorted(heap, key=lambda item: (item[0], item[1]), reverse=True)
        return [
            SimilarityResult(key=key, entry=self._row_to_entry(payload_json, blob), score=score)
            for _, _, key, payload_json, blob, score in ordered
        ]
