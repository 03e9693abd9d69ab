# /manualqa/document_manager.py
"""
SQLite-backed store for manual documents and their chunks.

Chunks are content-addressed per document: (document_id, content_hash) is a
unique key and inserts use ON CONFLICT DO NOTHING, so concurrent or repeated
ingestion of the same text is a no-op rather than a duplicate. Embeddings are
stored as float32 blobs; similarity search runs over a lazily rebuilt,
L2-normalized matrix that is invalidated on every write.
"""
import json
import sqlite3
import threading
import uuid
from collections.abc import Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import numpy as np

# Local Imports
from .config import EMBEDDING_DIMENSIONS, KNOWLEDGE_DB_PATH
from .db_migrations import SqliteMigration, apply_sqlite_migrations, connect_sqlite, utcnow_iso
from .errors import PersistenceError
from .models import Chunk, DocumentRecord
from .observability import get_logger

logger = get_logger(__name__)

_CHUNK_COLUMNS = """
    c.id, c.document_id, c.seq, c.text, c.page_number, c.volume, c.chapter,
    c.section_label, c.warning_flags, c.token_count, c.content_hash,
    d.title AS document_title
"""


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class DocumentStore:
    """Documents, chunks and vector/keyword search over a single SQLite file."""

    def __init__(self, db_path: Path | None = None, *, embedding_dimensions: int = EMBEDDING_DIMENSIONS):
        self.db_path = Path(db_path) if db_path else KNOWLEDGE_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.embedding_dimensions = int(embedding_dimensions)
        self._lock = threading.RLock()
        self._vector_cache: tuple[list[str], np.ndarray] | None = None
        self._conn: sqlite3.Connection | None = connect_sqlite(self.db_path)
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        with self._lock:
            if self._conn is None:
                raise PersistenceError("document store connection is closed")
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceError(f"document store error: {exc}") from exc
            except Exception:
                self._conn.rollback()
                raise

    def close(self):
        with self._lock:
            if self._conn is None:
                return
            try:
                self._conn.commit()
            except sqlite3.Error as exc:
                logger.warning("sqlite_commit_on_close_failed", path=str(self.db_path), error=str(exc))
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
                name="create_documents_and_chunks",
                statements=(
                    """
                    CREATE TABLE IF NOT EXISTS documents (
                        id TEXT PRIMARY KEY,
                        title TEXT NOT NULL,
                        version TEXT,
                        description TEXT,
                        source_ref TEXT,
                        total_pages INTEGER,
                        is_published INTEGER NOT NULL DEFAULT 0,
                        published_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_documents_title ON documents(title)",
                    """
                    CREATE TABLE IF NOT EXISTS chunks (
                        id TEXT PRIMARY KEY,
                        document_id TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
                        seq INTEGER NOT NULL,
                        text TEXT NOT NULL,
                        page_number INTEGER NOT NULL,
                        volume TEXT,
                        chapter TEXT,
                        section_label TEXT,
                        warning_flags TEXT NOT NULL DEFAULT '[]',
                        token_count INTEGER NOT NULL DEFAULT 0,
                        content_hash TEXT NOT NULL,
                        embedding BLOB,
                        created_at TEXT NOT NULL,
                        UNIQUE(document_id, content_hash)
                    )
                    """,
                    "CREATE INDEX IF NOT EXISTS idx_chunks_document_seq ON chunks(document_id, seq)",
                    "CREATE INDEX IF NOT EXISTS idx_chunks_volume ON chunks(volume)",
                ),
            ),
        ]
        with self._connection() as conn:
            apply_sqlite_migrations(
                conn,
                component="document_store",
                migrations=migrations,
            )

    # --- Documents ---

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
        return DocumentRecord(
            id=str(row["id"]),
            title=str(row["title"]),
            version=row["version"],
            description=row["description"],
            source_ref=row["source_ref"],
            total_pages=row["total_pages"],
            is_published=bool(int(row["is_published"] or 0)),
            published_at=row["published_at"],
            created_at=row["created_at"],
        )

    def list_documents(self) -> list[DocumentRecord]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM documents ORDER BY created_at ASC, id ASC").fetchall()
        return [self._row_to_document(row) for row in rows]

    def get_or_create_document(
        self,
        title: str,
        *,
        version: str | None = None,
        description: str | None = None,
        source_ref: str | None = None,
        total_pages: int | None = None,
        publish: bool = True,
    ) -> tuple[DocumentRecord, bool]:
        """
        Looks a document up by title, creating it when absent.
        Title acts as the natural key; an existing record only gets its
        source reference and page count refreshed.
        """
        now = utcnow_iso()
        with self._connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE title = ? ORDER BY created_at ASC LIMIT 1",
                (str(title),),
            ).fetchone()
            if row is not None:
                conn.execute(
                    """
                    UPDATE documents
                    SET source_ref = COALESCE(?, source_ref),
                        total_pages = COALESCE(?, total_pages),
                        updated_at = ?
                    WHERE id = ?
                    """,
                    (source_ref, total_pages, now, row["id"]),
                )
                row = conn.execute("SELECT * FROM documents WHERE id = ?", (row["id"],)).fetchone()
                return self._row_to_document(row), False

            document_id = str(uuid.uuid4())
            conn.execute(
                """
                INSERT INTO documents (
                    id, title, version, description, source_ref, total_pages,
                    is_published, published_at, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    str(title),
                    version,
                    description,
                    source_ref,
                    total_pages,
                    1 if publish else 0,
                    now if publish else None,
                    now,
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        logger.info("document_created", document_id=document_id, title=str(title))
        return self._row_to_document(row), True

    # --- Chunks ---

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> Chunk:
        try:
            flags = tuple(json.loads(row["warning_flags"] or "[]"))
        except (TypeError, ValueError):
            flags = ()
        return Chunk(
            id=str(row["id"]),
            document_id=str(row["document_id"]),
            document_title=row["document_title"],
            seq=int(row["seq"]),
            text=str(row["text"]),
            page_number=int(row["page_number"]),
            volume=row["volume"],
            chapter=row["chapter"],
            section_label=row["section_label"],
            warning_flags=flags,
            token_count=int(row["token_count"] or 0),
            content_hash=str(row["content_hash"]),
        )

    def _encode_embedding(self, vector: Sequence[float] | None) -> bytes | None:
        if vector is None:
            return None
        arr = np.asarray(vector, dtype=np.float32)
        if arr.ndim != 1 or arr.shape[0] != self.embedding_dimensions:
            raise PersistenceError(
                f"embedding dimension mismatch: got {arr.shape}, expected {self.embedding_dimensions}"
            )
        return arr.tobytes()

    def count_chunks(self, document_id: str | None = None) -> int:
        with self._connection() as conn:
            if document_id is None:
                row = conn.execute("SELECT COUNT(*) AS cnt FROM chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM chunks WHERE document_id = ?",
                    (str(document_id),),
                ).fetchone()
        return int(row["cnt"]) if row else 0

    def delete_chunks(self, document_id: str) -> int:
        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM chunks WHERE document_id = ?", (str(document_id),))
            deleted = int(cursor.rowcount or 0)
        self._vector_cache = None
        logger.info("chunks_cleared", document_id=str(document_id), deleted=deleted)
        return deleted

    def existing_hashes(self, document_id: str, hashes: Sequence[str]) -> set[str]:
        wanted = [str(h) for h in hashes if h]
        if not wanted:
            return set()
        placeholders = ",".join("?" for _ in wanted)
        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT content_hash FROM chunks WHERE document_id = ? AND content_hash IN ({placeholders})",
                [str(document_id), *wanted],
            ).fetchall()
        return {str(row["content_hash"]) for row in rows}

    def insert_chunks(
        self,
        document_id: str,
        chunks: Sequence[Chunk],
        embeddings: Sequence[Sequence[float] | None] | None = None,
    ) -> int:
        """
        Inserts chunks as one batch; rows whose content hash already exists for
        the document are skipped by the unique constraint. Returns rows inserted.
        """
        if not chunks:
            return 0
        if embeddings is not None and len(embeddings) != len(chunks):
            raise PersistenceError("embeddings and chunks differ in length")

        now = utcnow_iso()
        rows = []
        for idx, chunk in enumerate(chunks):
            vector = embeddings[idx] if embeddings is not None else None
            rows.append(
                (
                    str(uuid.uuid4()),
                    str(document_id),
                    int(chunk.seq),
                    chunk.text,
                    int(chunk.page_number),
                    chunk.volume,
                    chunk.chapter,
                    chunk.section_label,
                    json.dumps(list(chunk.warning_flags)),
                    int(chunk.token_count),
                    chunk.content_hash,
                    self._encode_embedding(vector),
                    now,
                )
            )

        with self._connection() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT INTO chunks (
                    id, document_id, seq, text, page_number, volume, chapter, section_label,
                    warning_flags, token_count, content_hash, embedding, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(document_id, content_hash) DO NOTHING
                """,
                rows,
            )
            inserted = conn.total_changes - before
        self._vector_cache = None
        return int(inserted)

    def get_chunks(self, document_id: str) -> list[Chunk]:
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE c.document_id = ?
                ORDER BY c.seq ASC
                """,
                (str(document_id),),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def get_chunks_batch(self, chunk_ids: Sequence[str]) -> dict[str, Chunk]:
        ids = [str(i) for i in dict.fromkeys(chunk_ids) if i]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE c.id IN ({placeholders})
                """,
                ids,
            ).fetchall()
        return {str(row["id"]): self._row_to_chunk(row) for row in rows}

    def list_volumes(self) -> list[str]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT DISTINCT volume FROM chunks WHERE volume IS NOT NULL AND volume != '' ORDER BY volume"
            ).fetchall()
        return [str(row["volume"]) for row in rows]

    # --- Search ---

    @staticmethod
    def _filter_clause(volume: str | None, safety_flag: str | None) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if volume:
            clauses.append("c.volume = ?")
            params.append(volume)
        if safety_flag:
            clauses.append("c.warning_flags LIKE ?")
            params.append(f'%"{str(safety_flag).upper()}"%')
        return " AND ".join(clauses), params

    def _load_vector_cache(self) -> tuple[list[str], np.ndarray]:
        with self._lock:
            if self._vector_cache is not None:
                return self._vector_cache
            with self._connection() as conn:
                rows = conn.execute("SELECT id, embedding FROM chunks WHERE embedding IS NOT NULL").fetchall()
            ids: list[str] = []
            vectors: list[np.ndarray] = []
            for row in rows:
                vec = np.frombuffer(row["embedding"], dtype=np.float32)
                if vec.shape[0] != self.embedding_dimensions:
                    continue
                ids.append(str(row["id"]))
                vectors.append(vec)
            if vectors:
                matrix = np.vstack(vectors)
                norms = np.linalg.norm(matrix, axis=1, keepdims=True)
                norms[norms == 0] = 1.0
                matrix = matrix / norms
            else:
                matrix = np.zeros((0, self.embedding_dimensions), dtype=np.float32)
            self._vector_cache = (ids, matrix)
            return self._vector_cache

    def similarity_search(
        self,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
        *,
        volume: str | None = None,
        safety_flag: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Cosine-similarity search. Returns (chunk, similarity) pairs, best first."""
        query = np.asarray(query_vector, dtype=np.float32)
        if query.ndim != 1 or query.shape[0] != self.embedding_dimensions:
            raise PersistenceError(
                f"query vector dimension mismatch: got {query.shape}, expected {self.embedding_dimensions}"
            )
        ids, matrix = self._load_vector_cache()
        if not ids:
            return []
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return []
        sims = matrix @ (query / norm)

        allowed: set[str] | None = None
        where, params = self._filter_clause(volume, safety_flag)
        if where:
            with self._connection() as conn:
                rows = conn.execute(f"SELECT c.id FROM chunks c WHERE {where}", params).fetchall()
            allowed = {str(row["id"]) for row in rows}

        ranked: list[tuple[str, float]] = []
        for idx in np.argsort(-sims):
            score = float(sims[idx])
            if score < float(threshold):
                break
            chunk_id = ids[int(idx)]
            if allowed is not None and chunk_id not in allowed:
                continue
            ranked.append((chunk_id, score))
            if len(ranked) >= int(limit):
                break

        chunks_by_id = self.get_chunks_batch([chunk_id for chunk_id, _ in ranked])
        return [(chunks_by_id[chunk_id], score) for chunk_id, score in ranked if chunk_id in chunks_by_id]

    def keyword_search(self, keywords: Sequence[str], limit: int) -> list[Chunk]:
        """Chunks whose text contains ANY of the keywords (case-insensitive substring)."""
        terms = [str(k) for k in keywords if str(k or "").strip()]
        if not terms:
            return []
        where = " OR ".join("c.text LIKE ? ESCAPE '\\'" for _ in terms)
        params: list[Any] = [f"%{_escape_like(term)}%" for term in terms]
        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE {where}
                ORDER BY c.document_id, c.seq
                LIMIT ?
                """,
                [*params, int(limit)],
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def fulltext_search(
        self,
        terms: Sequence[str],
        *,
        volume: str | None = None,
        safety_flag: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Chunk], int]:
        """Chunks containing ALL of the terms, with optional filters. Returns (page, total)."""
        clean_terms = [str(t) for t in terms if str(t or "").strip()]
        if not clean_terms:
            return [], 0
        clauses = ["c.text LIKE ? ESCAPE '\\'" for _ in clean_terms]
        params: list[Any] = [f"%{_escape_like(term)}%" for term in clean_terms]
        filter_where, filter_params = self._filter_clause(volume, safety_flag)
        if filter_where:
            clauses.append(filter_where)
            params.extend(filter_params)
        where = " AND ".join(clauses)
        with self._connection() as conn:
            total_row = conn.execute(f"SELECT COUNT(*) AS cnt FROM chunks c WHERE {where}", params).fetchone()
            rows = conn.execute(
                f"""
                SELECT {_CHUNK_COLUMNS}
                FROM chunks c JOIN documents d ON d.id = c.document_id
                WHERE {where}
                ORDER BY c.document_id, c.seq
                LIMIT ? OFFSET ?
                """,
                [*params, int(limit), max(0, int(offset))],
            ).fetchall()
        total = int(total_row["cnt"]) if total_row else 0
        return [self._row_to_chunk(row) for row in rows], total
