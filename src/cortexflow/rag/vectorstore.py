"""SQLite-backed document, chunk and configuration store.

Embeddings are stored as JSON arrays next to their chunks and searched by
brute-force cosine similarity. Keyword search uses an FTS5 shadow table when
the SQLite build provides it and falls back to substring matching otherwise.
"""

import asyncio
import json
import logging
import math
import sqlite3
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .base import BaseRAGStore
from .config import RAGConfig
from .document import Chunk, Document, RAGStats, SearchResult, SourceType
from .exceptions import StoreInitializationError

logger = logging.getLogger(__name__)

CONFIG_KEY = "main"
FALLBACK_KEYWORD_SCORE = 0.5
# Floor for FTS hits; a term found in every chunk has bm25 near 0
MIN_FTS_MATCH_SCORE = 0.1
UPDATABLE_DOCUMENT_FIELDS = frozenset({
    "project_id", "source_type", "source_id", "title", "content", "metadata", "chunk_count",
})

SCHEMA = """
CREATE TABLE IF NOT EXISTS rag_documents (
    id TEXT PRIMARY KEY,
    project_id TEXT,
    source_type TEXT NOT NULL,
    source_id TEXT,
    title TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    chunk_count INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rag_chunks (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    document_id TEXT NOT NULL REFERENCES rag_documents(id) ON DELETE CASCADE,
    content TEXT NOT NULL,
    embedding TEXT,
    chunk_index INTEGER NOT NULL,
    start_offset INTEGER NOT NULL,
    end_offset INTEGER NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS rag_config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_rag_documents_project ON rag_documents(project_id);
CREATE INDEX IF NOT EXISTS idx_rag_documents_source ON rag_documents(source_type, source_id);
CREATE INDEX IF NOT EXISTS idx_rag_chunks_document ON rag_chunks(document_id, chunk_index);
"""

# External-content FTS5 table keyed on rag_chunks.seq, kept in sync by triggers
FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS rag_chunks_fts USING fts5(
    content,
    content='rag_chunks',
    content_rowid='seq'
);

CREATE TRIGGER IF NOT EXISTS rag_chunks_fts_insert AFTER INSERT ON rag_chunks BEGIN
    INSERT INTO rag_chunks_fts(rowid, content) VALUES (new.seq, new.content);
END;

CREATE TRIGGER IF NOT EXISTS rag_chunks_fts_delete AFTER DELETE ON rag_chunks BEGIN
    INSERT INTO rag_chunks_fts(rag_chunks_fts, rowid, content) VALUES ('delete', old.seq, old.content);
END;

CREATE TRIGGER IF NOT EXISTS rag_chunks_fts_update AFTER UPDATE OF content ON rag_chunks BEGIN
    INSERT INTO rag_chunks_fts(rag_chunks_fts, rowid, content) VALUES ('delete', old.seq, old.content);
    INSERT INTO rag_chunks_fts(rowid, content) VALUES (new.seq, new.content);
END;
"""


class FTSCapability(str, Enum):
    """Keyword search mode, detected once when the store is initialized."""

    AVAILABLE = "available"
    FALLBACK = "fallback"


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 for empty, mismatched or zero-norm vectors."""
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        project_id=row["project_id"],
        source_type=SourceType(row["source_type"]),
        source_id=row["source_id"],
        title=row["title"],
        content=row["content"],
        metadata=json.loads(row["metadata"] or "{}"),
        chunk_count=row["chunk_count"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        document_id=row["document_id"],
        content=row["content"],
        embedding=json.loads(row["embedding"]) if row["embedding"] else None,
        chunk_index=row["chunk_index"],
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def _fts_query(query: str) -> Optional[str]:
    """OR of quoted whitespace tokens, so FTS syntax in the query is inert."""
    tokens = query.split()
    if not tokens:
        return None
    return " OR ".join('"' + token.replace('"', '""') + '"' for token in tokens)


def _like_pattern(query: str) -> str:
    escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class SQLiteRAGStore(BaseRAGStore):
    """SQLite storage for documents, chunks and the RAG configuration.

    Every operation opens its own connection and runs in the default
    executor, so the store can be shared by concurrent tasks. Writes use
    WAL journaling; concurrent writers resolve as last write wins.
    """

    def __init__(
        self,
        db_path: Union[str, Path] = "rag.sqlite",
        *,
        enable_fts: bool = True,
        default_config: Optional[RAGConfig] = None,
    ):
        """Initialize the store.

        Args:
            db_path: Path to the SQLite database file
            enable_fts: Create the FTS5 index when the SQLite build supports it
            default_config: Config returned before any update is persisted
        """
        self.db_path = Path(db_path)
        self.enable_fts = enable_fts
        self.default_config = default_config or RAGConfig()
        self._fts_capability = FTSCapability.FALLBACK
        self._initialized = False

    @property
    def fts_capability(self) -> FTSCapability:
        return self._fts_capability

    @property
    def fts_available(self) -> bool:
        return self._fts_capability is FTSCapability.AVAILABLE

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection.

        Raises:
            StoreInitializationError: initialize() has not run, or close() has
        """
        if not self._initialized:
            raise StoreInitializationError(f"store at {self.db_path} is not initialized; call initialize() first")
        return self._connect()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _run(self, func, *args):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, func, *args)

    async def initialize(self) -> None:
        """Create the schema and detect full-text search support.

        Raises:
            StoreInitializationError: The database cannot be opened or migrated
        """
        await self._run(self._initialize_sync)

    def _initialize_sync(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
        except (OSError, sqlite3.Error) as e:
            raise StoreInitializationError(f"cannot open {self.db_path}: {e}") from e

        try:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)
            conn.commit()
            self._fts_capability = self._detect_fts(conn)
        except sqlite3.Error as e:
            raise StoreInitializationError(f"cannot apply schema to {self.db_path}: {e}") from e
        finally:
            conn.close()

        self._initialized = True
        logger.info(f"RAG store ready at {self.db_path} (keyword search: {self._fts_capability.value})")

    def _detect_fts(self, conn: sqlite3.Connection) -> FTSCapability:
        if not self.enable_fts:
            return FTSCapability.FALLBACK
        try:
            conn.executescript(FTS_SCHEMA)
            conn.execute("SELECT rowid FROM rag_chunks_fts LIMIT 1").fetchall()
            conn.commit()
        except sqlite3.OperationalError as e:
            logger.info(f"FTS5 unavailable, using substring keyword search: {e}")
            return FTSCapability.FALLBACK
        return FTSCapability.AVAILABLE

    # Documents

    async def save_document(self, document: Document) -> None:
        """Insert or update a document."""
        await self._run(self._save_document_sync, document)

    def _save_document_sync(self, document: Document) -> None:
        conn = self._get_connection()
        try:
            with conn:
                self._insert_document(conn, document)
        finally:
            conn.close()

    async def save_document_with_chunks(self, document: Document, chunks: list[Chunk]) -> None:
        """Insert a document and its chunks in one transaction.

        Either both are stored or neither is, so ``chunk_count`` always
        matches the stored chunks.

        Raises:
            ValueError: ``document.chunk_count`` differs from ``len(chunks)``
        """
        if document.chunk_count != len(chunks):
            raise ValueError(
                f"chunk_count is {document.chunk_count} but {len(chunks)} chunks were given"
            )
        await self._run(self._save_document_with_chunks_sync, document, chunks)

    def _save_document_with_chunks_sync(self, document: Document, chunks: list[Chunk]) -> None:
        conn = self._get_connection()
        try:
            with conn:
                self._insert_document(conn, document)
                self._insert_chunks(conn, chunks)
        finally:
            conn.close()

    def _insert_document(self, conn: sqlite3.Connection, document: Document) -> None:
        conn.execute(
            """
            INSERT INTO rag_documents
            (id, project_id, source_type, source_id, title, content, metadata,
             chunk_count, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                project_id = excluded.project_id,
                source_type = excluded.source_type,
                source_id = excluded.source_id,
                title = excluded.title,
                content = excluded.content,
                metadata = excluded.metadata,
                chunk_count = excluded.chunk_count,
                updated_at = excluded.updated_at
            """,
            (
                document.id,
                document.project_id,
                document.source_type.value,
                document.source_id,
                document.title,
                document.content,
                json.dumps(document.metadata),
                document.chunk_count,
                document.created_at.isoformat(),
                document.updated_at.isoformat(),
            ),
        )

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self._run(self._get_document_sync, document_id)

    def _get_document_sync(self, document_id: str) -> Optional[Document]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM rag_documents WHERE id = ?", (document_id,)).fetchone()
            return _row_to_document(row) if row else None
        finally:
            conn.close()

    async def list_documents(
        self,
        project_id: Optional[str] = None,
        source_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[Document]:
        """List documents, most recently updated first."""
        return await self._run(self._list_documents_sync, project_id, source_type, limit)

    def _list_documents_sync(
        self, project_id: Optional[str], source_type: Optional[str], limit: int
    ) -> list[Document]:
        clauses, params = [], []
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        if source_type is not None:
            clauses.append("source_type = ?")
            params.append(SourceType(source_type).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM rag_documents {where} ORDER BY updated_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
            return [_row_to_document(row) for row in rows]
        finally:
            conn.close()

    async def update_document(self, document_id: str, **updates: Any) -> bool:
        """Update document fields; returns False when the document does not exist."""
        unknown = set(updates) - UPDATABLE_DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown document fields: {sorted(unknown)}")
        return await self._run(self._update_document_sync, document_id, updates)

    def _update_document_sync(self, document_id: str, updates: dict[str, Any]) -> bool:
        values = dict(updates)
        if "metadata" in values:
            values["metadata"] = json.dumps(values["metadata"])
        if "source_type" in values:
            values["source_type"] = SourceType(values["source_type"]).value
        values["updated_at"] = _now()

        assignments = ", ".join(f"{field} = ?" for field in values)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"UPDATE rag_documents SET {assignments} WHERE id = ?",
                (*values.values(), document_id),
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document and, by cascade, its chunks."""
        return await self._run(self._delete_document_sync, document_id)

    def _delete_document_sync(self, document_id: str) -> bool:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM rag_documents WHERE id = ?", (document_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    async def delete_project_documents(self, project_id: str) -> int:
        """Delete every document of a project.

        Returns:
            Number of documents deleted
        """
        return await self._run(self._delete_project_documents_sync, project_id)

    def _delete_project_documents_sync(self, project_id: str) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM rag_documents WHERE project_id = ?", (project_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # Chunks

    async def save_chunks(self, chunks: list[Chunk]) -> None:
        """Insert chunks in a single transaction."""
        if chunks:
            await self._run(self._save_chunks_sync, chunks)

    def _save_chunks_sync(self, chunks: list[Chunk]) -> None:
        conn = self._get_connection()
        try:
            with conn:
                self._insert_chunks(conn, chunks)
        finally:
            conn.close()

    def _insert_chunks(self, conn: sqlite3.Connection, chunks: list[Chunk]) -> None:
        conn.executemany(
            """
            INSERT INTO rag_chunks
            (id, document_id, content, embedding, chunk_index, start_offset,
             end_offset, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    chunk.id,
                    chunk.document_id,
                    chunk.content,
                    json.dumps(chunk.embedding) if chunk.embedding is not None else None,
                    chunk.chunk_index,
                    chunk.start_offset,
                    chunk.end_offset,
                    json.dumps(chunk.metadata),
                    chunk.created_at.isoformat(),
                )
                for chunk in chunks
            ],
        )

    async def get_chunks(self, document_id: str) -> list[Chunk]:
        """Chunks of a document ordered by chunk_index."""
        return await self._run(self._get_chunks_sync, document_id)

    def _get_chunks_sync(self, document_id: str) -> list[Chunk]:
        conn = self._get_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM rag_chunks WHERE document_id = ? ORDER BY chunk_index",
                (document_id,),
            ).fetchall()
            return [_row_to_chunk(row) for row in rows]
        finally:
            conn.close()

    async def get_chunk_by_id(self, chunk_id: str) -> Optional[Chunk]:
        return await self._run(self._get_chunk_by_id_sync, chunk_id)

    def _get_chunk_by_id_sync(self, chunk_id: str) -> Optional[Chunk]:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT * FROM rag_chunks WHERE id = ?", (chunk_id,)).fetchone()
            return _row_to_chunk(row) if row else None
        finally:
            conn.close()

    async def update_chunk_embedding(self, chunk_id: str, embedding: list[float]) -> None:
        await self.update_chunk_embeddings({chunk_id: embedding})

    async def update_chunk_embeddings(self, embeddings: dict[str, list[float]]) -> None:
        """Set embeddings for many chunks in one transaction."""
        if embeddings:
            await self._run(self._update_chunk_embeddings_sync, embeddings)

    def _update_chunk_embeddings_sync(self, embeddings: dict[str, list[float]]) -> None:
        conn = self._get_connection()
        try:
            with conn:
                conn.executemany(
                    "UPDATE rag_chunks SET embedding = ? WHERE id = ?",
                    [(json.dumps(vector), chunk_id) for chunk_id, vector in embeddings.items()],
                )
        finally:
            conn.close()

    async def delete_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document.

        Returns:
            Number of chunks deleted
        """
        return await self._run(self._delete_chunks_sync, document_id)

    def _delete_chunks_sync(self, document_id: str) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute("DELETE FROM rag_chunks WHERE document_id = ?", (document_id,))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    # Search

    def _enrich(
        self, conn: sqlite3.Connection, scored: list[tuple[str, float]]
    ) -> list[SearchResult]:
        """Load chunks and documents for scored chunk ids, keeping order."""
        if not scored:
            return []

        ids = [chunk_id for chunk_id, _ in scored]
        placeholders = ", ".join("?" for _ in ids)
        chunks = {
            row["id"]: _row_to_chunk(row)
            for row in conn.execute(f"SELECT * FROM rag_chunks WHERE id IN ({placeholders})", ids)
        }
        if not chunks:
            return []

        document_ids = list({chunk.document_id for chunk in chunks.values()})
        placeholders = ", ".join("?" for _ in document_ids)
        documents = {
            row["id"]: _row_to_document(row)
            for row in conn.execute(
                f"SELECT * FROM rag_documents WHERE id IN ({placeholders})", document_ids
            )
        }

        results = []
        for chunk_id, score in scored:
            chunk = chunks.get(chunk_id)
            document = documents.get(chunk.document_id) if chunk else None
            if chunk and document:
                results.append(SearchResult.build(chunk, document, score))
        return results

    async def vector_search(
        self,
        query_vector: list[float],
        project_id: Optional[str] = None,
        top_k: int = 10,
        min_score: float = 0.5,
    ) -> list[SearchResult]:
        """Brute-force cosine similarity over every stored embedding.

        Args:
            query_vector: Query embedding
            project_id: Restrict to one project's documents
            top_k: Maximum number of results
            min_score: Minimum similarity to keep a chunk

        Returns:
            Results sorted by descending similarity
        """
        return await self._run(self._vector_search_sync, query_vector, project_id, top_k, min_score)

    def _vector_search_sync(
        self,
        query_vector: list[float],
        project_id: Optional[str],
        top_k: int,
        min_score: float,
    ) -> list[SearchResult]:
        sql = (
            "SELECT c.id, c.embedding FROM rag_chunks c "
            "JOIN rag_documents d ON d.id = c.document_id "
            "WHERE c.embedding IS NOT NULL"
        )
        params: list[Any] = []
        if project_id is not None:
            sql += " AND d.project_id = ?"
            params.append(project_id)
        sql += " ORDER BY c.seq"

        conn = self._get_connection()
        try:
            scored = []
            for row in conn.execute(sql, params):
                score = cosine_similarity(query_vector, json.loads(row["embedding"]))
                if score >= min_score:
                    scored.append((row["id"], score))

            scored.sort(key=lambda item: item[1], reverse=True)
            return self._enrich(conn, scored[:top_k])
        finally:
            conn.close()

    async def keyword_search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """Keyword search over chunk content.

        With FTS5 the query's whitespace tokens are OR-ed and scored by
        normalized bm25, mapped into [0.1, 1) so every match outscores a
        missing keyword signal in hybrid fusion. Without it, chunks containing
        the whole query as a substring score a fixed 0.5. Query errors are
        logged and yield no results.
        """
        return await self._run(self._keyword_search_sync, query, project_id, limit)

    def _keyword_search_sync(self, query: str, project_id: Optional[str], limit: int) -> list[SearchResult]:
        if not query.strip():
            return []

        conn = self._get_connection()
        try:
            if self.fts_available:
                scored = self._fts_search(conn, query, project_id, limit)
            else:
                scored = self._like_search(conn, query.strip(), project_id, limit)
            return self._enrich(conn, scored)
        except sqlite3.Error as e:
            logger.warning(f"Keyword search failed for {query!r}: {e}")
            return []
        finally:
            conn.close()

    def _fts_search(
        self, conn: sqlite3.Connection, query: str, project_id: Optional[str], limit: int
    ) -> list[tuple[str, float]]:
        match = _fts_query(query)
        if match is None:
            return []

        sql = (
            "SELECT c.id, bm25(rag_chunks_fts) AS bm25_score FROM rag_chunks_fts "
            "JOIN rag_chunks c ON c.seq = rag_chunks_fts.rowid "
            "JOIN rag_documents d ON d.id = c.document_id "
            "WHERE rag_chunks_fts MATCH ?"
        )
        params: list[Any] = [match]
        if project_id is not None:
            sql += " AND d.project_id = ?"
            params.append(project_id)
        sql += " ORDER BY bm25_score LIMIT ?"
        params.append(limit)

        scored = []
        for row in conn.execute(sql, params):
            # bm25() is negative, more negative is better; map to [MIN_FTS_MATCH_SCORE, 1)
            magnitude = abs(row["bm25_score"])
            normalized = magnitude / (1 + magnitude)
            scored.append((row["id"], MIN_FTS_MATCH_SCORE + (1 - MIN_FTS_MATCH_SCORE) * normalized))
        return scored

    def _like_search(
        self, conn: sqlite3.Connection, query: str, project_id: Optional[str], limit: int
    ) -> list[tuple[str, float]]:
        sql = (
            "SELECT c.id FROM rag_chunks c "
            "JOIN rag_documents d ON d.id = c.document_id "
            "WHERE c.content LIKE ? ESCAPE '\\'"
        )
        params: list[Any] = [_like_pattern(query)]
        if project_id is not None:
            sql += " AND d.project_id = ?"
            params.append(project_id)
        sql += " ORDER BY c.seq LIMIT ?"
        params.append(limit)

        return [(row["id"], FALLBACK_KEYWORD_SCORE) for row in conn.execute(sql, params)]

    async def hybrid_search(
        self,
        query: str,
        query_vector: list[float],
        project_id: Optional[str] = None,
        top_k: int = 10,
        min_score: float = 0.5,
        vector_weight: float = 0.7,
    ) -> list[SearchResult]:
        """Fuse vector and keyword results.

        Both searches run concurrently for ``2 * top_k`` candidates each. A
        candidate's score is ``w * vector + (1 - w) * keyword`` with a missing
        signal counting as 0. Ties keep the order of the dominant signal, and
        candidates found only by a zero-weighted signal are dropped, so
        ``vector_weight`` 1.0 and 0.0 rank exactly like vector and keyword
        search.
        """
        vector_results, keyword_results = await asyncio.gather(
            self.vector_search(query_vector, project_id, top_k * 2, min_score),
            self.keyword_search(query, project_id, top_k * 2),
        )

        vector_rank = {r.chunk.id: i for i, r in enumerate(vector_results)}
        keyword_rank = {r.chunk.id: i for i, r in enumerate(keyword_results)}
        vector_scores = {r.chunk.id: r.score for r in vector_results}
        keyword_scores = {r.chunk.id: r.score for r in keyword_results}

        candidates: dict[str, SearchResult] = {}
        for result in [*vector_results, *keyword_results]:
            candidates.setdefault(result.chunk.id, result)

        dominant_rank = vector_rank if vector_weight >= 0.5 else keyword_rank
        unranked = len(candidates)

        fused = []
        for chunk_id, result in candidates.items():
            if vector_weight == 1.0 and chunk_id not in vector_rank:
                continue
            if vector_weight == 0.0 and chunk_id not in keyword_rank:
                continue
            score = (
                vector_weight * vector_scores.get(chunk_id, 0.0)
                + (1 - vector_weight) * keyword_scores.get(chunk_id, 0.0)
            )
            fused.append((score, dominant_rank.get(chunk_id, unranked), result))

        fused.sort(key=lambda item: (-item[0], item[1]))
        return [result.model_copy(update={"score": score}) for score, _, result in fused[:top_k]]

    # Stats, config, maintenance

    async def get_stats(self) -> RAGStats:
        """Document and chunk counts.

        Provider fields are left empty; the pipeline fills them in.
        """
        return await self._run(self._get_stats_sync)

    def _get_stats_sync(self) -> RAGStats:
        conn = self._get_connection()
        try:
            total_documents = conn.execute("SELECT COUNT(*) FROM rag_documents").fetchone()[0]
            total_chunks, indexed_chunks = conn.execute(
                "SELECT COUNT(*), COUNT(embedding) FROM rag_chunks"
            ).fetchone()
            breakdown = {
                row["project_id"] or "standalone": row["count"]
                for row in conn.execute(
                    "SELECT project_id, COUNT(*) AS count FROM rag_documents GROUP BY project_id"
                )
            }
            return RAGStats(
                total_documents=total_documents,
                total_chunks=total_chunks,
                indexed_chunks=indexed_chunks,
                project_breakdown=breakdown,
                fts_available=self.fts_available,
            )
        finally:
            conn.close()

    async def get_config(self) -> RAGConfig:
        """The persisted config, or the default when none has been saved."""
        return await self._run(self._get_config_sync)

    def _get_config_sync(self) -> RAGConfig:
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT value FROM rag_config WHERE key = ?", (CONFIG_KEY,)).fetchone()
            if row:
                return RAGConfig.model_validate_json(row["value"])
            return self.default_config.model_copy(deep=True)
        finally:
            conn.close()

    async def update_config(self, updates: dict[str, Any]) -> RAGConfig:
        """Deep-merge ``updates`` into the persisted config.

        Raises:
            ConfigurationError: Unknown section or invalid value
        """
        return await self._run(self._update_config_sync, updates)

    def _update_config_sync(self, updates: dict[str, Any]) -> RAGConfig:
        config = self._get_config_sync().merged(updates)
        conn = self._get_connection()
        try:
            conn.execute(
                """
                INSERT INTO rag_config (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (CONFIG_KEY, config.model_dump_json(), _now()),
            )
            conn.commit()
            return config
        finally:
            conn.close()

    async def vacuum(self) -> None:
        await self._run(self._execute_sync, "VACUUM")

    async def rebuild_fts(self) -> None:
        """Rebuild the FTS index from chunk contents; no-op without FTS."""
        if self.fts_available:
            await self._run(
                self._execute_sync, "INSERT INTO rag_chunks_fts(rag_chunks_fts) VALUES ('rebuild')"
            )

    def _execute_sync(self, sql: str) -> None:
        conn = self._get_connection()
        try:
            conn.execute(sql)
            conn.commit()
        finally:
            conn.close()

    def close(self) -> None:
        """Mark the store closed; later calls raise until initialize() runs again."""
        self._initialized = False
        logger.debug(f"RAG store closed: {self.db_path}")
