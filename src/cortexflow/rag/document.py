"""Document, Chunk and result data structures for RAG."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

HIGHLIGHT_LENGTH = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class SourceType(str, Enum):
    """Where an indexed document came from."""

    PROJECT_CONTEXT = "project_context"
    TASK = "task"
    NOTE = "note"
    CUSTOM_DOCUMENT = "custom_document"


class Document(BaseModel):
    """A document to be indexed and retrieved.

    Attributes:
        id: Unique identifier for the document
        project_id: Owning project, if any
        source_type: Kind of source the document was derived from
        source_id: Identifier of the source record (task id, note id, ...)
        title: Human-readable title, used to label context entries
        content: Full text of the document
        metadata: Additional metadata about the document
        chunk_count: Number of chunks stored for the document
        created_at: Creation timestamp
        updated_at: Last update timestamp
    """

    id: str = Field(default_factory=_new_id)
    project_id: Optional[str] = None
    source_type: SourceType = SourceType.CUSTOM_DOCUMENT
    source_id: Optional[str] = None
    title: str
    content: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    chunk_count: int = 0
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)

    def __repr__(self) -> str:
        return f"Document(id={self.id!r}, title={self.title!r}, chunks={self.chunk_count})"


class Chunk(BaseModel):
    """A chunk of a document.

    Chunks are produced by the chunker and stored alongside their parent
    document. A chunk without an embedding is still keyword-searchable.

    Attributes:
        id: Unique identifier for the chunk
        document_id: ID of the parent document
        content: The text content of the chunk
        embedding: Optional embedding vector
        chunk_index: Zero-based position within the document
        start_offset: Start character offset in the document content
        end_offset: End character offset in the document content
        metadata: Chunk-level metadata
        created_at: Creation timestamp
    """

    id: str = Field(default_factory=_new_id)
    document_id: str
    content: str
    embedding: Optional[list[float]] = None
    chunk_index: int = 0
    start_offset: int = 0
    end_offset: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_now)

    def __repr__(self) -> str:
        content_preview = self.content[:30] + "..." if len(self.content) > 30 else self.content
        return f"Chunk(id={self.id!r}, doc_id={self.document_id!r}, content={content_preview!r})"


class ChunkResult(BaseModel):
    """A span produced by a chunking strategy, before it is persisted."""

    content: str
    start_offset: int
    end_offset: int
    index: int = 0

    @property
    def size(self) -> int:
        return len(self.content)


class SearchResult(BaseModel):
    """A search result from the RAG store.

    Attributes:
        chunk: The matching chunk
        document: The chunk's parent document
        score: Relevance score (higher is better)
        highlights: Short snippets of the matching content
    """

    chunk: Chunk
    document: Document
    score: float
    highlights: list[str] = Field(default_factory=list)

    @classmethod
    def build(cls, chunk: Chunk, document: Document, score: float) -> "SearchResult":
        snippet = chunk.content[:HIGHLIGHT_LENGTH]
        if len(chunk.content) > HIGHLIGHT_LENGTH:
            snippet += "..."
        return cls(chunk=chunk, document=document, score=score, highlights=[snippet])

    def __repr__(self) -> str:
        return f"SearchResult(chunk_id={self.chunk.id!r}, score={self.score:.4f})"


class QueryResult(BaseModel):
    """Search results annotated with timing and the provider that served them."""

    query: str
    results: list[SearchResult] = Field(default_factory=list)
    total_found: int = 0
    search_time_ms: float = 0.0
    embedding_provider: str = "none"


class ContextSource(BaseModel):
    """A document that contributed an entry to a built context string."""

    title: str
    score: float
    document_id: str


class ContextResult(BaseModel):
    """Bounded context string built from search results."""

    context: str
    sources: list[ContextSource] = Field(default_factory=list)
    search_result: QueryResult


class IndexProjectResult(BaseModel):
    """Documents created by indexing a project."""

    documents: list[Document] = Field(default_factory=list)
    total_chunks: int = 0


class ReindexResult(BaseModel):
    """Counts from a bulk embedding refresh."""

    documents_processed: int = 0
    chunks_updated: int = 0
    documents_failed: int = 0


class RAGStats(BaseModel):
    """Store statistics plus the active embedding provider."""

    total_documents: int = 0
    total_chunks: int = 0
    indexed_chunks: int = 0
    project_breakdown: dict[str, int] = Field(default_factory=dict)
    embedding_provider: Optional[str] = None
    embedding_dimensions: Optional[int] = None
    fts_available: bool = False
