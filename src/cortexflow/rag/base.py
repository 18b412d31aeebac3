"""Base classes and abstract interfaces for RAG components."""

from abc import ABC, abstractmethod
from typing import Any, Optional, TYPE_CHECKING

from .exceptions import InvalidEmbeddingError

if TYPE_CHECKING:
    from .config import RAGConfig
    from .document import Chunk, ChunkResult, Document, RAGStats, SearchResult


class BaseEmbedding(ABC):
    """Abstract base class for embedding providers.

    Subclasses implement ``_embed_texts`` for a single request. Batching,
    ordering and response validation are handled here so every backend
    behaves the same: requests are split at ``max_batch_size`` and sent one
    after another, never concurrently.
    """

    name: str = "base"

    @property
    @abstractmethod
    def dimensions(self) -> int:
        pass

    @property
    @abstractmethod
    def max_batch_size(self) -> int:
        pass

    @abstractmethod
    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed one request's worth of texts (at most max_batch_size)."""
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Report whether the provider can serve requests. Never raises."""
        pass

    async def embed(self, text: str) -> list[float]:
        """Embed a single text."""
        vectors = await self._embed_texts([text])
        self._validate(1, vectors)
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed texts in order, one sequential request per batch."""
        vectors: list[list[float]] = []
        for i in range(0, len(texts), self.max_batch_size):
            batch = texts[i : i + self.max_batch_size]
            batch_vectors = await self._embed_texts(batch)
            self._validate(len(batch), batch_vectors)
            vectors.extend(batch_vectors)
        return vectors

    def _validate(self, expected: int, vectors: list[list[float]]) -> None:
        if len(vectors) != expected:
            raise InvalidEmbeddingError(self.name, f"expected {expected} vectors, got {len(vectors)}")
        for i, vector in enumerate(vectors):
            if len(vector) != self.dimensions:
                raise InvalidEmbeddingError(
                    self.name,
                    f"vector {i} has {len(vector)} dimensions, expected {self.dimensions}",
                )


class BaseChunker(ABC):
    """Abstract base class for chunking strategies."""

    @abstractmethod
    def chunk(self, text: str) -> list["ChunkResult"]:
        pass


class BaseRAGStore(ABC):
    """Abstract base class for persistent document/chunk stores."""

    @abstractmethod
    async def initialize(self) -> None:
        pass

    @property
    @abstractmethod
    def fts_available(self) -> bool:
        pass

    # Documents

    @abstractmethod
    async def save_document(self, document: "Document") -> None:
        pass

    @abstractmethod
    async def get_document(self, document_id: str) -> Optional["Document"]:
        pass

    @abstractmethod
    async def list_documents(
        self,
        project_id: Optional[str] = None,
        source_type: Optional[str] = None,
        limit: int = 100,
    ) -> list["Document"]:
        pass

    @abstractmethod
    async def update_document(self, document_id: str, **updates: Any) -> bool:
        pass

    @abstractmethod
    async def delete_document(self, document_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_project_documents(self, project_id: str) -> int:
        pass

    @abstractmethod
    async def save_document_with_chunks(self, document: "Document", chunks: list["Chunk"]) -> None:
        """Store a document and its chunks atomically."""
        pass

    # Chunks

    @abstractmethod
    async def save_chunks(self, chunks: list["Chunk"]) -> None:
        pass

    @abstractmethod
    async def get_chunks(self, document_id: str) -> list["Chunk"]:
        pass

    @abstractmethod
    async def get_chunk_by_id(self, chunk_id: str) -> Optional["Chunk"]:
        pass

    @abstractmethod
    async def update_chunk_embeddings(self, embeddings: dict[str, list[float]]) -> None:
        pass

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        pass

    # Search

    @abstractmethod
    async def vector_search(
        self,
        query_vector: list[float],
        project_id: Optional[str] = None,
        top_k: int = 10,
        min_score: float = 0.5,
    ) -> list["SearchResult"]:
        pass

    @abstractmethod
    async def keyword_search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: int = 10,
    ) -> list["SearchResult"]:
        pass

    @abstractmethod
    async def hybrid_search(
        self,
        query: str,
        query_vector: list[float],
        project_id: Optional[str] = None,
        top_k: int = 10,
        min_score: float = 0.5,
        vector_weight: float = 0.7,
    ) -> list["SearchResult"]:
        pass

    # Stats, config, maintenance

    @abstractmethod
    async def get_stats(self) -> "RAGStats":
        pass

    @abstractmethod
    async def get_config(self) -> "RAGConfig":
        pass

    @abstractmethod
    async def update_config(self, updates: dict[str, Any]) -> "RAGConfig":
        pass

    @abstractmethod
    async def vacuum(self) -> None:
        pass

    @abstractmethod
    async def rebuild_fts(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass
