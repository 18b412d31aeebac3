"""Retrieval subsystem for CortexFlow.

This module provides:
- Document and chunk data structures
- Chunking strategies (fixed-size, sentence, paragraph, semantic)
- Embedding providers (local, OpenAI, Voyage, Cohere, custom endpoint)
- A SQLite store with vector, keyword and hybrid search
- An indexing and retrieval pipeline

Example:
    ```python
    from cortexflow.rag import create_rag_pipeline

    pipeline = await create_rag_pipeline()
    await pipeline.index_document("Release notes", "Version 2 adds hybrid search...")

    context = await pipeline.build_context_from_search("hybrid search")
    print(context.context)
    ```
"""

# Data structures
from .document import (
    Chunk,
    ChunkResult,
    ContextResult,
    ContextSource,
    Document,
    IndexProjectResult,
    QueryResult,
    RAGStats,
    ReindexResult,
    SearchResult,
    SourceType,
)

# Configuration
from .config import (
    ChunkingConfig,
    EmbeddingConfig,
    IndexingConfig,
    RAGConfig,
    SearchConfig,
)

# Errors
from .exceptions import (
    ConfigurationError,
    InvalidEmbeddingError,
    RAGError,
    StoreInitializationError,
    TransportError,
    UnavailableCapabilityError,
)

# Base classes
from .base import BaseChunker, BaseEmbedding, BaseRAGStore

# Chunking strategies
from .chunking import (
    FixedSizeChunker,
    ParagraphChunker,
    SemanticChunker,
    SentenceChunker,
    chunk_document,
    estimate_token_count,
    get_recommended_chunk_size,
    merge_small_chunks,
    split_oversized_chunk,
)

# Embedding providers
from .embeddings import (
    CohereEmbedding,
    CustomEmbedding,
    EmbeddingProviderCache,
    LocalEmbedding,
    OpenAIEmbedding,
    VoyageEmbedding,
    create_embedding_provider,
    get_available_providers,
    get_provider_dimensions,
)

# Store
from .vectorstore import FTSCapability, SQLiteRAGStore, cosine_similarity

# Pipeline
from .pipeline import RAGPipeline, create_rag_pipeline

__all__ = [
    # Data structures
    "Chunk",
    "ChunkResult",
    "ContextResult",
    "ContextSource",
    "Document",
    "IndexProjectResult",
    "QueryResult",
    "RAGStats",
    "ReindexResult",
    "SearchResult",
    "SourceType",
    # Configuration
    "ChunkingConfig",
    "EmbeddingConfig",
    "IndexingConfig",
    "RAGConfig",
    "SearchConfig",
    # Errors
    "ConfigurationError",
    "InvalidEmbeddingError",
    "RAGError",
    "StoreInitializationError",
    "TransportError",
    "UnavailableCapabilityError",
    # Base classes
    "BaseChunker",
    "BaseEmbedding",
    "BaseRAGStore",
    # Chunking
    "FixedSizeChunker",
    "ParagraphChunker",
    "SemanticChunker",
    "SentenceChunker",
    "chunk_document",
    "estimate_token_count",
    "get_recommended_chunk_size",
    "merge_small_chunks",
    "split_oversized_chunk",
    # Embeddings
    "CohereEmbedding",
    "CustomEmbedding",
    "EmbeddingProviderCache",
    "LocalEmbedding",
    "OpenAIEmbedding",
    "VoyageEmbedding",
    "create_embedding_provider",
    "get_available_providers",
    "get_provider_dimensions",
    # Store
    "FTSCapability",
    "SQLiteRAGStore",
    "cosine_similarity",
    # Pipeline
    "RAGPipeline",
    "create_rag_pipeline",
]
