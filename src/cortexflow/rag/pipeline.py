"""Indexing and retrieval orchestration."""

import logging
import time
from typing import Any, Optional, TYPE_CHECKING, Union

from .base import BaseEmbedding, BaseRAGStore
from .chunking import chunk_document
from .config import RAGConfig, SearchType
from .document import (
    Chunk,
    ContextResult,
    ContextSource,
    Document,
    IndexProjectResult,
    QueryResult,
    RAGStats,
    ReindexResult,
    SourceType,
)
from .embeddings import EmbeddingProviderCache
from .vectorstore import SQLiteRAGStore

if TYPE_CHECKING:
    from cortexflow.models import Project
    from cortexflow.utils.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONTEXT_LENGTH = 4000
REINDEX_LIMIT = 10000


def _format_metadata_value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class RAGPipeline:
    """Indexes documents into a store and answers queries against it.

    Chunking, embedding and search settings are read from the store's
    persisted RAGConfig on every call, so a config update takes effect
    immediately. The embedding provider comes from an owned
    ``EmbeddingProviderCache`` and is rebuilt when its config changes.

    Example:
        ```python
        store = SQLiteRAGStore("rag.sqlite")
        await store.initialize()
        pipeline = RAGPipeline(store)

        await pipeline.index_document("Deploy guide", "Run the migrations first...")
        result = await pipeline.search("migrations", search_type="keyword")
        ```
    """

    def __init__(
        self,
        store: BaseRAGStore,
        providers: Optional[EmbeddingProviderCache] = None,
    ):
        """Initialize the pipeline.

        Args:
            store: Initialized document/chunk store
            providers: Embedding provider cache (default: a new one)
        """
        self.store = store
        self.providers = providers or EmbeddingProviderCache()

    async def get_embedding_provider(self) -> BaseEmbedding:
        """The provider selected by the current config."""
        config = await self.store.get_config()
        return self.providers.get(config.embedding)

    # Indexing

    async def index_document(
        self,
        title: str,
        content: str,
        *,
        project_id: Optional[str] = None,
        source_type: Union[SourceType, str] = SourceType.CUSTOM_DOCUMENT,
        source_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        skip_embedding: bool = False,
    ) -> Document:
        """Chunk, store and embed a document.

        An embedding failure is logged and leaves the chunks without vectors;
        the document stays keyword-searchable.

        Args:
            title: Document title
            content: Full text
            project_id: Owning project
            source_type: Kind of source
            source_id: ID of the source record
            metadata: Document metadata
            skip_embedding: Store chunks without computing embeddings

        Returns:
            The stored document
        """
        config = await self.store.get_config()

        document = Document(
            project_id=project_id,
            source_type=SourceType(source_type),
            source_id=source_id,
            title=title,
            content=content,
            metadata=metadata or {},
        )

        results = chunk_document(content, config.chunking)
        document.chunk_count = len(results)

        chunks = [
            Chunk(
                document_id=document.id,
                content=result.content,
                chunk_index=result.index,
                start_offset=result.start_offset,
                end_offset=result.end_offset,
                metadata={"document_title": title},
            )
            for result in results
        ]
        await self.store.save_document_with_chunks(document, chunks)

        if chunks and not skip_embedding:
            try:
                embedder = self.providers.get(config.embedding)
                vectors = await embedder.embed_batch([chunk.content for chunk in chunks])
                await self.store.update_chunk_embeddings(
                    {chunk.id: vector for chunk, vector in zip(chunks, vectors)}
                )
                for chunk, vector in zip(chunks, vectors):
                    chunk.embedding = vector
            except Exception as e:
                logger.warning(f"Embedding generation failed for {document.id!r}: {e}")

        logger.debug(f"Indexed document {document.id}: {len(chunks)} chunks")
        return document

    async def index_project_context(self, project: "Project") -> IndexProjectResult:
        """Index a project, its tasks and its substantial notes.

        One document describes the project, one per task (when
        ``indexing.include_tasks``), and one per note longer than
        ``indexing.min_note_length`` (when ``indexing.include_notes``).
        """
        config = await self.store.get_config()
        result = IndexProjectResult()

        def add(document: Document) -> None:
            result.documents.append(document)
            result.total_chunks += document.chunk_count

        project_content = "\n".join([
            f"# Project: {project.name}",
            "",
            project.description,
            "",
            f"Phase: {project.phase.value}",
            f"Tags: {', '.join(project.tags) or 'none'}",
            f"Version: {project.version}",
        ])
        add(await self.index_document(
            f"Project: {project.name}",
            project_content,
            project_id=project.id,
            source_type=SourceType.PROJECT_CONTEXT,
            source_id=project.id,
            metadata={
                "phase": project.phase.value,
                "tags": project.tags,
                "version": project.version,
            },
        ))

        if config.indexing.include_tasks:
            for task in project.tasks:
                lines = [
                    f"# Task: {task.title}",
                    task.description,
                    f"Status: {task.status.value}",
                    f"Priority: {task.priority}",
                ]
                if task.assigned_to:
                    lines.append(f"Assigned to: {task.assigned_to.value}")
                if task.dependencies:
                    lines.append(f"Dependencies: {', '.join(task.dependencies)}")
                if task.notes:
                    lines.append("## Notes\n" + "\n".join(f"- {note}" for note in task.notes))

                add(await self.index_document(
                    f"Task: {task.title}",
                    "\n".join(line for line in lines if line),
                    project_id=project.id,
                    source_type=SourceType.TASK,
                    source_id=task.id,
                    metadata={
                        "status": task.status.value,
                        "priority": task.priority,
                        "assigned_to": task.assigned_to.value if task.assigned_to else None,
                    },
                ))

        if config.indexing.include_notes:
            for note in project.notes:
                if len(note.content) <= config.indexing.min_note_length:
                    continue
                note_content = "\n".join([
                    f"# Note by {note.agent.value}",
                    "",
                    f"Category: {note.category}",
                    f"Timestamp: {note.timestamp.isoformat()}",
                    "",
                    note.content,
                ])
                add(await self.index_document(
                    f"Note: {note.category} by {note.agent.value}",
                    note_content,
                    project_id=project.id,
                    source_type=SourceType.NOTE,
                    source_id=note.id,
                    metadata={"agent": note.agent.value, "category": note.category},
                ))

        logger.info(
            f"Indexed project {project.id}: {len(result.documents)} documents, "
            f"{result.total_chunks} chunks"
        )
        return result

    # Retrieval

    async def search(
        self,
        query: str,
        *,
        project_id: Optional[str] = None,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        search_type: Optional[SearchType] = None,
        vector_weight: Optional[float] = None,
    ) -> QueryResult:
        """Search indexed chunks.

        Unset options fall back to the ``search`` section of the config.
        Keyword search never touches the embedding provider; vector and
        hybrid search embed the query first and propagate its errors.
        """
        start = time.perf_counter()
        config = await self.store.get_config()

        search_type = search_type or config.search.search_type
        top_k = top_k if top_k is not None else config.search.top_k
        min_score = min_score if min_score is not None else config.search.min_score
        vector_weight = vector_weight if vector_weight is not None else config.search.vector_weight

        provider_name = "none"
        if search_type == "keyword":
            results = await self.store.keyword_search(query, project_id, top_k)
        else:
            embedder = self.providers.get(config.embedding)
            provider_name = embedder.name
            query_vector = await embedder.embed(query)

            if search_type == "vector":
                results = await self.store.vector_search(query_vector, project_id, top_k, min_score)
            else:
                results = await self.store.hybrid_search(
                    query, query_vector, project_id, top_k, min_score, vector_weight
                )

        return QueryResult(
            query=query,
            results=results,
            total_found=len(results),
            search_time_ms=(time.perf_counter() - start) * 1000,
            embedding_provider=provider_name,
        )

    async def build_context_from_search(
        self,
        query: str,
        *,
        max_context_length: int = DEFAULT_MAX_CONTEXT_LENGTH,
        include_metadata: bool = True,
        **search_options: Any,
    ) -> ContextResult:
        """Search and concatenate whole results into a bounded context string.

        Each entry is ``--- title ---`` followed by the chunk text and, when
        ``include_metadata`` is set, a ``[key: value, ...]`` line. Entries are
        added in rank order until the next one would exceed
        ``max_context_length``; entries are never truncated.

        Args:
            query: Search query
            max_context_length: Upper bound on the length of the returned context
            include_metadata: Append document metadata to each entry
            **search_options: Passed through to ``search``
        """
        search_result = await self.search(query, **search_options)

        entries: list[str] = []
        sources: list[ContextSource] = []
        length = 0

        for result in search_result.results:
            entry = f"--- {result.document.title} ---\n{result.chunk.content}\n"
            if include_metadata:
                pairs = [
                    f"{key}: {_format_metadata_value(value)}"
                    for key, value in result.document.metadata.items()
                    if value is not None
                ]
                if pairs:
                    entry += f"[{', '.join(pairs)}]\n"

            separator = 1 if entries else 0
            if length + separator + len(entry) > max_context_length:
                break

            entries.append(entry)
            sources.append(ContextSource(
                title=result.document.title,
                score=result.score,
                document_id=result.document.id,
            ))
            length += separator + len(entry)

        return ContextResult(context="\n".join(entries), sources=sources, search_result=search_result)

    # Document management

    async def get_document(self, document_id: str) -> Optional[Document]:
        return await self.store.get_document(document_id)

    async def list_documents(
        self,
        project_id: Optional[str] = None,
        source_type: Optional[str] = None,
        limit: int = 100,
    ) -> list[Document]:
        return await self.store.list_documents(project_id, source_type, limit)

    async def get_chunks(self, document_id: str) -> list[Chunk]:
        return await self.store.get_chunks(document_id)

    async def delete_document(self, document_id: str) -> bool:
        """Delete a document and its chunks."""
        return await self.store.delete_document(document_id)

    async def delete_project_documents(self, project_id: str) -> int:
        """Delete every document of a project; returns how many were deleted."""
        return await self.store.delete_project_documents(project_id)

    async def reindex_document(self, document_id: str) -> Optional[Document]:
        """Re-chunk and re-embed a document under the current config.

        The document is deleted and indexed again with its original title,
        content, metadata and source fields, so it receives a new id.

        Returns:
            The new document, or None if ``document_id`` does not exist
        """
        document = await self.store.get_document(document_id)
        if document is None:
            return None

        await self.store.delete_chunks(document_id)
        await self.store.delete_document(document_id)

        return await self.index_document(
            document.title,
            document.content,
            project_id=document.project_id,
            source_type=document.source_type,
            source_id=document.source_id,
            metadata=document.metadata,
        )

    async def update_document_embeddings(self, document_id: str) -> int:
        """Re-embed a document's existing chunks without re-chunking.

        Embedding errors propagate to the caller.

        Returns:
            Number of chunks updated
        """
        chunks = await self.store.get_chunks(document_id)
        if not chunks:
            return 0

        embedder = await self.get_embedding_provider()
        vectors = await embedder.embed_batch([chunk.content for chunk in chunks])
        await self.store.update_chunk_embeddings(
            {chunk.id: vector for chunk, vector in zip(chunks, vectors)}
        )
        return len(chunks)

    async def reindex_all(
        self,
        *,
        project_id: Optional[str] = None,
        continue_on_error: bool = False,
    ) -> ReindexResult:
        """Refresh embeddings for up to 10,000 documents.

        Args:
            project_id: Restrict to one project
            continue_on_error: Count failed documents and keep going instead
                of raising the first failure

        Returns:
            Processed, updated and failed counts
        """
        documents = await self.store.list_documents(project_id, None, REINDEX_LIMIT)
        result = ReindexResult()

        for document in documents:
            try:
                result.chunks_updated += await self.update_document_embeddings(document.id)
            except Exception as e:
                if not continue_on_error:
                    raise
                logger.warning(f"Re-embedding failed for {document.id!r}: {e}")
                result.documents_failed += 1
            result.documents_processed += 1

        logger.info(
            f"Reindexed {result.documents_processed} documents "
            f"({result.chunks_updated} chunks, {result.documents_failed} failed)"
        )
        return result

    # Stats, config, maintenance

    async def get_stats(self) -> RAGStats:
        """Store counts plus the active embedding provider."""
        stats = await self.store.get_stats()
        embedder = await self.get_embedding_provider()
        return stats.model_copy(update={
            "embedding_provider": embedder.name,
            "embedding_dimensions": embedder.dimensions,
        })

    async def get_config(self) -> RAGConfig:
        return await self.store.get_config()

    async def update_config(self, updates: dict[str, Any]) -> RAGConfig:
        """Deep-merge ``updates`` into the persisted config."""
        return await self.store.update_config(updates)

    async def check_embedding_provider(self) -> dict[str, Any]:
        """Availability check for the configured provider. Never raises."""
        embedder = await self.get_embedding_provider()
        return {
            "provider": embedder.name,
            "available": await embedder.is_available(),
            "dimensions": embedder.dimensions,
        }

    async def rebuild_fts_index(self) -> None:
        await self.store.rebuild_fts()

    async def vacuum_database(self) -> None:
        await self.store.vacuum()

    def close(self) -> None:
        self.store.close()


async def create_rag_pipeline(settings: Optional["Settings"] = None) -> RAGPipeline:
    """Build a pipeline over an initialized SQLite store.

    Args:
        settings: Process settings (default: ``load_settings()``)
    """
    from cortexflow.utils.config import load_settings
    from cortexflow.utils.logging import configure_logging

    settings = settings or load_settings()
    configure_logging(settings.log_level)

    store = SQLiteRAGStore(
        settings.db_path,
        enable_fts=settings.enable_fts,
        default_config=settings.default_rag_config(),
    )
    await store.initialize()
    return RAGPipeline(store)
