"""
Test configuration and fixtures.
"""

import re
from typing import Optional

import pytest
import pytest_asyncio

from cortexflow.rag import (
    BaseEmbedding,
    Chunk,
    Document,
    EmbeddingProviderCache,
    RAGPipeline,
    SQLiteRAGStore,
    TransportError,
)

VOCABULARY = ["python", "database", "migration", "cooking", "recipe", "garden", "deploy", "search"]


class FakeEmbedding(BaseEmbedding):
    """Bag-of-words embedding over a fixed vocabulary.

    Texts sharing vocabulary words get similar vectors, which makes vector
    search results predictable. Every request is recorded in ``calls``.
    """

    name = "fake"

    def __init__(self, vocabulary: Optional[list[str]] = None, batch_size: int = 2):
        self.vocabulary = vocabulary or VOCABULARY
        self.batch_size = batch_size
        self.fail = False
        self.calls: list[list[str]] = []

    @property
    def dimensions(self) -> int:
        return len(self.vocabulary)

    @property
    def max_batch_size(self) -> int:
        return self.batch_size

    def vectorize(self, text: str) -> list[float]:
        words = re.findall(r"[a-z]+", text.lower())
        return [float(words.count(word)) for word in self.vocabulary]

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise TransportError(self.name, 503, "service unavailable")
        return [self.vectorize(text) for text in texts]

    async def is_available(self) -> bool:
        return not self.fail


@pytest.fixture
def fake_embedding():
    """Deterministic embedding provider."""
    return FakeEmbedding()


@pytest_asyncio.fixture
async def store(tmp_path):
    """Initialized store with full-text search enabled when SQLite supports it."""
    store = SQLiteRAGStore(tmp_path / "rag.sqlite")
    await store.initialize()
    yield store
    store.close()


@pytest_asyncio.fixture
async def fallback_store(tmp_path):
    """Initialized store forced onto substring keyword search."""
    store = SQLiteRAGStore(tmp_path / "fallback.sqlite", enable_fts=False)
    await store.initialize()
    yield store
    store.close()


@pytest_asyncio.fixture(params=[True, False], ids=["fts", "fallback"])
async def any_store(request, tmp_path):
    """Store in each keyword search mode."""
    store = SQLiteRAGStore(tmp_path / "any.sqlite", enable_fts=request.param)
    await store.initialize()
    yield store
    store.close()


@pytest.fixture
def pipeline(store, fake_embedding):
    """Pipeline over the test store, always using the fake embedding."""
    providers = EmbeddingProviderCache(factory=lambda config, **kwargs: fake_embedding)
    return RAGPipeline(store, providers)


@pytest.fixture
def add_document(fake_embedding):
    """Store a single-chunk document, embedded with the fake provider unless ``embed`` is False."""

    async def add(
        store: SQLiteRAGStore,
        content: str,
        *,
        title: str = "Doc",
        project_id: Optional[str] = None,
        embed: bool = True,
    ) -> tuple[Document, Chunk]:
        document = Document(title=title, content=content, project_id=project_id, chunk_count=1)
        chunk = Chunk(
            document_id=document.id,
            content=content,
            embedding=fake_embedding.vectorize(content) if embed else None,
            chunk_index=0,
            start_offset=0,
            end_offset=len(content),
        )
        await store.save_document(document)
        await store.save_chunks([chunk])
        return document, chunk

    return add
