"""RAG configuration model.

The configuration is a singleton record persisted by the store. Updates are
partial: each nested section is merged field-by-field into the current value.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import ConfigurationError

EmbeddingProviderName = Literal["local", "openai", "voyage", "cohere", "custom"]
ChunkingStrategy = Literal["fixed", "sentence", "paragraph", "semantic"]
SearchType = Literal["keyword", "vector", "hybrid"]

SECTIONS = ("embedding", "chunking", "search", "indexing")


class EmbeddingConfig(BaseModel):
    """Embedding backend selection and credentials.

    Attributes:
        provider: Backend name
        model: Model identifier (backend default when None)
        api_key: API key (falls back to the provider's env var at call time)
        api_endpoint: Endpoint URL override (required for "custom")
        dimensions: Vector length (backend default when None)
        batch_size: Max texts per request (backend default when None)
        quantized: Load the on-device model with int8 dynamic quantization
    """

    model_config = ConfigDict(extra="forbid")

    provider: EmbeddingProviderName = "local"
    model: Optional[str] = None
    api_key: Optional[str] = None
    api_endpoint: Optional[str] = None
    dimensions: Optional[int] = Field(default=None, ge=1)
    batch_size: Optional[int] = Field(default=None, ge=1)
    quantized: bool = True


class ChunkingConfig(BaseModel):
    """Chunking strategy and size bounds, in characters."""

    model_config = ConfigDict(extra="forbid")

    strategy: ChunkingStrategy = "paragraph"
    chunk_size: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=100, ge=0)
    min_chunk_size: int = Field(default=5, ge=1)
    max_chunk_size: int = Field(default=2000, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkingConfig":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        if self.min_chunk_size > self.max_chunk_size:
            raise ValueError("min_chunk_size must not exceed max_chunk_size")
        return self


class SearchConfig(BaseModel):
    """Default search parameters."""

    model_config = ConfigDict(extra="forbid")

    top_k: int = Field(default=5, ge=1)
    min_score: float = 0.3
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    search_type: SearchType = "hybrid"


class IndexingConfig(BaseModel):
    """What index_project_context includes."""

    model_config = ConfigDict(extra="forbid")

    include_tasks: bool = True
    include_notes: bool = True
    min_note_length: int = Field(default=50, ge=0)


class RAGConfig(BaseModel):
    """Complete retrieval configuration."""

    model_config = ConfigDict(extra="forbid")

    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = Field(default_factory=ChunkingConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    indexing: IndexingConfig = Field(default_factory=IndexingConfig)

    def merged(self, updates: dict[str, Any]) -> "RAGConfig":
        """Return a new config with ``updates`` deep-merged into this one.

        Each section present in ``updates`` is merged field-by-field; fields
        that are not mentioned keep their current value.

        Raises:
            ConfigurationError: Unknown section/field or invalid value
        """
        unknown = set(updates) - set(SECTIONS)
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {sorted(unknown)}")

        data = self.model_dump()
        for section, values in updates.items():
            if values is None:
                continue
            if isinstance(values, BaseModel):
                values = values.model_dump(exclude_unset=True)
            if not isinstance(values, dict):
                raise ConfigurationError(f"Config section {section!r} must be a mapping")
            data[section] = {**data[section], **values}

        try:
            return RAGConfig(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid config update: {e}") from e
