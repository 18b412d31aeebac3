"""Embedding provider implementations."""

import asyncio
import importlib.util
import logging
import os
from abc import abstractmethod
from typing import Any, Callable, Optional

import httpx

from .base import BaseEmbedding
from .config import EmbeddingConfig
from .exceptions import (
    ConfigurationError,
    InvalidEmbeddingError,
    TransportError,
    UnavailableCapabilityError,
)

logger = logging.getLogger(__name__)

# Called as loader(model_name, quantized=...)
ModelLoader = Callable[..., Any]

DEFAULT_TIMEOUT = 60.0

# API key environment variables, checked when no key is configured
API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "cohere": "COHERE_API_KEY",
}

# OpenAI models that do not accept the dimensions parameter
FIXED_DIMENSION_MODELS = frozenset({"text-embedding-ada-002"})


class LocalEmbedding(BaseEmbedding):
    """On-device embedding model using sentence-transformers.

    The model is loaded lazily on first use, through ``model_loader`` when one
    is given (the provider cache passes its own so the model is shared).
    By default the model's linear layers are quantized to int8 on load.
    Encoding runs in the default executor to keep the event loop free.

    Note: Requires the 'local' extra to be installed.
    """

    name = "local"

    MODEL_DIMENSIONS = {
        "all-MiniLM-L6-v2": 384,
        "all-mpnet-base-v2": 768,
        "paraphrase-multilingual-MiniLM-L12-v2": 384,
        "multi-qa-mpnet-base-dot-v1": 768,
    }

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        model_loader: Optional[ModelLoader] = None,
        quantized: bool = True,
    ):
        self.model_name = model_name
        self.quantized = quantized
        self._dimensions = dimensions or self.MODEL_DIMENSIONS.get(model_name, 384)
        self._batch_size = batch_size or 32
        self._model_loader = model_loader or load_sentence_transformer
        self._model = None

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def max_batch_size(self) -> int:
        return self._batch_size

    def _get_model(self):
        """Get or load the sentence-transformers model."""
        if self._model is None:
            self._model = self._model_loader(self.model_name, quantized=self.quantized)
        return self._model

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        model = self._get_model()

        # Run in thread pool to avoid blocking
        loop = asyncio.get_event_loop()
        embeddings = await loop.run_in_executor(
            None,
            lambda: model.encode(texts, normalize_embeddings=True, convert_to_numpy=True),
        )
        return [list(map(float, vector)) for vector in embeddings]

    async def is_available(self) -> bool:
        try:
            self._get_model()
        except Exception as e:
            logger.debug(f"Local embedding unavailable: {e}")
            return False
        return True


def load_sentence_transformer(model_name: str, quantized: bool = True):
    """Load a sentence-transformers model by name.

    Args:
        model_name: Model name or path
        quantized: Load on CPU and apply int8 dynamic quantization

    Raises:
        UnavailableCapabilityError: sentence-transformers is not installed
    """
    try:
        from sentence_transformers import SentenceTransformer
    except ImportError:
        raise UnavailableCapabilityError(
            "local embedding",
            "requires 'sentence-transformers'. Install it with: pip install cortexflow-rag[local]",
        )

    if quantized:
        model = quantize_model(SentenceTransformer(model_name, device="cpu"))
    else:
        model = SentenceTransformer(model_name)
    logger.info(f"Loaded embedding model: {model_name} ({'int8' if quantized else 'full precision'})")
    return model


def quantize_model(model):
    """Replace a torch module's linear layers with int8 dynamically quantized ones."""
    import torch

    return torch.ao.quantization.quantize_dynamic(model, {torch.nn.Linear}, dtype=torch.qint8)


class OpenAIEmbedding(BaseEmbedding):
    """OpenAI embedding model.

    Uses OpenAI's embedding API (text-embedding-3-small/large). An
    ``api_endpoint`` pointing at an OpenAI-compatible server replaces the
    default base URL.
    """

    name = "openai"

    MODEL_DIMENSIONS = {
        "text-embedding-3-small": 1536,
        "text-embedding-3-large": 3072,
        "text-embedding-ada-002": 1536,
    }

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model
        self.api_key = api_key
        self.api_endpoint = api_endpoint
        self._dimensions = dimensions or self.MODEL_DIMENSIONS.get(model, 1536)
        self._requested_dimensions = dimensions
        self._batch_size = batch_size or 100
        self._http_client = http_client
        self._client = None

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def max_batch_size(self) -> int:
        return self._batch_size

    def _get_client(self):
        """Get or create the OpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            api_key = resolve_api_key(self.name, self.api_key)
            kwargs: dict[str, Any] = {"api_key": api_key, "max_retries": 0}
            if self.api_endpoint:
                kwargs["base_url"] = _openai_base_url(self.api_endpoint)
            if self._http_client is not None:
                kwargs["http_client"] = self._http_client

            self._client = AsyncOpenAI(**kwargs)
        return self._client

    def _request(self, texts: list[str]) -> dict[str, Any]:
        request: dict[str, Any] = {"model": self.model, "input": texts, "encoding_format": "float"}
        if self._requested_dimensions and self.model not in FIXED_DIMENSION_MODELS:
            request["dimensions"] = self._requested_dimensions
        return request

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        import openai

        client = self._get_client()
        try:
            response = await client.embeddings.create(**self._request(texts))
        except openai.APIStatusError as e:
            raise TransportError(self.name, e.status_code, e.response.text) from e
        except openai.APIConnectionError as e:
            raise TransportError(self.name, None, str(e)) from e

        items = sorted(response.data, key=lambda item: item.index)
        return [item.embedding for item in items]

    async def is_available(self) -> bool:
        return bool(self.api_key or os.environ.get(API_KEY_ENV_VARS[self.name]))


def _openai_base_url(endpoint: str) -> str:
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith("/embeddings"):
        endpoint = endpoint[: -len("/embeddings")]
    return endpoint


class HTTPEmbedding(BaseEmbedding):
    """Embedding backend reached with a JSON POST.

    Subclasses define the request payload and how vectors are read from the
    response. Pass ``http_client`` to reuse a client; otherwise one is
    opened per request.
    """

    default_endpoint: Optional[str] = None
    default_model: str = ""
    default_dimensions: int = 768
    default_batch_size: int = 32
    requires_api_key: bool = True

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        api_endpoint: Optional[str] = None,
        dimensions: Optional[int] = None,
        batch_size: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.model = model or self.default_model
        self.api_key = api_key
        self.api_endpoint = api_endpoint or self.default_endpoint
        self._dimensions = dimensions or self.default_dimensions
        self._batch_size = batch_size or self.default_batch_size
        self._http_client = http_client

    @property
    def dimensions(self) -> int:
        return self._dimensions

    @property
    def max_batch_size(self) -> int:
        return self._batch_size

    @abstractmethod
    def _payload(self, texts: list[str]) -> dict[str, Any]:
        """Request body for a batch of texts."""
        pass

    @abstractmethod
    def _parse(self, data: dict[str, Any]) -> list[list[float]]:
        """Vectors from a decoded response body, in input order."""
        pass

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.requires_api_key:
            headers["Authorization"] = f"Bearer {resolve_api_key(self.name, self.api_key)}"
        elif self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> httpx.Response:
        try:
            return await client.post(self.api_endpoint, json=payload, headers=self._headers())
        except httpx.HTTPError as e:
            raise TransportError(self.name, None, str(e)) from e

    async def _embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not self.api_endpoint:
            raise ConfigurationError(f"{self.name} embedding requires an api_endpoint")

        payload = self._payload(texts)
        if self._http_client is not None:
            response = await self._post(self._http_client, payload)
        else:
            async with httpx.AsyncClient(timeout=DEFAULT_TIMEOUT) as client:
                response = await self._post(client, payload)

        if response.status_code >= 400:
            raise TransportError(self.name, response.status_code, response.text)

        try:
            return self._parse(response.json())
        except (ValueError, KeyError, TypeError) as e:
            raise InvalidEmbeddingError(self.name, f"malformed response: {e}") from e

    async def is_available(self) -> bool:
        if not self.requires_api_key:
            return bool(self.api_endpoint)
        return bool(self.api_key or os.environ.get(API_KEY_ENV_VARS.get(self.name, ""), ""))


class VoyageEmbedding(HTTPEmbedding):
    """Voyage AI embedding API."""

    name = "voyage"
    default_endpoint = "https://api.voyageai.com/v1/embeddings"
    default_model = "voyage-2"
    default_dimensions = 1024
    default_batch_size = 128

    def _payload(self, texts: list[str]) -> dict[str, Any]:
        return {"model": self.model, "input": texts}

    def _parse(self, data: dict[str, Any]) -> list[list[float]]:
        return [item["embedding"] for item in data["data"]]


class CohereEmbedding(HTTPEmbedding):
    """Cohere embed API, embedding texts as search documents."""

    name = "cohere"
    default_endpoint = "https://api.cohere.ai/v1/embed"
    default_model = "embed-english-v3.0"
    default_dimensions = 1024
    default_batch_size = 96

    def _payload(self, texts: list[str]) -> dict[str, Any]:
        return {"model": self.model, "texts": texts, "input_type": "search_document"}

    def _parse(self, data: dict[str, Any]) -> list[list[float]]:
        return list(data["embeddings"])


class CustomEmbedding(HTTPEmbedding):
    """Any endpoint accepting ``{"texts": [...]}`` and answering ``{"embeddings": [...]}``.

    Only ``api_endpoint`` is required; the bearer header is sent when a key
    is configured.
    """

    name = "custom"
    default_model = "custom"
    default_dimensions = 768
    default_batch_size = 32
    requires_api_key = False

    def _payload(self, texts: list[str]) -> dict[str, Any]:
        return {"texts": texts}

    def _parse(self, data: dict[str, Any]) -> list[list[float]]:
        return list(data["embeddings"])


def resolve_api_key(provider: str, api_key: Optional[str]) -> str:
    """Return the configured key or the provider's env var.

    Raises:
        ConfigurationError: Neither is set
    """
    if api_key:
        return api_key
    env_var = API_KEY_ENV_VARS.get(provider)
    key = os.environ.get(env_var) if env_var else None
    if not key:
        hint = f" or set {env_var}" if env_var else ""
        raise ConfigurationError(f"{provider} embedding requires an api_key{hint}")
    return key


def create_embedding_provider(
    config: EmbeddingConfig,
    model_loader: Optional[ModelLoader] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> BaseEmbedding:
    """Create an embedding provider from config.

    Construction never checks credentials; a missing key surfaces on the
    first embed call.

    Raises:
        ConfigurationError: Unknown provider name
    """
    if config.provider == "local":
        return LocalEmbedding(
            model_name=config.model or "all-MiniLM-L6-v2",
            dimensions=config.dimensions,
            batch_size=config.batch_size,
            model_loader=model_loader,
            quantized=config.quantized,
        )

    if config.provider == "openai":
        return OpenAIEmbedding(
            model=config.model or "text-embedding-3-small",
            api_key=config.api_key,
            api_endpoint=config.api_endpoint,
            dimensions=config.dimensions,
            batch_size=config.batch_size,
            http_client=http_client,
        )

    provider_class = HTTP_PROVIDERS.get(config.provider)
    if provider_class is None:
        raise ConfigurationError(f"Unknown embedding provider: {config.provider}")

    return provider_class(
        model=config.model,
        api_key=config.api_key,
        api_endpoint=config.api_endpoint,
        dimensions=config.dimensions,
        batch_size=config.batch_size,
        http_client=http_client,
    )


HTTP_PROVIDERS: dict[str, type[HTTPEmbedding]] = {
    "voyage": VoyageEmbedding,
    "cohere": CohereEmbedding,
    "custom": CustomEmbedding,
}


class EmbeddingProviderCache:
    """Memoized embedding provider, owned by whoever builds the pipeline.

    The provider is keyed by (provider, model, api_key, api_endpoint,
    dimensions, quantized); any change in that key builds a new one.
    On-device models are loaded once per (name, quantized) pair and shared
    between provider instances until ``reset()``.
    """

    def __init__(
        self,
        factory: Optional[Callable[..., BaseEmbedding]] = None,
        model_loader: Optional[ModelLoader] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._factory = factory or create_embedding_provider
        self._model_loader = model_loader or load_sentence_transformer
        self._http_client = http_client
        self._provider: Optional[BaseEmbedding] = None
        self._key: Optional[tuple] = None
        self._models: dict[tuple[str, bool], Any] = {}

    def get(self, config: EmbeddingConfig) -> BaseEmbedding:
        key = (
            config.provider,
            config.model,
            config.api_key,
            config.api_endpoint,
            config.dimensions,
            config.quantized,
        )
        if self._provider is None or key != self._key:
            logger.info(f"Creating embedding provider: {config.provider} ({config.model or 'default model'})")
            self._provider = self._factory(
                config,
                model_loader=self._load_local_model,
                http_client=self._http_client,
            )
            self._key = key
        return self._provider

    def reset(self) -> None:
        """Drop the memoized provider and any loaded on-device models."""
        self._provider = None
        self._key = None
        self._models.clear()

    def _load_local_model(self, model_name: str, quantized: bool = True):
        key = (model_name, quantized)
        if key not in self._models:
            self._models[key] = self._model_loader(model_name, quantized=quantized)
        return self._models[key]


def get_available_providers() -> list[str]:
    """Providers usable without further configuration."""
    providers = []
    if importlib.util.find_spec("sentence_transformers") is not None:
        providers.append("local")
    for provider, env_var in API_KEY_ENV_VARS.items():
        if os.environ.get(env_var):
            providers.append(provider)
    return providers


def get_provider_dimensions(provider: str, model: Optional[str] = None) -> int:
    """Default vector length for a provider/model pair."""
    if provider == "local":
        return LocalEmbedding.MODEL_DIMENSIONS.get(model or "all-MiniLM-L6-v2", 384)
    if provider == "openai":
        return OpenAIEmbedding.MODEL_DIMENSIONS.get(model or "text-embedding-3-small", 1536)
    provider_class = HTTP_PROVIDERS.get(provider)
    if provider_class is None:
        raise ConfigurationError(f"Unknown embedding provider: {provider}")
    return provider_class.default_dimensions

