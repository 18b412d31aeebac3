"""Tests for embedding providers."""

import json

import httpx
import pytest

from cortexflow.rag import (
    BaseEmbedding,
    CohereEmbedding,
    ConfigurationError,
    CustomEmbedding,
    EmbeddingConfig,
    EmbeddingProviderCache,
    InvalidEmbeddingError,
    LocalEmbedding,
    OpenAIEmbedding,
    TransportError,
    UnavailableCapabilityError,
    VoyageEmbedding,
    create_embedding_provider,
    get_available_providers,
    get_provider_dimensions,
)
from cortexflow.rag.embeddings import HTTPEmbedding, quantize_model

from conftest import FakeEmbedding


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class FakeModel:
    """Stand-in for a sentence-transformers model."""

    def __init__(self, dimensions: int = 3):
        self.dimensions = dimensions
        self.encoded: list[list[str]] = []

    def encode(self, texts, normalize_embeddings=False, convert_to_numpy=False):
        self.encoded.append(list(texts))
        return [[1.0] + [0.0] * (self.dimensions - 1) for _ in texts]


class CountingLoader:
    """Model loader that records every load."""

    def __init__(self):
        self.loaded: list[str] = []
        self.quantized: list[bool] = []

    def __call__(self, model_name: str, quantized: bool = True) -> FakeModel:
        self.loaded.append(model_name)
        self.quantized.append(quantized)
        return FakeModel()


class TestBaseEmbedding:
    """Tests for batching and validation shared by all providers."""

    @pytest.mark.asyncio
    async def test_batches_are_sequential_and_ordered(self):
        """Test embed_batch splits at max_batch_size and preserves order."""
        embedding = FakeEmbedding(batch_size=2)
        texts = ["python", "database", "migration", "cooking", "recipe"]

        vectors = await embedding.embed_batch(texts)

        assert embedding.calls == [["python", "database"], ["migration", "cooking"], ["recipe"]]
        assert vectors == [embedding.vectorize(text) for text in texts]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        """Test that embedding nothing makes no requests."""
        embedding = FakeEmbedding()
        assert await embedding.embed_batch([]) == []
        assert embedding.calls == []

    @pytest.mark.asyncio
    async def test_wrong_vector_count(self):
        """Test a response with too few vectors is rejected."""

        class ShortEmbedding(FakeEmbedding):
            async def _embed_texts(self, texts):
                return [self.vectorize(texts[0])]

        with pytest.raises(InvalidEmbeddingError):
            await ShortEmbedding().embed_batch(["a", "b"])

    @pytest.mark.asyncio
    async def test_wrong_dimensions(self):
        """Test vectors of the wrong length are rejected."""

        class NarrowEmbedding(FakeEmbedding):
            async def _embed_texts(self, texts):
                return [[1.0] for _ in texts]

        with pytest.raises(InvalidEmbeddingError):
            await NarrowEmbedding().embed("python")


class TestLocalEmbedding:
    """Tests for the on-device provider."""

    @pytest.mark.asyncio
    async def test_model_loaded_once(self):
        """Test the model is loaded lazily and reused."""
        loader = CountingLoader()
        embedding = LocalEmbedding(dimensions=3, model_loader=loader)
        assert loader.loaded == []

        await embedding.embed("one")
        vectors = await embedding.embed_batch(["two", "three"])

        assert loader.loaded == ["all-MiniLM-L6-v2"]
        assert vectors == [[1.0, 0.0, 0.0], [1.0, 0.0, 0.0]]

    @pytest.mark.asyncio
    async def test_unavailable_library(self):
        """Test a missing model library degrades to unavailable."""

        def missing(model_name, quantized=True):
            raise UnavailableCapabilityError("local embedding", "not installed")

        embedding = LocalEmbedding(model_loader=missing)

        assert await embedding.is_available() is False
        with pytest.raises(UnavailableCapabilityError):
            await embedding.embed("text")

    def test_defaults(self):
        """Test default dimensions and batch size."""
        embedding = LocalEmbedding()
        assert embedding.dimensions == 384
        assert embedding.max_batch_size == 32

    @pytest.mark.asyncio
    async def test_quantized_by_default(self):
        """Test the model is requested with int8 quantization unless disabled."""
        loader = CountingLoader()
        await LocalEmbedding(dimensions=3, model_loader=loader).embed("a")
        await LocalEmbedding(dimensions=3, model_loader=loader, quantized=False).embed("b")

        assert loader.quantized == [True, False]

    @pytest.mark.asyncio
    async def test_factory_passes_quantized_flag(self):
        """Test EmbeddingConfig.quantized reaches the model loader."""
        loader = CountingLoader()
        embedding = create_embedding_provider(
            EmbeddingConfig(provider="local", quantized=False, dimensions=3),
            model_loader=loader,
        )

        await embedding.embed("a")

        assert embedding.quantized is False
        assert loader.quantized == [False]

    def test_quantize_model_replaces_linear_layers(self):
        """Test linear layers become int8 dynamically quantized layers."""
        torch = pytest.importorskip("torch")
        model = torch.nn.Sequential(torch.nn.Linear(4, 2))

        quantized = quantize_model(model)

        assert isinstance(quantized[0], torch.ao.nn.quantized.dynamic.Linear)
        assert quantized(torch.ones(1, 4)).shape == (1, 2)


class TestHTTPEmbeddings:
    """Tests for the Voyage, Cohere and custom endpoint providers."""

    @pytest.mark.asyncio
    async def test_voyage_request_shape(self):
        """Test Voyage sends model and input and reads data[].embedding."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            body = json.loads(request.content)
            return httpx.Response(200, json={"data": [{"embedding": [0.5, 0.5]} for _ in body["input"]]})

        embedding = VoyageEmbedding(api_key="vk", dimensions=2, http_client=mock_client(handler))
        vectors = await embedding.embed_batch(["a", "b"])

        assert vectors == [[0.5, 0.5], [0.5, 0.5]]
        assert str(requests[0].url) == "https://api.voyageai.com/v1/embeddings"
        assert requests[0].headers["Authorization"] == "Bearer vk"
        assert json.loads(requests[0].content) == {"model": "voyage-2", "input": ["a", "b"]}

    @pytest.mark.asyncio
    async def test_cohere_request_shape(self):
        """Test Cohere embeds texts as search documents."""
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            return httpx.Response(200, json={"embeddings": [[1.0, 0.0] for _ in body["texts"]]})

        embedding = CohereEmbedding(api_key="ck", dimensions=2, http_client=mock_client(handler))
        await embedding.embed("hello")

        assert bodies == [{"model": "embed-english-v3.0", "texts": ["hello"], "input_type": "search_document"}]

    @pytest.mark.asyncio
    async def test_custom_endpoint_without_key(self):
        """Test the custom provider needs only an endpoint and omits the auth header."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"embeddings": [[0.1, 0.2, 0.3]]})

        embedding = CustomEmbedding(
            api_endpoint="http://embedder.local/embed",
            dimensions=3,
            http_client=mock_client(handler),
        )

        assert await embedding.is_available() is True
        assert await embedding.embed("hi") == [0.1, 0.2, 0.3]
        assert "Authorization" not in requests[0].headers
        assert json.loads(requests[0].content) == {"texts": ["hi"]}

    @pytest.mark.asyncio
    async def test_custom_endpoint_required(self):
        """Test a custom provider without endpoint fails at call time."""
        embedding = CustomEmbedding()

        assert await embedding.is_available() is False
        with pytest.raises(ConfigurationError):
            await embedding.embed("hi")

    @pytest.mark.asyncio
    async def test_error_status_carries_body(self):
        """Test non-success responses raise with status and body."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="rate limited")

        embedding = VoyageEmbedding(api_key="vk", http_client=mock_client(handler))

        with pytest.raises(TransportError) as exc_info:
            await embedding.embed("a")

        assert exc_info.value.status == 429
        assert exc_info.value.body == "rate limited"
        assert "429" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_network_failure(self):
        """Test connection errors raise TransportError without status."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        embedding = CohereEmbedding(api_key="ck", http_client=mock_client(handler))

        with pytest.raises(TransportError) as exc_info:
            await embedding.embed("a")
        assert exc_info.value.status is None

    @pytest.mark.asyncio
    async def test_malformed_response(self):
        """Test a response without vectors is rejected."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"unexpected": True})

        embedding = VoyageEmbedding(api_key="vk", http_client=mock_client(handler))

        with pytest.raises(InvalidEmbeddingError):
            await embedding.embed("a")

    @pytest.mark.asyncio
    async def test_missing_key_raises_at_call_time(self, monkeypatch):
        """Test construction succeeds without a key but embedding does not."""
        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
        embedding = VoyageEmbedding()

        assert await embedding.is_available() is False
        with pytest.raises(ConfigurationError):
            await embedding.embed("a")

    @pytest.mark.asyncio
    async def test_key_from_environment(self, monkeypatch):
        """Test the provider's env var is used when no key is configured."""
        monkeypatch.setenv("VOYAGE_API_KEY", "from-env")
        headers = []

        def handler(request: httpx.Request) -> httpx.Response:
            headers.append(request.headers["Authorization"])
            return httpx.Response(200, json={"data": [{"embedding": [1.0] * 1024}]})

        embedding = VoyageEmbedding(http_client=mock_client(handler))
        await embedding.embed("a")

        assert await embedding.is_available() is True
        assert headers == ["Bearer from-env"]

    def test_base_requires_payload_and_parse(self):
        """Test a backend that omits the request/response hooks cannot be built."""
        with pytest.raises(TypeError):
            HTTPEmbedding()

        class PayloadOnly(HTTPEmbedding):
            def _payload(self, texts):
                return {"texts": texts}

        with pytest.raises(TypeError):
            PayloadOnly()


class TestOpenAIEmbedding:
    """Tests for the OpenAI provider."""

    @pytest.mark.asyncio
    async def test_embeddings_sorted_by_index(self):
        """Test response items are returned in input order."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={
                "object": "list",
                "data": [
                    {"object": "embedding", "index": 1, "embedding": [0.0, 1.0, 0.0]},
                    {"object": "embedding", "index": 0, "embedding": [1.0, 0.0, 0.0]},
                ],
                "model": "text-embedding-3-small",
                "usage": {"prompt_tokens": 2, "total_tokens": 2},
            })

        embedding = OpenAIEmbedding(api_key="sk-test", dimensions=3, http_client=mock_client(handler))
        vectors = await embedding.embed_batch(["a", "b"])

        assert vectors == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]
        assert str(requests[0].url) == "https://api.openai.com/v1/embeddings"
        assert json.loads(requests[0].content)["input"] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_endpoint_override(self):
        """Test a full embeddings URL is accepted as endpoint override."""
        urls = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, json={
                "object": "list",
                "data": [{"object": "embedding", "index": 0, "embedding": [1.0, 0.0]}],
                "model": "local-model",
                "usage": {"prompt_tokens": 1, "total_tokens": 1},
            })

        embedding = OpenAIEmbedding(
            api_key="sk-test",
            api_endpoint="http://localhost:8080/v1/embeddings",
            dimensions=2,
            http_client=mock_client(handler),
        )
        await embedding.embed("a")

        assert urls == ["http://localhost:8080/v1/embeddings"]

    @pytest.mark.asyncio
    async def test_error_status(self):
        """Test API errors map to TransportError without retries."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500, json={"error": {"message": "boom"}})

        embedding = OpenAIEmbedding(api_key="sk-test", http_client=mock_client(handler))

        with pytest.raises(TransportError) as exc_info:
            await embedding.embed("a")

        assert exc_info.value.status == 500
        assert "boom" in exc_info.value.body
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_configured_dimensions_sent_to_api(self):
        """Test shortened embeddings are requested when dimensions are configured."""
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            bodies.append(body)
            size = body.get("dimensions", 1536)
            return httpx.Response(200, json={
                "object": "list",
                "data": [{"object": "embedding", "index": 0, "embedding": [0.0] * size}],
                "model": body["model"],
                "usage": {"prompt_tokens": 1, "total_tokens": 1},
            })

        embedding = create_embedding_provider(
            EmbeddingConfig(provider="openai", api_key="sk-test", dimensions=512),
            http_client=mock_client(handler),
        )

        assert len(await embedding.embed("hello")) == 512
        assert bodies[0]["dimensions"] == 512

    @pytest.mark.asyncio
    async def test_dimensions_omitted_when_not_configured(self):
        """Test the model default is used without a dimensions override."""
        bodies = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={
                "object": "list",
                "data": [{"object": "embedding", "index": 0, "embedding": [0.0] * 1536}],
                "model": "text-embedding-ada-002",
                "usage": {"prompt_tokens": 1, "total_tokens": 1},
            })

        default = OpenAIEmbedding(api_key="sk-test", http_client=mock_client(handler))
        ada = OpenAIEmbedding(
            model="text-embedding-ada-002",
            api_key="sk-test",
            dimensions=1536,
            http_client=mock_client(handler),
        )
        await default.embed("a")
        await ada.embed("b")

        assert "dimensions" not in bodies[0]
        assert "dimensions" not in bodies[1]

    @pytest.mark.asyncio
    async def test_missing_key(self, monkeypatch):
        """Test a missing key raises ConfigurationError on first use."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        embedding = OpenAIEmbedding()

        assert await embedding.is_available() is False
        with pytest.raises(ConfigurationError):
            await embedding.embed("a")


class TestProviderFactory:
    """Tests for create_embedding_provider and helpers."""

    @pytest.mark.parametrize(
        "provider, expected",
        [
            ("local", LocalEmbedding),
            ("openai", OpenAIEmbedding),
            ("voyage", VoyageEmbedding),
            ("cohere", CohereEmbedding),
            ("custom", CustomEmbedding),
        ],
    )
    def test_provider_selection(self, provider, expected):
        """Test each provider name maps to its implementation."""
        embedding = create_embedding_provider(EmbeddingConfig(provider=provider))

        assert isinstance(embedding, expected)
        assert isinstance(embedding, BaseEmbedding)
        assert embedding.name == provider

    def test_config_overrides(self):
        """Test model, dimensions and batch size come from config."""
        embedding = create_embedding_provider(
            EmbeddingConfig(provider="cohere", model="embed-multilingual-v3.0", dimensions=768, batch_size=10)
        )

        assert embedding.model == "embed-multilingual-v3.0"
        assert embedding.dimensions == 768
        assert embedding.max_batch_size == 10

    def test_unknown_provider(self):
        """Test an unknown provider name is a configuration error."""
        config = EmbeddingConfig.model_construct(provider="bogus")
        with pytest.raises(ConfigurationError):
            create_embedding_provider(config)

    def test_provider_dimensions(self):
        """Test default dimensions per provider and model."""
        assert get_provider_dimensions("local") == 384
        assert get_provider_dimensions("openai", "text-embedding-3-large") == 3072
        assert get_provider_dimensions("voyage") == 1024
        assert get_provider_dimensions("cohere") == 1024
        assert get_provider_dimensions("custom") == 768

    def test_available_providers(self, monkeypatch):
        """Test remote providers are listed when their key is set."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk")
        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
        monkeypatch.delenv("COHERE_API_KEY", raising=False)

        providers = get_available_providers()

        assert "openai" in providers
        assert "voyage" not in providers
        assert "cohere" not in providers


class TestEmbeddingProviderCache:
    """Tests for the provider memo."""

    def test_same_key_reuses_provider(self):
        """Test an unchanged config returns the same instance."""
        cache = EmbeddingProviderCache()
        config = EmbeddingConfig(provider="voyage", api_key="a")

        assert cache.get(config) is cache.get(config.model_copy())

    def test_changed_key_rebuilds_provider(self):
        """Test any change in provider, model, key or endpoint rebuilds."""
        cache = EmbeddingProviderCache()
        first = cache.get(EmbeddingConfig(provider="voyage", api_key="a"))

        assert cache.get(EmbeddingConfig(provider="voyage", api_key="b")) is not first
        assert cache.get(EmbeddingConfig(provider="cohere", api_key="b")).name == "cohere"

    @pytest.mark.asyncio
    async def test_reset_clears_loaded_models(self):
        """Test local models are shared until reset."""
        loader = CountingLoader()
        cache = EmbeddingProviderCache(model_loader=loader)

        await cache.get(EmbeddingConfig(provider="local", dimensions=3)).embed("a")
        await cache.get(EmbeddingConfig(provider="local", dimensions=3, api_key="x")).embed("b")
        assert loader.loaded == ["all-MiniLM-L6-v2"]

        first = cache.get(EmbeddingConfig(provider="local", dimensions=3, api_key="x"))
        cache.reset()
        second = cache.get(EmbeddingConfig(provider="local", dimensions=3, api_key="x"))
        await second.embed("c")

        assert second is not first
        assert loader.loaded == ["all-MiniLM-L6-v2", "all-MiniLM-L6-v2"]

    @pytest.mark.asyncio
    async def test_quantized_and_full_models_kept_apart(self):
        """Test toggling quantization rebuilds the provider and loads the other model."""
        loader = CountingLoader()
        cache = EmbeddingProviderCache(model_loader=loader)

        quantized = cache.get(EmbeddingConfig(provider="local", dimensions=3))
        await quantized.embed("a")
        full = cache.get(EmbeddingConfig(provider="local", dimensions=3, quantized=False))
        await full.embed("b")
        await cache.get(EmbeddingConfig(provider="local", dimensions=3)).embed("c")

        assert full is not quantized
        assert loader.quantized == [True, False]
