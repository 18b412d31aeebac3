"""
Retrieval-specific exceptions.
"""

from typing import Optional


class RAGError(Exception):
    """Base exception for retrieval subsystem errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        self.code = code
        super().__init__(self.message)


class ConfigurationError(RAGError):
    """Raised when credentials, endpoints or config values are missing or invalid."""

    def __init__(self, message: str):
        super().__init__(message, code="configuration")


class TransportError(RAGError):
    """Raised when an embedding backend answers with a non-success status or cannot be reached."""

    def __init__(self, provider: str, status: Optional[int], body: str):
        self.provider = provider
        self.status = status
        self.body = body
        if status is None:
            message = f"{provider} request failed: {body}"
        else:
            message = f"{provider} API error: {status} - {body}"
        super().__init__(message, code="transport")


class InvalidEmbeddingError(RAGError):
    """Raised when a backend returns vectors that do not match the request."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider} returned invalid embeddings: {message}", code="invalid_embedding")


class UnavailableCapabilityError(RAGError):
    """Raised when an optional capability (e.g. the on-device model) is absent."""

    def __init__(self, capability: str, message: str):
        self.capability = capability
        super().__init__(f"{capability} unavailable: {message}", code="unavailable")


class StoreInitializationError(RAGError):
    """Raised when the persistent store cannot be opened or migrated."""

    def __init__(self, message: str):
        super().__init__(f"Store initialization failed: {message}", code="store_init")
