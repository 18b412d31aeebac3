"""
Configuration utilities.
"""

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml

from pydantic import BaseModel

if TYPE_CHECKING:
    from cortexflow.rag.config import RAGConfig

DEFAULT_DATA_DIR = Path.home() / ".cortexflow" / "data"

# Environment variable -> Settings field
ENV_OVERRIDES = {
    "CORTEXFLOW_DATA_DIR": "data_dir",
    "CORTEXFLOW_LOG_LEVEL": "log_level",
    "CORTEXFLOW_ENABLE_FTS": "enable_fts",
    "CORTEXFLOW_EMBEDDING_PROVIDER": "embedding_provider",
    "CORTEXFLOW_EMBEDDING_MODEL": "embedding_model",
    "CORTEXFLOW_EMBEDDING_API_KEY": "embedding_api_key",
    "CORTEXFLOW_EMBEDDING_ENDPOINT": "embedding_endpoint",
}


class Config(BaseModel):
    """Base configuration class."""

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from file (YAML or JSON)."""
        path = Path(path)

        if path.suffix in (".yaml", ".yml"):
            return cls.from_yaml(path)
        elif path.suffix == ".json":
            with open(path) as f:
                data = json.load(f)
            return cls(**data)
        else:
            raise ValueError(f"Unsupported config file format: {path.suffix}")


class Settings(Config):
    """Process-level settings for the retrieval subsystem.

    Everything here is read once at startup. Per-store tunables (chunking,
    search defaults, the active embedding provider) live in the persisted
    RAGConfig; the embedding fields below only seed that record before
    anything has been saved.
    """

    data_dir: Path = DEFAULT_DATA_DIR
    db_filename: str = "rag.sqlite"
    log_level: str = "INFO"
    enable_fts: bool = True

    # Embedding defaults for a fresh store
    embedding_provider: str | None = None
    embedding_model: str | None = None
    embedding_api_key: str | None = None
    embedding_endpoint: str | None = None

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir).expanduser() / self.db_filename

    def default_rag_config(self) -> "RAGConfig":
        """Build the RAGConfig used when the store has none persisted."""
        from cortexflow.rag.config import RAGConfig

        embedding: dict[str, Any] = {}
        if self.embedding_provider:
            embedding["provider"] = self.embedding_provider
        if self.embedding_model:
            embedding["model"] = self.embedding_model
        if self.embedding_api_key:
            embedding["api_key"] = self.embedding_api_key
        if self.embedding_endpoint:
            embedding["api_endpoint"] = self.embedding_endpoint

        return RAGConfig().merged({"embedding": embedding} if embedding else {})


def load_settings(
    path: str | Path | None = None,
    environ: dict[str, str] | None = None,
) -> Settings:
    """
    Load settings from an optional file, then apply environment overrides.

    Args:
        path: Path to a YAML or JSON settings file (skipped if missing)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        Settings instance
    """
    data: dict[str, Any] = {}

    if path is not None and Path(path).exists():
        data = Settings.from_file(path).model_dump(exclude_unset=True)

    env = os.environ if environ is None else environ
    for var, field in ENV_OVERRIDES.items():
        value = env.get(var)
        if value:
            data[field] = value

    return Settings(**data)
