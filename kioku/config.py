"""Kioku configuration management."""

import json
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfigError
from .memory.embeddings import DEFAULT_EMBEDDING_MODEL, EmbeddingProviderKind, get_embedding_dimension
from .memory.search import SearchConfig
from .memory.store import DEFAULT_EMBEDDING_DIM, StoreBackend
from .xdg import get_xdg_config_path

STRATEGY_NAMES = ("recent", "semantic", "preferences")


class StoreConfig(BaseModel):
    """Which backend holds memory entries, and how it searches."""

    model_config = ConfigDict(extra="forbid")

    backend: StoreBackend = StoreBackend.MEMORY
    path: Optional[Path] = None
    table_name: str = "memories"
    embedding_dim: int = Field(default=DEFAULT_EMBEDDING_DIM, ge=1)
    search: SearchConfig = Field(default_factory=SearchConfig)


class EmbeddingConfig(BaseModel):
    """Embedding provider settings."""

    model_config = ConfigDict(extra="forbid")

    provider: EmbeddingProviderKind = EmbeddingProviderKind.FASTEMBED
    model: str = DEFAULT_EMBEDDING_MODEL
    dimension: Optional[int] = Field(default=None, ge=1)
    api_base: Optional[str] = None
    batch_size: int = Field(default=32, ge=1)


class ContextConfig(BaseModel):
    """Context assembly settings."""

    model_config = ConfigDict(extra="forbid")

    recent_limit: int = Field(default=10, ge=0)
    semantic_limit: int = Field(default=5, ge=0)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)
    token_budget: int = Field(default=4096, ge=1)
    max_preferences: int = Field(default=10, ge=1)
    strategies: List[str] = Field(default_factory=lambda: list(STRATEGY_NAMES))
    system_message: Optional[str] = None

    @field_validator("strategies")
    @classmethod
    def _known_strategies(cls, value: List[str]) -> List[str]:
        unknown = [name for name in value if name not in STRATEGY_NAMES]
        if unknown:
            raise ValueError(f"Unknown strategies {unknown}; expected any of {list(STRATEGY_NAMES)}")
        return value


class Config(BaseModel):
    """Kioku configuration."""

    model_config = ConfigDict(
        extra="allow",
        str_strip_whitespace=True,
    )

    store: StoreConfig = Field(default_factory=StoreConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)

    @model_validator(mode="after")
    def _embedding_fits_store(self) -> "Config":
        # Models missing from the dimension table without an explicit dimension pass unchecked
        dimension = self.embedding.dimension or get_embedding_dimension(self.embedding.model)
        if dimension is not None and dimension != self.store.embedding_dim:
            raise ValueError(
                f"Embedding model {self.embedding.model!r} produces {dimension}-dimensional vectors "
                f"but store.embedding_dim is {self.store.embedding_dim}"
            )
        return self


def get_config_path() -> Path:
    return get_xdg_config_path("config.json")


def load_config(path: Optional[Path] = None) -> Config:
    """Load Kioku configuration from JSON file.

    Args:
        path: Path to config.json file. If None, uses default path

    Returns:
        Config object with loaded settings. Returns default config if file doesn't exist.

    Raises:
        ConfigError: If the file exists but is not valid JSON or fails validation
    """
    if path is None:
        path = get_config_path()

    if not path.exists():
        return Config()

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Failed to parse config at {path}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config at {path}: {e}") from e

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config at {path}: {e}") from e


def save_config(config: Config, path: Optional[Path] = None) -> None:
    """Save Kioku configuration to JSON file.

    Args:
        config: Config object to save
        path: Path to config.json file. If None, uses default path

    Raises:
        IOError: If file cannot be written
    """
    if path is None:
        path = get_config_path()

    path.parent.mkdir(parents=True, exist_ok=True)

    # Exclude None values for cleaner output
    config_data = config.model_dump(exclude_none=True, mode="json")

    with open(path, "w", encoding="utf-8") as f:
        json.dump(config_data, f, indent=2)
