"""Embedding providers for the memory system.

Two implementations are available: a local ``fastembed`` model (the default,
no network needed once the model is cached) and remote embedding APIs through
``litellm``. Every failure surfaces as :class:`EmbeddingUnavailableError` so
callers can degrade instead of crashing.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional

from kioku.exceptions import EmbeddingUnavailableError

if TYPE_CHECKING:
    from kioku.config import EmbeddingConfig

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_MODEL = "BAAI/bge-small-en-v1.5"

# Known dimensions to avoid loading a model just to size a column
KNOWN_DIMENSIONS = {
    "BAAI/bge-small-en-v1.5": 384,
    "all-MiniLM-L6-v2": 384,
    "sentence-transformers/all-MiniLM-L6-v2": 384,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class EmbeddingProviderKind(str, Enum):
    """Which embedding implementation to construct."""

    FASTEMBED = "fastembed"
    LITELLM = "litellm"


def get_embedding_dimension(model_name: str = DEFAULT_EMBEDDING_MODEL) -> Optional[int]:
    """Get the embedding dimension for a well-known model.

    Provider prefixes such as ``openai/`` are ignored.

    Returns:
        The dimension, or None when the model is not in the table
    """
    if model_name in KNOWN_DIMENSIONS:
        return KNOWN_DIMENSIONS[model_name]
    bare = model_name.split("/", 1)[-1]
    return KNOWN_DIMENSIONS.get(bare)


class EmbeddingProvider(ABC):
    """Turns text into fixed-length vectors."""

    name = "abstract"

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Length of every vector this provider returns."""
        pass

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed a single text.

        Raises:
            EmbeddingUnavailableError: If the provider cannot produce a vector
        """
        pass

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed several texts, preserving order.

        The default implementation embeds one at a time.
        """
        return [await self.embed(text) for text in texts]


class FastEmbedProvider(EmbeddingProvider):
    """Local embeddings with fastembed. The model loads on first use."""

    name = "fastembed"

    def __init__(self, model_name: str = DEFAULT_EMBEDDING_MODEL, dimension: Optional[int] = None):
        self.model_name = model_name
        self._dimension = dimension or get_embedding_dimension(model_name)
        self._model = None
        self._load_lock = threading.Lock()

    def _get_model(self):
        with self._load_lock:
            if self._model is None:
                try:
                    from fastembed import TextEmbedding
                except ImportError as e:
                    raise EmbeddingUnavailableError(
                        "fastembed is required for local embeddings. Install with: pip install 'kioku[local]'",
                        provider=self.name,
                    ) from e

                logger.info(f"Loading embedding model {self.model_name}")
                self._model = TextEmbedding(model_name=self.model_name)
            return self._model

    def _embed_sync(self, texts: List[str]) -> List[List[float]]:
        model = self._get_model()
        try:
            vectors = [vector.tolist() for vector in model.embed(texts)]
        except Exception as e:
            raise EmbeddingUnavailableError(f"fastembed failed: {e}", provider=self.name) from e
        if vectors and self._dimension is None:
            self._dimension = len(vectors[0])
        return vectors

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            # Unknown model: size it with a probe embedding
            self._embed_sync(["dimension probe"])
        return self._dimension

    async def embed(self, text: str) -> List[float]:
        vectors = await asyncio.to_thread(self._embed_sync, [text])
        return vectors[0]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._embed_sync, list(texts))


class LiteLLMEmbeddingProvider(EmbeddingProvider):
    """Remote embeddings through litellm (OpenAI, Azure, Ollama, ...)."""

    name = "litellm"

    def __init__(
        self,
        model_name: str = "text-embedding-3-small",
        dimension: Optional[int] = None,
        api_base: Optional[str] = None,
    ):
        self.model_name = model_name
        self.api_base = api_base
        self._dimension = dimension or get_embedding_dimension(model_name)

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            raise EmbeddingUnavailableError(
                f"Unknown embedding dimension for {self.model_name}; set it in the configuration",
                provider=self.name,
            )
        return self._dimension

    @staticmethod
    def _extract_vectors(response: Any) -> List[List[float]]:
        data = response["data"] if isinstance(response, dict) else response.data
        items = []
        for position, item in enumerate(data):
            if isinstance(item, dict):
                items.append((item.get("index", position), item["embedding"]))
            else:
                items.append((getattr(item, "index", position), item.embedding))
        items.sort(key=lambda pair: pair[0])
        return [[float(x) for x in vector] for _, vector in items]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            from litellm import aembedding
        except ImportError as e:
            raise EmbeddingUnavailableError("litellm is required for remote embeddings", provider=self.name) from e

        params = {"model": self.model_name, "input": list(texts)}
        if self.api_base:
            params["api_base"] = self.api_base

        try:
            response = await aembedding(**params)
            vectors = self._extract_vectors(response)
        except Exception as e:
            raise EmbeddingUnavailableError(
                f"Embedding request to {self.model_name} failed: {e}", provider=self.name
            ) from e

        if len(vectors) != len(texts):
            raise EmbeddingUnavailableError(
                f"Expected {len(texts)} embeddings from {self.model_name}, got {len(vectors)}", provider=self.name
            )
        if vectors and self._dimension is None:
            self._dimension = len(vectors[0])
        return vectors

    async def embed(self, text: str) -> List[float]:
        vectors = await self.embed_batch([text])
        return vectors[0]


def create_embedding_provider(config: "EmbeddingConfig") -> EmbeddingProvider:
    """Construct the provider named by the configuration."""
    kind = EmbeddingProviderKind(config.provider)
    if kind == EmbeddingProviderKind.FASTEMBED:
        return FastEmbedProvider(model_name=config.model, dimension=config.dimension)
    if kind == EmbeddingProviderKind.LITELLM:
        return LiteLLMEmbeddingProvider(model_name=config.model, dimension=config.dimension, api_base=config.api_base)
    raise ValueError(f"Unsupported embedding provider: {kind}")
