"""Embedding Provider Abstraction for multiple backends (Ollama, OpenAI)."""

from __future__ import annotations

import asyncio
import base64
import logging
import math
import os
import struct
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds


def serialize_f32(vector: list[float]) -> bytes:
    """Serialize a list of floats into bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def deserialize_f32(blob: bytes) -> list[float]:
    """Inverse of serialize_f32."""
    return list(struct.unpack(f"{len(blob) // 4}f", blob))


def normalize(vector: list[float]) -> list[float]:
    """Scale a vector to unit length. Zero vectors are returned unchanged."""
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return list(vector)
    return [v / norm for v in vector]


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int
    max_tokens: int  # Max input tokens
    description: str


OLLAMA_MODELS: dict[str, ModelInfo] = {
    "bge-m3": ModelInfo(
        model_id="bge-m3",
        dimensions=1024,
        max_tokens=8192,
        description="BAAI BGE-M3, multilingual, long context. Default for narratives.",
    ),
    "mxbai-embed-large": ModelInfo(
        model_id="mxbai-embed-large",
        dimensions=1024,
        max_tokens=512,
        description="Good quality, 1024 dimensions, short context.",
    ),
    "nomic-embed-text": ModelInfo(
        model_id="nomic-embed-text",
        dimensions=768,
        max_tokens=8192,
        description="Compact local model.",
    ),
}

# text-embedding-3 models accept a `dimensions` request parameter, so the
# listed value is only the native size.
OPENAI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-3-small": ModelInfo(
        model_id="text-embedding-3-small",
        dimensions=1536,
        max_tokens=8191,
        description="Hosted, cheap, shortened to the configured dimension.",
    ),
    "text-embedding-3-large": ModelInfo(
        model_id="text-embedding-3-large",
        dimensions=3072,
        max_tokens=8191,
        description="Hosted, highest precision.",
    ),
}


class EmbeddingError(Exception):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class DimensionMismatchError(EmbeddingError):
    """Provider returned vectors of the wrong shape. Never retriable."""

    def __init__(self, message: str, provider: str, expected: int, actual: int):
        super().__init__(message, provider=provider, retriable=False)
        self.expected = expected
        self.actual = actual


def validate_vectors(
    vectors: list[list[float]],
    expected_count: int,
    dimensions: int,
    provider: str,
) -> None:
    """Check count and exact dimension of a provider response.

    Raises:
        DimensionMismatchError: On any count or length mismatch.
    """
    if len(vectors) != expected_count:
        raise DimensionMismatchError(
            f"Embedding count mismatch: expected {expected_count}, got {len(vectors)}",
            provider=provider,
            expected=expected_count,
            actual=len(vectors),
        )
    for i, vector in enumerate(vectors):
        if vector is None or len(vector) != dimensions:
            actual = 0 if vector is None else len(vector)
            raise DimensionMismatchError(
                f"Embedding {i} has {actual} dimensions, expected {dimensions}",
                provider=provider,
                expected=dimensions,
                actual=actual,
            )


@dataclass
class HealthCheckResult:
    """Result of a provider health check."""

    healthy: bool
    provider: str
    model: str
    message: str
    latency_ms: int | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "provider": self.provider,
            "model": self.model,
            "message": self.message,
            "latency_ms": self.latency_ms,
            "details": self.details,
        }


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g., 'Ollama', 'OpenAI')."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """The model identifier being used."""
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        """Embedding vector dimensions."""
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for a list of texts.

        Args:
            texts: List of texts to embed.

        Returns:
            List of embedding vectors in the same order as input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_single(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        result = await self.embed([text])
        return result[0]

    async def health_check(self) -> HealthCheckResult:
        """Embed a probe string and report latency and shape."""
        start = time.monotonic()
        try:
            vector = await self.embed_single("health check")
            latency_ms = int((time.monotonic() - start) * 1000)
            if len(vector) != self.dimensions:
                return HealthCheckResult(
                    healthy=False,
                    provider=self.name,
                    model=self.model_id,
                    message=f"Dimension mismatch: got {len(vector)}, expected {self.dimensions}",
                    latency_ms=latency_ms,
                )
            return HealthCheckResult(
                healthy=True,
                provider=self.name,
                model=self.model_id,
                message="Connected",
                latency_ms=latency_ms,
                details={"dimensions": self.dimensions},
            )

        except EmbeddingError as e:
            return HealthCheckResult(
                healthy=False,
                provider=self.name,
                model=self.model_id,
                message=str(e),
                details={"retriable": e.retriable},
            )


class OllamaProvider(EmbeddingProvider):
    """Ollama embedding provider for local models."""

    def __init__(
        self,
        model: str = "bge-m3",
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        """Initialize Ollama provider.

        Args:
            model: Model ID from OLLAMA_MODELS.
            base_url: Ollama server URL. Falls back to OLLAMA_BASE_URL env var or localhost.
            timeout: Per-request timeout in seconds.
        """
        if model not in OLLAMA_MODELS:
            raise ValueError(f"Unknown Ollama model: {model}. Available: {list(OLLAMA_MODELS.keys())}")

        self._model = model
        self._model_info = OLLAMA_MODELS[model]
        self._base_url = (base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")).rstrip("/")
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "Ollama"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._model_info.dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Get embeddings for multiple texts via the batch /api/embed endpoint."""
        if not texts:
            return []

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(
                    f"{self._base_url}/api/embed",
                    json={
                        "model": self._model,
                        "input": texts,
                    },
                )
                response.raise_for_status()
                data = response.json()

            except httpx.ConnectError as e:
                raise EmbeddingError(
                    f"Ollama not reachable at {self._base_url}",
                    provider=self.name,
                    retriable=True,
                ) from e

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"Ollama request timed out after {self._timeout:.0f}s",
                    provider=self.name,
                    retriable=True,
                ) from e

            except httpx.HTTPStatusError as e:
                if e.response.status_code == 404:
                    raise EmbeddingError(
                        f"Model '{self._model}' not found. Run 'ollama pull {self._model}'.",
                        provider=self.name,
                        retriable=False,
                    ) from e
                raise EmbeddingError(
                    f"Ollama error: {e.response.status_code} - {e.response.text}",
                    provider=self.name,
                    retriable=e.response.status_code >= 500,
                ) from e

        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise EmbeddingError(
                "Ollama response did not contain an 'embeddings' list",
                provider=self.name,
                retriable=False,
            )
        return embeddings


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embedding provider using the API."""

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        api_key: str | None = None,
        timeout: float = 120.0,
    ):
        """Initialize OpenAI provider.

        Args:
            model: Model ID (text-embedding-3-small or text-embedding-3-large).
            dimensions: Requested output size. Defaults to the model's native size.
            api_key: Optional API key. Falls back to OPENAI_API_KEY env var.
            timeout: Per-request timeout in seconds.
        """
        if model not in OPENAI_MODELS:
            raise ValueError(f"Unknown OpenAI model: {model}. Available: {list(OPENAI_MODELS.keys())}")

        self._model = model
        self._model_info = OPENAI_MODELS[model]
        self._dimensions = dimensions or self._model_info.dimensions
        if self._dimensions > self._model_info.dimensions:
            raise ValueError(
                f"{model} supports at most {self._model_info.dimensions} dimensions, got {self._dimensions}"
            )
        self._api_key = api_key or os.getenv("OPENAI_API_KEY", "").strip()
        self._max_chars = 20000  # ~5000 tokens, safe for 8192 limit with variable tokenization
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "OpenAI"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Get embeddings for multiple texts in a single API call.

        Rate limits (429) are retried here with exponential backoff; any other
        HTTP error is surfaced as a non-retriable EmbeddingError.
        """
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError(
                "OPENAI_API_KEY not set",
                provider=self.name,
                retriable=False,
            )

        truncated = [t[: self._max_chars] if len(t) > self._max_chars else t for t in texts]

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            delay = INITIAL_DELAY
            last_error: Exception | None = None

            for attempt in range(MAX_RETRIES):
                try:
                    response = await client.post(
                        "https://api.openai.com/v1/embeddings",
                        headers={
                            "Authorization": f"Bearer {self._api_key}",
                            "Content-Type": "application/json",
                        },
                        json={
                            "model": self._model,
                            "input": truncated,
                            "dimensions": self._dimensions,
                            "encoding_format": "base64",
                        },
                    )
                    response.raise_for_status()
                    data = response.json()

                    # API returns embeddings in order, but let's be safe
                    embeddings: list[list[float] | None] = [None] * len(texts)
                    for item in data["data"]:
                        embedding = item["embedding"]
                        if isinstance(embedding, str):
                            embedding = deserialize_f32(base64.b64decode(embedding))
                        embeddings[item["index"]] = embedding

                    return embeddings  # type: ignore

                except httpx.TimeoutException as e:
                    raise EmbeddingError(
                        f"OpenAI request timed out after {self._timeout:.0f}s",
                        provider=self.name,
                        retriable=True,
                    ) from e

                except httpx.HTTPStatusError as e:
                    last_error = e
                    if e.response.status_code == 429:
                        if "quota" in e.response.text.lower():
                            raise EmbeddingError(
                                "OpenAI quota exhausted",
                                provider=self.name,
                                retriable=False,
                            ) from e

                        logger.warning(
                            f"Rate limit hit, attempt {attempt + 1}/{MAX_RETRIES}. " f"Waiting {delay:.1f}s..."
                        )
                        await asyncio.sleep(delay)
                        delay = min(delay * 2, MAX_DELAY)
                    elif e.response.status_code == 401:
                        raise EmbeddingError(
                            "OpenAI API key invalid",
                            provider=self.name,
                            retriable=False,
                        ) from e
                    else:
                        raise EmbeddingError(
                            f"OpenAI API error: {e.response.status_code} - {e.response.text}",
                            provider=self.name,
                            retriable=e.response.status_code >= 500,
                        ) from e

            # All retries exhausted
            raise EmbeddingError(
                f"Rate limit not cleared after {MAX_RETRIES} attempts",
                provider=self.name,
                retriable=True,
            ) from last_error


def get_provider(
    provider_name: str = "ollama",
    model: str | None = None,
    dimensions: int | None = None,
) -> EmbeddingProvider:
    """Factory function to get an embedding provider.

    Args:
        provider_name: 'ollama' or 'openai'
        model: Optional model ID. Uses default if not specified.
        dimensions: Requested vector size (OpenAI only; Ollama models are fixed).

    Returns:
        Configured EmbeddingProvider instance.

    Raises:
        ValueError: If provider or model is unknown.
    """
    provider_name = provider_name.lower()

    if provider_name == "ollama":
        return OllamaProvider(model=model or "bge-m3")

    elif provider_name == "openai":
        return OpenAIProvider(model=model or "text-embedding-3-small", dimensions=dimensions)

    else:
        raise ValueError(f"Unknown provider: {provider_name}. Available: ollama, openai")
