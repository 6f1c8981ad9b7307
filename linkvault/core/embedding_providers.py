"""Embedding Provider Abstraction: remote OpenAI backend and a local deterministic fallback."""

from __future__ import annotations

import asyncio
import base64
import logging
import math
import re
import struct
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx

from linkvault.core.embeddings import DEFAULT_DIMENSIONS

if TYPE_CHECKING:
    from linkvault.core.settings import Settings

logger = logging.getLogger(__name__)

# Retry settings for rate limits
MAX_RETRIES = 5
INITIAL_DELAY = 2.0  # seconds
MAX_DELAY = 60.0  # seconds

# Whole embed call, rate-limit waits included, is aborted after this
EMBEDDING_TIMEOUT = 60.0

# Texts per API request
OPENAI_BATCH_SIZE = 100

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


@dataclass(frozen=True)
class ModelInfo:
    """Information about an embedding model."""

    model_id: str
    dimensions: int


OPENAI_MODELS: dict[str, ModelInfo] = {
    "text-embedding-3-small": ModelInfo(
        model_id="text-embedding-3-small",
        dimensions=1536,
    ),
    "text-embedding-3-large": ModelInfo(
        model_id="text-embedding-3-large",
        dimensions=3072,
    ),
}


@dataclass
class EmbeddingResult:
    """One embedded text, tagged with the provider and model that produced it."""

    text: str
    embedding: list[float]
    model: str
    dimensions: int
    provider: str


class EmbeddingError(Exception):
    """Error during embedding generation."""

    def __init__(self, message: str, provider: str, retriable: bool = False):
        super().__init__(message)
        self.provider = provider
        self.retriable = retriable


class EmbeddingProvider(ABC):
    """Abstract base class for embedding providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name stored next to every embedding it produces."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @property
    @abstractmethod
    def dimensions(self) -> int:
        ...

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[EmbeddingResult]:
        """Generate embeddings for a list of texts.

        Empty and whitespace-only texts are dropped before embedding, so the
        result may be shorter than the input.

        Raises:
            EmbeddingError: If embedding generation fails.
        """
        ...

    async def embed_single(self, text: str) -> EmbeddingResult | None:
        results = await self.embed([text])
        return results[0] if results else None


def _valid_texts(texts: list[str]) -> list[str]:
    return [t for t in texts if t and t.strip()]


def _hash_string(value: str) -> int:
    """Signed 32-bit rolling string hash (h * 31 + c)."""
    h = 0
    for ch in value:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return h


_NON_WORD = re.compile(r"[^\w\s]")


def local_embedding(text: str, dimensions: int = DEFAULT_DIMENSIONS) -> list[float]:
    """Deterministic hashed bag-of-words embedding.

    Each word longer than two characters contributes
    ``(freq / word_count) * cos(hash)`` at three hashed positions. The
    result is L2-normalized, so identical text always has similarity 1.
    It is NOT comparable with vectors from a remote model.
    """
    words = [w for w in _NON_WORD.sub("", text.lower()).split() if len(w) > 2]
    embedding = [0.0] * dimensions
    if not words:
        return embedding

    total = len(words)
    for word, freq in Counter(words).items():
        for i in range(3):
            h = _hash_string(f"{word}{i}")
            embedding[abs(h) % dimensions] += (freq / total) * math.cos(h)

    magnitude = math.sqrt(sum(v * v for v in embedding))
    if magnitude > 0:
        embedding = [v / magnitude for v in embedding]
    return embedding


class LocalHashProvider(EmbeddingProvider):
    """Credential-free deterministic provider. Never touches the network."""

    def __init__(self, dimensions: int = DEFAULT_DIMENSIONS):
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        return "local"

    @property
    def model_id(self) -> str:
        return f"local-hash-{self._dimensions}"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: list[str]) -> list[EmbeddingResult]:
        return [
            EmbeddingResult(
                text=text,
                embedding=local_embedding(text, self._dimensions),
                model=self.model_id,
                dimensions=self._dimensions,
                provider=self.name,
            )
            for text in _valid_texts(texts)
        ]


class OpenAIProvider(EmbeddingProvider):
    """OpenAI embedding provider using the API."""

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-large",
        dimensions: int | None = None,
        timeout: float = EMBEDDING_TIMEOUT,
    ):
        if model not in OPENAI_MODELS:
            raise ValueError(f"Unknown OpenAI model: {model}. Available: {list(OPENAI_MODELS.keys())}")

        self._model = model
        self._model_info = OPENAI_MODELS[model]
        self._api_key = api_key
        self._dimensions = dimensions or self._model_info.dimensions
        self._timeout = timeout
        self._max_chars = 20000  # ~5000 tokens, safe for 8192 limit with variable tokenization

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self._model

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, texts: list[str]) -> list[EmbeddingResult]:
        texts = _valid_texts(texts)
        if not texts:
            return []

        if not self._api_key:
            raise EmbeddingError("OPENAI_API_KEY not set", provider=self.name, retriable=False)

        try:
            return await asyncio.wait_for(self._embed_all(texts), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"OpenAI embedding did not finish within {self._timeout}s", provider=self.name, retriable=True
            ) from e

    async def _embed_all(self, texts: list[str]) -> list[EmbeddingResult]:
        results: list[EmbeddingResult] = []
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            for start in range(0, len(texts), OPENAI_BATCH_SIZE):
                batch = texts[start : start + OPENAI_BATCH_SIZE]
                vectors = await self._embed_batch(client, batch)
                for text, vector in zip(batch, vectors):
                    results.append(
                        EmbeddingResult(
                            text=text,
                            embedding=vector,
                            model=self._model,
                            dimensions=len(vector),
                            provider=self.name,
                        )
                    )
        return results

    async def _embed_batch(self, client: httpx.AsyncClient, texts: list[str]) -> list[list[float]]:
        truncated = [t[: self._max_chars] for t in texts]
        delay = INITIAL_DELAY
        last_error: Exception | None = None

        for attempt in range(MAX_RETRIES):
            try:
                response = await client.post(
                    OPENAI_EMBEDDINGS_URL,
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

                embeddings: list[list[float] | None] = [None] * len(texts)
                for item in data["data"]:
                    embedding = item["embedding"]
                    if isinstance(embedding, str):
                        raw = base64.b64decode(embedding)
                        embedding = list(struct.unpack(f"{len(raw) // 4}f", raw))
                    embeddings[item["index"]] = embedding

                if any(e is None for e in embeddings):
                    raise EmbeddingError(
                        "OpenAI response is missing embeddings", provider=self.name, retriable=True
                    )
                return embeddings  # type: ignore[return-value]

            except httpx.TimeoutException as e:
                raise EmbeddingError(
                    f"OpenAI request timed out after {self._timeout}s", provider=self.name, retriable=True
                ) from e

            except httpx.TransportError as e:
                raise EmbeddingError(
                    f"OpenAI connection error: {e}", provider=self.name, retriable=True
                ) from e

            except httpx.HTTPStatusError as e:
                last_error = e
                status = e.response.status_code
                if status == 429:
                    if "quota" in e.response.text.lower():
                        raise EmbeddingError(
                            "OpenAI quota exhausted", provider=self.name, retriable=False
                        ) from e
                    logger.warning(
                        f"Rate limit hit, attempt {attempt + 1}/{MAX_RETRIES}. Waiting {delay:.1f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, MAX_DELAY)
                elif status == 401:
                    raise EmbeddingError("OpenAI API key invalid", provider=self.name, retriable=False) from e
                else:
                    raise EmbeddingError(
                        f"OpenAI API error: {status} - {e.response.text}",
                        provider=self.name,
                        retriable=status >= 500,
                    ) from e

        raise EmbeddingError(
            f"Rate limit not cleared after {MAX_RETRIES} attempts",
            provider=self.name,
            retriable=True,
        ) from last_error


class FallbackProvider(EmbeddingProvider):
    """Use ``primary``; on EmbeddingError switch to ``fallback`` for that call.

    Results keep the provenance of whichever provider actually produced
    them, so callers can refuse to compare vectors across models.
    """

    def __init__(self, primary: EmbeddingProvider, fallback: EmbeddingProvider):
        self.primary = primary
        self.fallback = fallback

    @property
    def name(self) -> str:
        return self.primary.name

    @property
    def model_id(self) -> str:
        return self.primary.model_id

    @property
    def dimensions(self) -> int:
        return self.primary.dimensions

    async def embed(self, texts: list[str]) -> list[EmbeddingResult]:
        try:
            return await self.primary.embed(texts)
        except EmbeddingError as e:
            logger.warning(
                f"{self.primary.name} embedding failed ({e}), falling back to {self.fallback.model_id}"
            )
            return await self.fallback.embed(texts)


def get_provider(settings: "Settings") -> EmbeddingProvider:
    """Build the provider selected by configuration.

    Remote when an API key is configured, local otherwise. With
    ``embedding_fallback`` the remote provider is wrapped so an outage
    degrades to the local provider instead of failing the caller.
    """
    local = LocalHashProvider(dimensions=settings.embedding_dimensions)
    if not settings.has_remote_embeddings:
        return local

    remote = OpenAIProvider(
        api_key=settings.openai_api_key,
        model=settings.embedding_model,
        dimensions=settings.embedding_dimensions,
    )
    if settings.embedding_fallback:
        return FallbackProvider(remote, local)
    return remote
