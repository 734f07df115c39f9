"""Embedding services used by the in-memory similarity index.

Backends:
- HashingEmbeddingService: deterministic feature hashing (no ML dependencies)
- OllamaEmbeddingService: Ollama /api/embeddings over HTTP
- LocalEmbeddingService: sentence-transformers (optional ``ml`` extra)
"""

from __future__ import annotations

import hashlib
import math
import re
from abc import ABC, abstractmethod

import requests

_WORD_RE = re.compile(r"[a-z0-9_]+")


class EmbeddingService(ABC):
    """Abstract base class for embedding backends."""

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts into vectors."""

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding vector dimension."""


class HashingEmbeddingService(EmbeddingService):
    """Bag-of-words feature hashing, L2-normalised.

    Texts sharing words get positive cosine similarity, which is enough for
    offline use and tests.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension <= 0:
            msg = "dimension must be positive"
            raise ValueError(msg)
        self._dim = dimension

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [self._embed_one(t) for t in texts]

    def dimension(self) -> int:
        return self._dim

    def _embed_one(self, text: str) -> list[float]:
        vec = [0.0] * self._dim
        for word in _WORD_RE.findall(text.lower()):
            digest = hashlib.sha256(word.encode()).digest()
            bucket = int.from_bytes(digest[:4], "big") % self._dim
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0.0:
            return vec
        return [v / norm for v in vec]


class OllamaEmbeddingService(EmbeddingService):
    """Embedding via Ollama's /api/embeddings endpoint.

    Requires Ollama running locally (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        dimension: int | None = None,
        base_url: str = "http://localhost:11434",
        timeout: float = 30.0,
    ) -> None:
        self._model = model
        self._dim = dimension if dimension is not None else KNOWN_DIMENSIONS.get(model, 768)
        self._url = f"{base_url}/api/embeddings"
        self._timeout = timeout

    def embed(self, texts: list[str]) -> list[list[float]]:
        vectors: list[list[float]] = []
        for text in texts:
            resp = requests.post(
                self._url,
                json={"model": self._model, "prompt": text},
                timeout=self._timeout,
            )
            resp.raise_for_status()
            vectors.append(resp.json()["embedding"])
        return vectors

    def dimension(self) -> int:
        return self._dim


KNOWN_DIMENSIONS: dict[str, int] = {
    "all-MiniLM-L6-v2": 384,
    "all-MiniLM-L12-v2": 384,
    "all-mpnet-base-v2": 768,
    "multi-qa-MiniLM-L6-cos-v1": 384,
    "nomic-embed-text": 768,
}


class LocalEmbeddingService(EmbeddingService):
    """Embedding via sentence-transformers, loaded on first use.

    ``dimension()`` answers from :data:`KNOWN_DIMENSIONS` until the model is
    loaded, then from the model itself. Conversation turns are embedded
    L2-normalised by default so cosine ranking in the index is stable.

    Requires: pip install 'colloquy[ml]'
    """

    def __init__(
        self,
        model_name: str = "all-MiniLM-L6-v2",
        device: str | None = None,
        batch_size: int = 32,
        normalize: bool = True,
    ) -> None:
        if batch_size <= 0:
            msg = "batch_size must be positive"
            raise ValueError(msg)
        self._model_name = model_name
        self._device = device
        self._batch_size = batch_size
        self._normalize = normalize
        self._dim = KNOWN_DIMENSIONS.get(model_name, 384)
        self._model = None

    @property
    def model_name(self) -> str:
        return self._model_name

    def _load_model(self):
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as e:
                raise ImportError(
                    "sentence-transformers required. Install with: pip install 'colloquy[ml]'"
                ) from e
            self._model = SentenceTransformer(self._model_name, device=self._device)
            self._dim = self._model.get_sentence_embedding_dimension() or self._dim
        return self._model

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self._load_model()
        rows = model.encode(
            texts,
            batch_size=self._batch_size,
            convert_to_numpy=True,
            normalize_embeddings=self._normalize,
            show_progress_bar=False,
        )
        return [[float(v) for v in row] for row in rows]

    def dimension(self) -> int:
        return self._dim
