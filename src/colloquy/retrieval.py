"""Retrieval augmentation — similarity-ranked context snippets for a request."""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .embeddings import EmbeddingService
from .telemetry import trace_retrieval
from .token_budget import TokenBudget, TokenBudgeter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchHit:
    """One ranked candidate returned by a similarity search."""

    text: str
    score: float


class SimilaritySearch(ABC):
    """Contract for the external similarity-search collaborator."""

    @abstractmethod
    async def search(self, query_text: str, top_k: int) -> list[SearchHit]:
        """Return up to *top_k* hits, best first."""

    async def add(self, key: str, text: str) -> None:  # noqa: B027
        """Index a text under *key*. Backends that cannot index ignore this."""


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(x * x for x in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorIndex(SimilaritySearch):
    """Brute-force cosine index over an :class:`EmbeddingService`.

    Embedding runs in a worker thread because HTTP backends block.
    """

    def __init__(self, embedding_service: EmbeddingService, min_score: float = 0.0) -> None:
        self._embedder = embedding_service
        self._min_score = min_score
        self._entries: dict[str, tuple[str, list[float]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    async def add(self, key: str, text: str) -> None:
        [vector] = await asyncio.to_thread(self._embedder.embed, [text])
        self._entries[key] = (text, vector)

    async def search(self, query_text: str, top_k: int) -> list[SearchHit]:
        if top_k <= 0 or not self._entries:
            return []
        [query] = await asyncio.to_thread(self._embedder.embed, [query_text])
        hits = [
            SearchHit(text=text, score=cosine_similarity(query, vector))
            for text, vector in self._entries.values()
        ]
        hits = [h for h in hits if h.score > self._min_score]
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:top_k]


class RetrievalAugmenter:
    """Best-effort context retrieval. Failures always yield no snippets."""

    def __init__(
        self,
        search: SimilaritySearch | None,
        budgeter: TokenBudgeter | None = None,
        timeout_sec: float | None = None,
    ) -> None:
        self._search = search
        self._budgeter = budgeter if budgeter is not None else TokenBudgeter()
        self._timeout = timeout_sec

    async def augment(self, query_text: str, max_snippets: int, token_budget: int) -> list[str]:
        """Return up to *max_snippets* snippets whose estimated size fits *token_budget*.

        Candidates are accepted in rank order; the first one that would push
        the running estimate past the budget ends the scan.
        """
        if self._search is None or max_snippets <= 0 or token_budget <= 0:
            return []
        if not query_text.strip():
            return []

        with trace_retrieval(max_snippets) as span:
            try:
                hits = await asyncio.wait_for(
                    self._search.search(query_text, max_snippets), timeout=self._timeout
                )
            except Exception as exc:
                logger.warning("Similarity search unavailable, continuing without context: %s", exc)
                return []

            budget = TokenBudget(token_budget)
            snippets: list[str] = []
            for hit in hits:
                if len(snippets) >= max_snippets:
                    break
                cost = self._budgeter.estimate_tokens(hit.text)
                if not budget.would_fit(cost):
                    break
                budget.consume(cost)
                snippets.append(hit.text)
            span.set_attribute("retrieval.snippets", len(snippets))
        return snippets

    async def index(self, key: str, text: str) -> None:
        """Add *text* to the search backend; failures are logged and ignored."""
        if self._search is None or not text.strip():
            return
        try:
            await self._search.add(key, text)
        except Exception as exc:
            logger.warning("Failed to index %s: %s", key, exc)
