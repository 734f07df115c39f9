"""Token budgeting — estimates, budget checks and history truncation."""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable

from .transactions import (
    CompletedTurn,
    ToolResultTurn,
    Transaction,
    UserTurn,
    transaction_text,
)

TokenEstimator = Callable[[str], int]


def estimate_tokens(text: str) -> int:
    """Estimate token count from text.

    Rough heuristic: the larger of words * 1.3 and characters / 4, so long
    unbroken strings (paths, JSON) are not undercounted.
    """
    if not text:
        return 0
    words = len(text.split())
    return max(math.ceil(words * 1.3), math.ceil(len(text) / 4))


class TokenBudget:
    """Tracks token consumption against a configured maximum."""

    def __init__(self, max_tokens: int) -> None:
        if max_tokens <= 0:
            msg = "max_tokens must be positive"
            raise ValueError(msg)
        self._max = max_tokens
        self._consumed = 0

    def consume(self, tokens: int) -> None:
        self._consumed += tokens

    def remaining(self) -> int:
        return self._max - self._consumed

    def would_fit(self, tokens: int) -> bool:
        return self._consumed + tokens <= self._max

    @property
    def consumed(self) -> int:
        return self._consumed


class TokenBudgeter:
    """Keeps outbound requests within the model's context window.

    The estimator is pluggable; the default is :func:`estimate_tokens`.
    """

    def __init__(self, estimator: TokenEstimator = estimate_tokens) -> None:
        self._estimate = estimator

    def estimate_tokens(self, text: str) -> int:
        return self._estimate(text)

    def fits_budget(self, texts: Iterable[str], limit: int) -> bool:
        return sum(self._estimate(t) for t in texts) <= limit

    def total_tokens(self, history: Iterable[Transaction]) -> int:
        return sum(self._estimate(transaction_text(t)) for t in history)

    def truncate_to_budget(self, history: list[Transaction], limit: int) -> list[Transaction]:
        """Drop the oldest transactions until the history fits *limit*.

        A completed turn and the tool results answering it are kept or dropped
        together. The latest user turn and the latest completed turn (with its
        results) are never dropped, so the output may still exceed *limit*
        when those alone do not fit.
        """
        units = _group_units(history)
        protected = _protected_units(units)
        costs = [self.total_tokens(u) for u in units]
        total = sum(costs)

        keep = [True] * len(units)
        for i in range(len(units)):
            if total <= limit:
                break
            if i in protected:
                continue
            keep[i] = False
            total -= costs[i]

        return [t for i, unit in enumerate(units) if keep[i] for t in unit]


def _group_units(history: list[Transaction]) -> list[list[Transaction]]:
    """Split history into droppable units, pairing tool calls with their results."""
    units: list[list[Transaction]] = []
    owner: dict[str, int] = {}
    for t in history:
        if isinstance(t, ToolResultTurn) and t.tool_call_id in owner:
            units[owner[t.tool_call_id]].append(t)
            continue
        units.append([t])
        if isinstance(t, CompletedTurn):
            for call in t.tool_calls:
                owner[call.id] = len(units) - 1
    return units


def _protected_units(units: list[list[Transaction]]) -> set[int]:
    protected: set[int] = set()
    for kind in (UserTurn, CompletedTurn):
        for i in range(len(units) - 1, -1, -1):
            if isinstance(units[i][0], kind):
                protected.add(i)
                break
    return protected
