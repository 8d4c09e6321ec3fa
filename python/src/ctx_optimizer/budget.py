"""
Token budget selection and context assembly.
"""

from typing import Iterable

from .common_types import ScoredChunk

CONTEXT_SEPARATOR = "\n\n---\n\n"

# Stop filling once this share of the budget is used
STOP_RATIO = 0.95


def rank_by_relevance(scored: Iterable[ScoredChunk]) -> list[ScoredChunk]:
    """Order by score descending, then by position ascending."""
    return sorted(scored, key=lambda s: (-s.score, s.position))


def total_tokens(chunks: Iterable[ScoredChunk]) -> int:
    return sum(c.tokens for c in chunks)


def select_within_budget(
    scored: Iterable[ScoredChunk],
    max_tokens: float,
    stop_ratio: float = STOP_RATIO,
) -> list[ScoredChunk]:
    """
    Greedily take the most relevant chunks that fit into max_tokens.

    Chunks that would overflow are skipped (a smaller one further down may
    still fit); selection stops once stop_ratio of the budget is used.
    """
    selected: list[ScoredChunk] = []
    used = 0

    for chunk in rank_by_relevance(scored):
        if used + chunk.tokens <= max_tokens:
            selected.append(chunk)
            used += chunk.tokens

        if used >= max_tokens * stop_ratio:
            break

    return selected


def merge_within_budget(
    base: list[ScoredChunk],
    candidates: Iterable[ScoredChunk],
    max_tokens: float,
) -> list[ScoredChunk]:
    """Extend a base selection with ranked candidates it does not contain yet, while they fit."""
    merged = list(base)
    seen = {c.id for c in base}
    used = total_tokens(base)

    for chunk in rank_by_relevance(candidates):
        if chunk.id in seen:
            continue
        if used + chunk.tokens <= max_tokens:
            merged.append(chunk)
            seen.add(chunk.id)
            used += chunk.tokens

    return merged


def assemble_context(chunks: Iterable[ScoredChunk], separator: str = CONTEXT_SEPARATOR) -> str:
    """Join chunk texts in original content order."""
    ordered = sorted(chunks, key=lambda c: c.position)
    return separator.join(c.text for c in ordered)
