"""
Relevance scoring for context chunks.

Each chunk gets four factors in [0, 1]:
- keyword: weighted task-word and identifier matches, normalized by chunk length
- position: U-shaped, ends of the content score highest
- structure: declarations, comments and exports score higher
- recency: derived from the chunk timestamp when present

The final score is the task-type weighted sum, clamped to [0, 1].
"""

import logging
import math
import re
import time
from collections import Counter
from typing import Callable, Iterable

from .common_types import Chunk, ChunkKind, ScoredChunk, TaskType

logger = logging.getLogger(__name__)


FACTORS = ("keyword", "position", "structure", "recency")

DEFAULT_WEIGHTS: dict[str, dict[str, float]] = {
    "analysis": {"keyword": 0.4, "position": 0.2, "structure": 0.3, "recency": 0.1},
    "refactor": {"keyword": 0.5, "position": 0.1, "structure": 0.3, "recency": 0.1},
    "generate": {"keyword": 0.3, "position": 0.2, "structure": 0.4, "recency": 0.1},
    "debug": {"keyword": 0.6, "position": 0.1, "structure": 0.2, "recency": 0.1},
    "general": {"keyword": 0.4, "position": 0.2, "structure": 0.2, "recency": 0.2},
}

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "are", "was", "were", "be", "been",
    "being", "have", "has", "had", "do", "does", "did", "will", "would",
    "should", "could", "may", "might", "must", "can", "this", "that",
    "these", "those", "i", "you", "he", "she", "it", "we", "they",
})

NEUTRAL_SCORE = 0.5
RECENCY_WINDOW_SECONDS = 24 * 60 * 60
IDENTIFIER_BONUS = 2.0
KEYWORD_SCALE = 5.0

NON_ALNUM = re.compile(r"[^a-z0-9\s]")
IDENTIFIER_PATTERN = re.compile(
    r"\b(?:"
    r"[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+"  # CamelCase
    r"|[a-z][a-z0-9]*(?:[A-Z][a-z0-9]*)+"  # camelCase
    r"|[A-Za-z][A-Za-z0-9]*(?:_[A-Za-z0-9]+)+"  # snake_case
    r")\b"
    r"|\b\w+\(\)"  # call()
)

COMMENT_PATTERN = re.compile(r'/\*|//|"""|^\s*#\s', re.MULTILINE)
EXPORT_PATTERN = re.compile(r"^\s*(?:export|pub|public)\s+", re.MULTILINE)
ERROR_HANDLING_PATTERN = re.compile(r"try|catch|throw|error|except|raise", re.IGNORECASE)
CONTROL_FLOW_PATTERN = re.compile(r"\b(?:if|else|elif|switch|for|while)\b")


def has_comment_markers(text: str) -> bool:
    """True if the text carries comment or docstring markers."""
    return bool(COMMENT_PATTERN.search(text))


def extract_keywords(task: str) -> tuple[Counter, list[str]]:
    """
    Extract weighted keywords and identifier tokens from a task description.

    Returns:
        (word -> frequency in task, lower-cased identifier tokens)
    """
    words = [
        word for word in NON_ALNUM.sub(" ", task.lower()).split()
        if len(word) > 2 and word not in STOP_WORDS
    ]
    identifiers = list(dict.fromkeys(
        match.group(0).lower() for match in IDENTIFIER_PATTERN.finditer(task)
    ))
    return Counter(words), identifiers


def _count_whole_word(word: str, text: str) -> int:
    pattern = rf"(?<![a-z0-9_]){re.escape(word)}(?![a-z0-9_])"
    return len(re.findall(pattern, text))


class RelevanceScorer:
    """Scores chunks against a task with per-task-type factor weights."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._weights = {name: dict(profile) for name, profile in DEFAULT_WEIGHTS.items()}
        self._clock = clock

    def _profile_key(self, task_type: "str | TaskType | None") -> str:
        if isinstance(task_type, TaskType):
            return task_type.value
        key = str(task_type or "").strip().lower()
        return key if key in self._weights else TaskType.GENERAL.value

    def get_weights(self, task_type: "str | TaskType | None" = "general") -> dict[str, float]:
        """Current weights for a task type (a copy)."""
        return dict(self._weights[self._profile_key(task_type)])

    def update_weights(self, task_type: "str | TaskType", weights: dict[str, float]) -> dict[str, float]:
        """
        Merge new factor weights into a task type's profile.

        A task type without a profile starts from a copy of the general one.

        Raises:
            ValueError: On unknown factor names or non-numeric weights
        """
        unknown = sorted(set(weights) - set(FACTORS))
        if unknown:
            raise ValueError(f"Unknown weight factor(s): {', '.join(unknown)}")
        for name, value in weights.items():
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ValueError(f"Weight for {name!r} must be a number")

        key = task_type.value if isinstance(task_type, TaskType) else str(task_type).strip().lower()
        profile = self._weights.get(key) or dict(self._weights[TaskType.GENERAL.value])
        profile.update({name: float(value) for name, value in weights.items()})
        self._weights[key] = profile

        logger.info(f"Updated weights for {key} task type")
        return dict(profile)

    def score_chunks(
        self,
        chunks: Iterable[Chunk | ScoredChunk],
        task: str,
        task_type: "str | TaskType | None" = "general",
        total_chunks: int | None = None,
    ) -> list[ScoredChunk]:
        """
        Score chunks for relevance to a task.

        Args:
            chunks: Chunks to score (already scored chunks are re-scored)
            task: Task description or query
            task_type: Selects the weight profile and task-specific boosts
            total_chunks: Length of the full chunk list positions refer to;
                defaults to the number of chunks given

        Returns:
            ScoredChunks in input order. On any internal failure every chunk
            gets a neutral 0.5 and no breakdown.
        """
        plain = [item.chunk if isinstance(item, ScoredChunk) else item for item in chunks]
        if not plain:
            return []

        key = self._profile_key(task_type)
        logger.info(f"Scoring {len(plain)} chunks for {key} task")

        try:
            weights = self._weights[key]
            keywords, identifiers = extract_keywords(task or "")
            total = total_chunks if total_chunks is not None else len(plain)
            now = self._clock()

            scored = []
            for chunk in plain:
                breakdown = {
                    "keyword": self._score_keywords(chunk, keywords, identifiers),
                    "position": self._score_position(chunk, total),
                    "structure": self._score_structure(chunk, key),
                    "recency": self._score_recency(chunk, now),
                }
                score = sum(breakdown[name] * weights.get(name, 0.0) for name in FACTORS)
                scored.append(ScoredChunk(chunk=chunk, score=score, breakdown=breakdown))

        except Exception as e:
            logger.error(f"Chunk scoring failed: {e}")
            return [ScoredChunk(chunk=chunk, score=NEUTRAL_SCORE) for chunk in plain]

        average = sum(s.score for s in scored) / len(scored)
        logger.info(f"Scored chunks - avg relevance: {average:.3f}")
        return scored

    def score_chunk(
        self,
        chunk: Chunk | ScoredChunk,
        task: str,
        task_type: "str | TaskType | None" = "general",
    ) -> ScoredChunk:
        """Score a single chunk (position factor is 1.0 for a lone chunk)."""
        return self.score_chunks([chunk], task, task_type)[0]

    def _score_keywords(self, chunk: Chunk, keywords: Counter, identifiers: list[str]) -> float:
        text = chunk.text.lower()
        word_count = max(1, len(text.split()))

        weighted = 0.0
        for word, task_freq in keywords.items():
            matches = _count_whole_word(word, text)
            if matches:
                weighted += matches * math.log(1 + task_freq)

        # Exact identifiers from the task are strong signals
        for identifier in identifiers:
            if _count_whole_word(identifier, text):
                weighted += IDENTIFIER_BONUS

        normalized = weighted / math.sqrt(word_count)
        return min(1.0, max(0.0, normalized / KEYWORD_SCALE))

    def _score_position(self, chunk: Chunk, total: int) -> float:
        if total <= 1:
            return 1.0

        p = min(1.0, max(0.0, chunk.position / (total - 1)))
        # U-shaped: 1.0 at both ends, 0.0 at the midpoint
        return min(1.0, 4 * (p - 0.5) ** 2)

    def _score_structure(self, chunk: Chunk, task_type: str) -> float:
        kind = TaskType.resolve(task_type)
        score = 0.5
        text = chunk.text

        if chunk.kind in (ChunkKind.FUNCTION, ChunkKind.CLASS):
            score += 0.3
        elif chunk.kind is ChunkKind.METHOD:
            score += 0.2

        if has_comment_markers(text):
            score += 0.1

        if EXPORT_PATTERN.search(text):
            score += 0.1

        if kind is TaskType.DEBUG and ERROR_HANDLING_PATTERN.search(text):
            score += 0.2

        if kind is TaskType.REFACTOR and CONTROL_FLOW_PATTERN.search(text):
            score += 0.1

        return min(1.0, score)

    def _score_recency(self, chunk: Chunk, now: float) -> float:
        timestamp = chunk.metadata.timestamp
        if timestamp is None:
            return NEUTRAL_SCORE

        age = now - timestamp
        return min(1.0, max(0.0, 1 - age / RECENCY_WINDOW_SECONDS))
