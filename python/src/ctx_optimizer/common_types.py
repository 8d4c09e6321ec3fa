"""
Common types for context optimization.

Contains:
- Enums: ChunkKind, TaskType
- Dataclasses: ChunkMetadata, Chunk, ScoredChunk, Step
- Token estimation
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping


CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Quick token estimation (4 chars ~ 1 token)."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class ChunkKind(str, Enum):
    FUNCTION = "function"
    CLASS = "class"
    METHOD = "method"
    DECLARATION = "declaration"  # const/let/var style top-level bindings
    SECTION = "section"
    BLOCK = "block"
    GENERAL = "general"


class TaskType(str, Enum):
    ANALYSIS = "analysis"
    REFACTOR = "refactor"
    GENERATE = "generate"
    DEBUG = "debug"
    GENERAL = "general"

    @classmethod
    def resolve(cls, value: "str | TaskType | None") -> "TaskType":
        """Map a free-form task type onto a known one, falling back to GENERAL."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError:
            return cls.GENERAL


@dataclass(frozen=True)
class ChunkMetadata:
    """Size and provenance details of a chunk."""
    length: int
    lines: int
    timestamp: float | None = None  # Epoch seconds
    name: str | None = None  # Detected declaration or heading

    def to_dict(self) -> dict[str, Any]:
        return {
            "length": self.length,
            "lines": self.lines,
            "timestamp": self.timestamp,
            "name": self.name,
        }


@dataclass(frozen=True)
class Chunk:
    """An immutable, positioned unit of split content."""
    id: str
    text: str
    tokens: int
    position: int
    kind: ChunkKind = ChunkKind.GENERAL
    metadata: ChunkMetadata = field(default_factory=lambda: ChunkMetadata(length=0, lines=0))

    @classmethod
    def create(
        cls,
        chunk_id: str,
        text: str,
        position: int,
        kind: ChunkKind = ChunkKind.GENERAL,
        timestamp: float | None = None,
        name: str | None = None,
    ) -> "Chunk":
        """Build a chunk from raw text, trimming it and deriving size metadata."""
        trimmed = text.strip()
        return cls(
            id=chunk_id,
            text=trimmed,
            tokens=max(1, estimate_tokens(trimmed)) if trimmed else 0,
            position=position,
            kind=kind,
            metadata=ChunkMetadata(
                length=len(trimmed),
                lines=trimmed.count("\n") + 1 if trimmed else 0,
                timestamp=timestamp,
                name=name,
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "tokens": self.tokens,
            "position": self.position,
            "kind": self.kind.value,
            "metadata": self.metadata.to_dict(),
        }


@dataclass(frozen=True)
class ScoredChunk:
    """A chunk with its relevance score for one task."""
    chunk: Chunk
    score: float
    breakdown: dict[str, float] | None = None

    def __post_init__(self) -> None:
        # Clamp regardless of how the score was computed
        object.__setattr__(self, "score", min(1.0, max(0.0, float(self.score))))

    @property
    def id(self) -> str:
        return self.chunk.id

    @property
    def text(self) -> str:
        return self.chunk.text

    @property
    def tokens(self) -> int:
        return self.chunk.tokens

    @property
    def position(self) -> int:
        return self.chunk.position

    @property
    def kind(self) -> ChunkKind:
        return self.chunk.kind

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.chunk.to_dict(),
            "relevance_score": self.score,
            "score_breakdown": dict(self.breakdown) if self.breakdown else None,
        }


@dataclass(frozen=True)
class Step:
    """A workflow step supplied by the chain orchestrator. Never mutated."""
    id: str
    name: str = ""
    description: str = ""
    dependencies: tuple[str, ...] = ()
    complexity: str | None = None  # simple / moderate / complex / very_complex
    task_type: str | None = None

    @property
    def task_text(self) -> str:
        return self.description or self.name or self.id

    @classmethod
    def from_dict(cls, data: "Step | Mapping[str, Any]") -> "Step":
        """Accept either a Step or the orchestrator's dict shape."""
        if isinstance(data, Step):
            return data
        if "id" not in data:
            raise ValueError("Step is missing an 'id'")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            description=str(data.get("description") or data.get("task") or ""),
            dependencies=tuple(str(d) for d in (data.get("dependencies") or ())),
            complexity=data.get("complexity"),
            task_type=data.get("task_type") or data.get("type"),
        )
