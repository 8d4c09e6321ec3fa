"""
Chunking utilities for context optimization.

Provides content chunking strategies:
- Content type detection (code / structured text / plain)
- Structure-aware chunking at declaration or heading boundaries
- Size-based splitting with natural break points and overlap
"""

import itertools
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .common_types import Chunk, ChunkKind, estimate_tokens

logger = logging.getLogger(__name__)


class ContentType(str, Enum):
    CODE = "code"
    STRUCTURED = "structured"
    PLAIN = "plain"


CODE_PATTERNS = [
    re.compile(r"^import\s+", re.MULTILINE),
    re.compile(r"^from\s+\S+\s+import\s+", re.MULTILINE),
    re.compile(r"^const\s+", re.MULTILINE),
    re.compile(r"^function\s+", re.MULTILINE),
    re.compile(r"^class\s+", re.MULTILINE),
    re.compile(r"^(async\s+)?def\s+", re.MULTILINE),
    re.compile(r"^export\s+", re.MULTILINE),
    re.compile(r"^\s*//", re.MULTILINE),
    re.compile(r"^\s*/\*", re.MULTILINE),
]

HEADING_PATTERN = re.compile(r"^(#{1,6})\s+(.+)$")
FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")
FENCED_BLOCK_PATTERN = re.compile(r"^\s*(```|~~~).*?^\s*\1", re.MULTILINE | re.DOTALL)

DECLARATION_PATTERN = re.compile(
    r"^(?:export\s+)?(?:default\s+)?(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?"
    r"(function\*?|class|def|const|let|var|interface|struct|enum|fn|func)\s+(\w+)"
)
METHOD_PATTERN = re.compile(r"^(?:async\s+)?(?:static\s+)?(\w+)\s*\([^)]*\)\s*\{")

CONTROL_KEYWORDS = {"if", "for", "while", "switch", "catch", "with", "return", "function"}

DECLARATION_KINDS = {
    "function": ChunkKind.FUNCTION,
    "function*": ChunkKind.FUNCTION,
    "def": ChunkKind.FUNCTION,
    "fn": ChunkKind.FUNCTION,
    "func": ChunkKind.FUNCTION,
    "class": ChunkKind.CLASS,
    "interface": ChunkKind.CLASS,
    "struct": ChunkKind.CLASS,
    "enum": ChunkKind.CLASS,
    "const": ChunkKind.DECLARATION,
    "let": ChunkKind.DECLARATION,
    "var": ChunkKind.DECLARATION,
}

# Break points searched backwards from a window end, best first
BREAK_POINTS = ["\n\n", "\n", ". ", ", ", " "]
BREAK_SEARCH_CHARS = 100

# Rough lines-per-token ratio used to turn a token overlap into carried lines
TOKENS_PER_LINE = 20


@dataclass
class Boundary:
    """A run of lines forming one structural unit (inclusive line indices)."""
    kind: ChunkKind
    name: str
    start: int
    end: int


def detect_content_type(content: str) -> ContentType:
    """Classify content as code, structured (markdown-like) text, or plain text."""
    # Code samples inside fenced blocks should not turn a document into code
    unfenced = FENCED_BLOCK_PATTERN.sub("", content)
    if any(pattern.search(unfenced) for pattern in CODE_PATTERNS):
        return ContentType.CODE

    for line in content.splitlines():
        if HEADING_PATTERN.match(line.strip()) or FENCE_PATTERN.match(line):
            return ContentType.STRUCTURED

    return ContentType.PLAIN


def _match_declaration(stripped: str) -> tuple[ChunkKind, str] | None:
    match = DECLARATION_PATTERN.match(stripped)
    if match:
        return DECLARATION_KINDS[match.group(1)], match.group(2)

    match = METHOD_PATTERN.match(stripped)
    if match and match.group(1) not in CONTROL_KEYWORDS:
        return ChunkKind.METHOD, match.group(1)

    return None


def find_code_boundaries(lines: list[str]) -> list[Boundary]:
    """
    Find declaration boundaries in source code.

    A boundary opens on a declaration line at brace depth 0 and closes when
    the depth returns to 0 on a line containing "}". An unindented
    declaration also closes a boundary that never opened a brace, which
    covers indentation-scoped languages.

    Returns boundaries partitioning every line of the input.
    """
    boundaries: list[Boundary] = []
    current: Boundary | None = None
    depth = 0

    for i, line in enumerate(lines):
        if depth == 0:
            declaration = _match_declaration(line.strip())
            if declaration is not None:
                kind, name = declaration
                if current is None:
                    current = Boundary(kind, name, i, i)
                elif not line[:1].isspace() and i > current.start:
                    current.end = i - 1
                    boundaries.append(current)
                    current = Boundary(kind, name, i, i)

        depth = max(0, depth + line.count("{") - line.count("}"))

        if current is not None and depth == 0 and "}" in line:
            current.end = i
            boundaries.append(current)
            current = None

    if current is not None:
        current.end = len(lines) - 1
        boundaries.append(current)

    return _partition(boundaries, lines, ChunkKind.BLOCK)


def find_markdown_sections(lines: list[str]) -> list[Boundary]:
    """
    Find heading-delimited sections in markdown-like text.

    Headings inside fenced blocks are ignored.

    Returns boundaries partitioning every line of the input.
    """
    sections: list[Boundary] = []
    in_fence = False

    for i, line in enumerate(lines):
        if FENCE_PATTERN.match(line):
            in_fence = not in_fence
            continue
        if in_fence:
            continue

        heading = HEADING_PATTERN.match(line.strip())
        if heading:
            sections.append(Boundary(ChunkKind.SECTION, heading.group(2).strip(), i, i))

    return _partition(sections, lines, ChunkKind.SECTION)


def _partition(boundaries: list[Boundary], lines: list[str], preamble_kind: ChunkKind) -> list[Boundary]:
    """Stretch boundaries so that together they cover every line exactly once."""
    last_line = len(lines) - 1

    if not boundaries:
        return [Boundary(ChunkKind.BLOCK, "content", 0, last_line)]

    result: list[Boundary] = []
    first = boundaries[0]
    if first.start > 0:
        preamble = lines[:first.start]
        if any(line.strip() for line in preamble):
            result.append(Boundary(preamble_kind, "preamble", 0, first.start - 1))
        else:
            first = Boundary(first.kind, first.name, 0, first.end)

    ordered = [first] + boundaries[1:]
    for boundary, following in zip(ordered, ordered[1:] + [None]):
        end = following.start - 1 if following is not None else last_line
        result.append(Boundary(boundary.kind, boundary.name, boundary.start, end))

    return result


def split_by_size(content: str, max_tokens: int, overlap: int) -> list[str]:
    """
    Size-based chunking with overlap.

    Windows are sized from the content's chars-per-token ratio. Each window
    end is moved back (at most 100 chars) to the best natural break point;
    the next window starts `overlap` tokens before the previous end.
    """
    tokens = estimate_tokens(content)
    if tokens <= max_tokens:
        return [content]

    chars_per_token = len(content) / tokens
    max_chars = max(1, int(max_tokens * chars_per_token))
    overlap_chars = max(0, int(overlap * chars_per_token))

    windows: list[str] = []
    start = 0

    while start < len(content):
        end = min(start + max_chars, len(content))

        if end < len(content):
            search_start = max(start, end - BREAK_SEARCH_CHARS)
            segment = content[search_start:end]
            for break_point in BREAK_POINTS:
                index = segment.rfind(break_point)
                if index != -1:
                    end = search_start + index + len(break_point)
                    break

        windows.append(content[start:end])

        if end >= len(content):
            break

        next_start = end - overlap_chars
        start = next_start if next_start > start else end

    return windows


class ContextChunker:
    """
    Splits large content into bounded, positioned chunks.

    Structure-aware for code and markdown; everything else (and anything the
    structured pass cannot handle) is split by size.
    """

    def __init__(self, id_factory: Callable[[], str] | None = None):
        """
        Args:
            id_factory: Supplies chunk ids; defaults to chunk_0, chunk_1, ...
        """
        self._id_factory = id_factory
        self._counter = itertools.count()

    def reset_counter(self) -> None:
        """Restart default chunk ids at chunk_0."""
        self._counter = itertools.count()

    def _next_id(self) -> str:
        if self._id_factory is not None:
            return self._id_factory()
        return f"chunk_{next(self._counter)}"

    def chunk(
        self,
        content: str,
        max_chunk_size: int = 1000,
        overlap: int = 100,
        preserve_structure: bool = True,
        timestamp: float | None = None,
    ) -> list[Chunk]:
        """
        Chunk content into semantic pieces.

        Args:
            content: Content to chunk
            max_chunk_size: Max tokens per chunk
            overlap: Token overlap between chunks
            preserve_structure: Keep code/markdown structure intact
            timestamp: Optional epoch seconds stamped on every chunk

        Returns:
            Chunks with positions 0..n-1 in content order
        """
        if max_chunk_size < 1:
            raise ValueError("max_chunk_size must be at least 1")
        if overlap < 0:
            raise ValueError("overlap must not be negative")

        if not content or not content.strip():
            return []

        content_type = detect_content_type(content)
        logger.info(f"Chunking {content_type.value} content ({len(content)} chars)")

        try:
            if preserve_structure and content_type is ContentType.CODE:
                pieces = self._chunk_structured(
                    content, find_code_boundaries, max_chunk_size, overlap
                )
            elif preserve_structure and content_type is ContentType.STRUCTURED:
                pieces = self._chunk_structured(
                    content, find_markdown_sections, max_chunk_size, overlap
                )
            else:
                pieces = self._chunk_plain(content, max_chunk_size, overlap)
        except Exception:
            logger.exception("Structured chunking failed, falling back to size-based chunking")
            pieces = self._chunk_plain(content, max_chunk_size, overlap)

        chunks = []
        for text, kind, name in pieces:
            if not text.strip():
                continue
            chunks.append(Chunk.create(
                self._next_id(),
                text,
                position=len(chunks),
                kind=kind,
                timestamp=timestamp,
                name=name,
            ))

        logger.info(f"Created {len(chunks)} chunks from {content_type.value} content")
        return chunks

    def _chunk_plain(
        self, content: str, max_chunk_size: int, overlap: int
    ) -> list[tuple[str, ChunkKind, str | None]]:
        return [
            (text, ChunkKind.GENERAL, None)
            for text in split_by_size(content, max_chunk_size, overlap)
        ]

    def _chunk_structured(
        self,
        content: str,
        find_boundaries: Callable[[list[str]], list[Boundary]],
        max_chunk_size: int,
        overlap: int,
    ) -> list[tuple[str, ChunkKind, str | None]]:
        """Greedily pack structural boundaries into chunks of at most max_chunk_size tokens."""
        lines = content.split("\n")
        boundaries = find_boundaries(lines)
        carry = overlap // TOKENS_PER_LINE

        pieces: list[tuple[str, ChunkKind, str | None]] = []
        current: list[str] = []
        current_kind: ChunkKind | None = None
        current_name: str | None = None

        def flush() -> None:
            text = "\n".join(current)
            if text.strip() and current_kind is not None:
                pieces.append((text, current_kind, current_name))

        for boundary in boundaries:
            segment = lines[boundary.start:boundary.end + 1]
            segment_text = "\n".join(segment)

            # A single oversized unit is split on its own
            if estimate_tokens(segment_text) > max_chunk_size:
                flush()
                current, current_kind, current_name = [], None, None
                for text in split_by_size(segment_text, max_chunk_size, overlap):
                    pieces.append((text, boundary.kind, boundary.name))
                continue

            if current and estimate_tokens("\n".join(current + segment)) > max_chunk_size:
                flush()
                tail = current[-carry:] if carry > 0 else []
                if tail and estimate_tokens("\n".join(tail + segment)) > max_chunk_size:
                    tail = []
                current, current_kind, current_name = list(tail), None, None

            if current_kind is None:
                current_kind, current_name = boundary.kind, boundary.name
            current.extend(segment)

        flush()
        return pieces