"""
ctx-optimizer: context optimization and routing engine

Turns large raw content (source code, markdown, prose) into small,
task-focused context for language-model calls.

Pipeline:
- Chunking: split content at declaration or heading boundaries
- Scoring: weight each chunk by keyword, position, structure and recency
- Selection: fill a token budget with the most relevant chunks
- Routing: distribute chunks across the steps of a multi-step workflow

Every stage is memoized in a category-based cache with TTLs, LRU eviction
and cascading invalidation.
"""

__version__ = "1.0.0"

from .cache_manager import CacheCategory, CacheManager, CategoryLimits
from .chunking import ContentType, ContextChunker
from .common_types import Chunk, ChunkKind, ScoredChunk, Step, TaskType, estimate_tokens
from .config import ContextConfig, get_config
from .context_manager import ChainContextResult, ContextManager, ContextResult, StepContext
from .relevance import RelevanceScorer
from .routing import ContextRouter, RoutingPlan, RoutingStrategy, StepRoute

__all__ = [
    "ContextManager",
    "ContextResult",
    "ChainContextResult",
    "StepContext",
    "ContextConfig",
    "get_config",
    "CacheManager",
    "CacheCategory",
    "CategoryLimits",
    "ContextChunker",
    "ContentType",
    "RelevanceScorer",
    "ContextRouter",
    "RoutingPlan",
    "RoutingStrategy",
    "StepRoute",
    "Chunk",
    "ChunkKind",
    "ScoredChunk",
    "Step",
    "TaskType",
    "estimate_tokens",
]
