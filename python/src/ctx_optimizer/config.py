"""
Configuration for the context optimization engine

Environment Variables:
- CTX_MAX_CONTEXT_TOKENS: Token budget for a single optimized context (default: 8000)
- CTX_CHUNK_SIZE: Maximum tokens per chunk (default: 1000)
- CTX_CHUNK_OVERLAP: Token overlap between chunks (default: 100)
- CTX_RELEVANCE_THRESHOLD: Minimum relevance score to keep a chunk (default: 0.6)
- CTX_ENABLE_CACHING: Memoize chunking/routing/context results (default: true)
- CTX_PRESERVE_STRUCTURE: Split code/markdown at structural boundaries (default: true)
- CTX_CACHE_SWEEP_INTERVAL: Seconds between background TTL sweeps (default: 300)
- CTX_ROUTING_STRATEGY: Force a routing strategy for chains (default: inferred)
- CTX_LOG_SLOW_STAGES_MS: Warn when a pipeline stage exceeds this (default: 1000)

Values can also come from a local .env file.
"""

import os
from dataclasses import dataclass, field, fields, replace
from typing import Any

from dotenv import load_dotenv

load_dotenv()


ROUTING_STRATEGIES = ("sequential", "parallel", "hierarchical", "adaptive")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_strategy() -> str | None:
    value = os.getenv("CTX_ROUTING_STRATEGY", "").strip().lower()
    return value or None


@dataclass
class ContextConfig:
    """Configuration for context processing."""

    # Budgets
    max_context_tokens: int = field(
        default_factory=lambda: int(os.getenv("CTX_MAX_CONTEXT_TOKENS", "8000"))
    )
    chunk_size: int = field(
        default_factory=lambda: int(os.getenv("CTX_CHUNK_SIZE", "1000"))
    )
    chunk_overlap: int = field(
        default_factory=lambda: int(os.getenv("CTX_CHUNK_OVERLAP", "100"))
    )

    # Selection
    relevance_threshold: float = field(
        default_factory=lambda: float(os.getenv("CTX_RELEVANCE_THRESHOLD", "0.6"))
    )
    preserve_structure: bool = field(
        default_factory=lambda: _env_bool("CTX_PRESERVE_STRUCTURE", "true")
    )

    # Caching
    enable_caching: bool = field(
        default_factory=lambda: _env_bool("CTX_ENABLE_CACHING", "true")
    )
    cache_sweep_interval: float = field(
        default_factory=lambda: float(os.getenv("CTX_CACHE_SWEEP_INTERVAL", "300"))
    )

    # Routing
    default_strategy: str | None = field(default_factory=_env_strategy)

    # Profiling
    log_slow_stages_ms: float = field(
        default_factory=lambda: float(os.getenv("CTX_LOG_SLOW_STAGES_MS", "1000"))
    )

    def validate(self) -> list[str]:
        """Validate configuration and return list of errors."""
        errors = []

        if self.max_context_tokens < 1:
            errors.append("max_context_tokens must be at least 1")

        if self.chunk_size < 1:
            errors.append("chunk_size must be at least 1")

        if self.chunk_overlap < 0:
            errors.append("chunk_overlap must not be negative")
        elif self.chunk_overlap >= self.chunk_size:
            errors.append("chunk_overlap must be less than chunk_size")

        if not 0.0 <= self.relevance_threshold <= 1.0:
            errors.append("relevance_threshold must be between 0 and 1")

        if self.cache_sweep_interval <= 0:
            errors.append("cache_sweep_interval must be positive")

        if self.default_strategy is not None and self.default_strategy not in ROUTING_STRATEGIES:
            errors.append(
                f"default_strategy must be one of {', '.join(ROUTING_STRATEGIES)}"
            )

        return errors

    def updated(self, **options: Any) -> "ContextConfig":
        """
        Return a copy with the given fields replaced.

        Raises:
            ValueError: On unknown option names or if the result does not validate
        """
        known = {f.name for f in fields(self)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ValueError(f"Unknown configuration option(s): {', '.join(unknown)}")

        candidate = replace(self, **options)
        errors = candidate.validate()
        if errors:
            raise ValueError("; ".join(errors))
        return candidate

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def get_config() -> ContextConfig:
    """Get a configuration instance."""
    return ContextConfig()
