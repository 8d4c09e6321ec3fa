"""
Context Manager - single entry point of the context optimization engine.

Pipeline for one task:
    chunk (memoized) -> score -> threshold -> select within budget -> assemble

Pipeline for a chain of steps:
    chunk (memoized) -> score once -> route (memoized) -> assemble per step

Any failure inside a pipeline degrades to the raw content instead of raising.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from .budget import assemble_context, select_within_budget, total_tokens
from .cache_manager import CacheCategory, CacheManager
from .chunking import ContextChunker
from .common_types import Chunk, ScoredChunk, Step, TaskType, estimate_tokens
from .config import ContextConfig, get_config
from .profiling import LatencyTracker, MetricsCollector, get_process_stats
from .relevance import RelevanceScorer
from .routing import ContextRouter, RoutingPlan

logger = logging.getLogger(__name__)


@dataclass
class ContextResult:
    """Optimized context for a single task."""
    text: str
    chunks: list[ScoredChunk] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "context": self.text,
            "chunks": [c.to_dict() for c in self.chunks],
            "metadata": dict(self.metadata),
        }


@dataclass
class StepContext:
    """Assembled context for one step of a chain."""
    text: str
    chunks: list[ScoredChunk] = field(default_factory=list)
    shared_with_steps: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "context": self.text,
            "chunks": [c.to_dict() for c in self.chunks],
            "shared_with_steps": list(self.shared_with_steps),
            "metadata": dict(self.metadata),
        }


@dataclass
class ChainContextResult:
    """Per-step contexts for a chain, keyed by step id."""
    per_step_context: dict[str, StepContext] = field(default_factory=dict)
    global_context: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def get(self, step_id: str) -> StepContext | None:
        return self.per_step_context.get(step_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "context_map": {k: v.to_dict() for k, v in self.per_step_context.items()},
            "global_context": dict(self.global_context),
            "metadata": dict(self.metadata),
        }


def _average_relevance(chunks: list[ScoredChunk]) -> float:
    if not chunks:
        return 0.0
    return sum(c.score for c in chunks) / len(chunks)


class ContextManager:
    """
    Optimizes raw content into task-focused context.

    Owns the configuration, chunker, scorer, router, cache and stage metrics.

    Usage:
        with ContextManager() as manager:
            result = manager.process_context(source, "fix the null pointer bug", "debug")
            print(result.text, result.metadata["compression_ratio"])
    """

    def __init__(
        self,
        config: ContextConfig | None = None,
        cache: CacheManager | None = None,
        clock: Callable[[], float] = time.time,
        start_sweeper: bool = True,
    ):
        """
        Args:
            config: Engine configuration (defaults to environment values)
            cache: Shared cache; a private one is created when omitted
            clock: Wall-clock source for cache TTLs and chunk recency
            start_sweeper: Run the background cache expiry sweep

        Raises:
            ValueError: If the configuration does not validate
        """
        self.config = config or get_config()
        errors = self.config.validate()
        if errors:
            raise ValueError(f"Invalid context configuration: {'; '.join(errors)}")

        self.cache = cache or CacheManager(
            clock=clock, sweep_interval=self.config.cache_sweep_interval
        )
        self.chunker = ContextChunker()
        self.scorer = RelevanceScorer(clock=clock)
        self.router = ContextRouter(self.scorer)
        self.metrics = MetricsCollector()

        self._started_sweeper = False
        if start_sweeper and self.config.enable_caching:
            self.cache.start_sweeper(self.config.cache_sweep_interval)
            self._started_sweeper = True

    # =========================================================================
    # SINGLE TASK
    # =========================================================================

    def process_context(
        self,
        content: str,
        task: str,
        task_type: "str | TaskType" = "general",
        max_tokens: int | None = None,
    ) -> ContextResult:
        """
        Optimize content for a task.

        Args:
            content: Raw content (code, markdown or text)
            task: Task description used for relevance scoring
            task_type: analysis / refactor / generate / debug / general
            max_tokens: Token budget (missing or non-positive means max_context_tokens)

        Returns:
            ContextResult with the assembled context, the selected chunks in
            content order and metadata. On failure the raw content is returned
            with an "error" entry in the metadata.
        """
        start_time = time.perf_counter()
        config = self.config
        budget = self._budget(max_tokens, config)
        type_name = task_type.value if isinstance(task_type, TaskType) else str(task_type)

        logger.info(f"Processing context for task type: {type_name}")

        try:
            with self._track("process_context", config):
                chunk_key = self._chunk_key(content, config)
                request_key = {
                    "stage": "context",
                    "chunks": chunk_key,
                    "task": task,
                    "task_type": type_name,
                    "max_tokens": budget,
                    "relevance_threshold": config.relevance_threshold,
                }

                computed = []

                def produce() -> ContextResult:
                    computed.append(True)
                    return self._optimize(content, task, type_name, budget, config, chunk_key)

                if config.enable_caching:
                    result = self.cache.get_or_compute(
                        CacheCategory.CONTEXT, request_key, produce, dependencies=[chunk_key]
                    )
                else:
                    result = produce()

        except Exception as e:
            logger.error(f"Context processing failed: {e}")
            original_tokens = estimate_tokens(content or "")
            return ContextResult(
                text=content,
                chunks=[],
                metadata={
                    "original_tokens": original_tokens,
                    "optimized_tokens": original_tokens,
                    "compression_ratio": 1.0,
                    "chunks_used": 0,
                    "chunks_total": 0,
                    "average_relevance": 0.0,
                    "task_type": type_name,
                    "cached": False,
                    "processing_time_ms": (time.perf_counter() - start_time) * 1000,
                    "error": str(e),
                },
            )

        result.metadata["cached"] = not computed
        result.metadata["processing_time_ms"] = (time.perf_counter() - start_time) * 1000

        if computed:
            logger.info(
                f"Context optimized: {result.metadata['compression_ratio']:.2f}x compression"
            )
        else:
            logger.info("Context retrieved from cache")

        return result

    def _optimize(
        self,
        content: str,
        task: str,
        task_type: str,
        budget: int,
        config: ContextConfig,
        chunk_key: str,
    ) -> ContextResult:
        chunks = self._get_chunks(content, config, chunk_key)

        with self._track("scoring", config):
            scored = self.scorer.score_chunks(chunks, task, task_type)

        relevant = [s for s in scored if s.score >= config.relevance_threshold]
        logger.info(f"{len(relevant)}/{len(chunks)} chunks passed relevance threshold")

        with self._track("selection", config):
            selected = sorted(select_within_budget(relevant, budget), key=lambda s: s.position)
            text = assemble_context(selected)

        original_tokens = estimate_tokens(content)
        optimized_tokens = total_tokens(selected)

        return ContextResult(
            text=text,
            chunks=selected,
            metadata={
                "original_tokens": original_tokens,
                "optimized_tokens": optimized_tokens,
                "compression_ratio": original_tokens / max(optimized_tokens, 1),
                "chunks_used": len(selected),
                "chunks_total": len(chunks),
                "average_relevance": _average_relevance(selected),
                "task_type": task_type,
            },
        )

    # =========================================================================
    # CHAINS
    # =========================================================================

    def process_chain_context(
        self,
        content: str,
        steps: Iterable[Step | Mapping[str, Any]],
        global_context: Mapping[str, Any] | None = None,
        strategy: str | None = None,
        max_tokens_per_step: int | None = None,
    ) -> ChainContextResult:
        """
        Build per-step contexts for a multi-step workflow.

        Args:
            content: Raw content shared by the chain
            steps: Steps (or step dicts) in chain order
            global_context: Shared context passed through untouched
            strategy: Force a routing strategy (defaults to config, then inference)
            max_tokens_per_step: Per-step budget (missing or non-positive means
                max_context_tokens)

        Returns:
            ChainContextResult keyed by step id. On failure every step gets the
            raw content with an "error" entry in its metadata; steps that could
            not be read are left out.
        """
        start_time = time.perf_counter()
        config = self.config
        budget = self._budget(max_tokens_per_step, config)
        requested = strategy or config.default_strategy
        shared_context = dict(global_context or {})
        step_list: list[Step] = []
        chunks: list[Chunk] = []

        try:
            with self._track("process_chain_context", config):
                for raw_step in steps:
                    step_list.append(Step.from_dict(raw_step))

                logger.info(f"Processing context for chain with {len(step_list)} steps")

                chunk_key = self._chunk_key(content, config)
                chunks = self._get_chunks(content, config, chunk_key)

                computed = []

                def produce() -> RoutingPlan:
                    computed.append(True)
                    with self._track("scoring", config):
                        combined_task = " ".join(s.task_text for s in step_list)
                        scored = self.scorer.score_chunks(chunks, combined_task, TaskType.GENERAL)

                    with self._track("routing", config):
                        return self.router.create_routing_plan(
                            scored,
                            step_list,
                            max_tokens_per_step=budget,
                            strategy=requested,
                            global_context=shared_context,
                        )

                if config.enable_caching:
                    routing_key = {
                        "stage": "routing",
                        "chunks": chunk_key,
                        "steps": step_list,
                        "max_tokens_per_step": budget,
                        "strategy": requested,
                    }
                    plan = self.cache.get_or_compute(
                        CacheCategory.ROUTING, routing_key, produce, dependencies=[chunk_key]
                    )
                else:
                    plan = produce()

                per_step = {}
                for route in plan.routes:
                    ordered = sorted(route.chunks, key=lambda c: c.position)
                    per_step[route.step_id] = StepContext(
                        text=assemble_context(ordered),
                        chunks=ordered,
                        shared_with_steps=list(route.shared_with_steps),
                        metadata={
                            "tokens": route.tokens,
                            "budget": route.budget,
                            "chunks_used": len(ordered),
                            "average_relevance": _average_relevance(ordered),
                            "reuse_ratio": route.reuse_ratio,
                            "depends_on": list(route.depends_on),
                            "depth": route.depth,
                            "category": route.category,
                        },
                    )

        except Exception as e:
            logger.error(f"Chain context processing failed: {e}")
            raw_tokens = estimate_tokens(content or "")
            return ChainContextResult(
                per_step_context={
                    step.id: StepContext(
                        text=content,
                        metadata={"tokens": raw_tokens, "chunks_used": 0, "error": str(e)},
                    )
                    for step in step_list
                },
                global_context=shared_context,
                metadata={
                    "total_chunks": 0,
                    "strategy": None,
                    "reuse_efficiency": 0.0,
                    "cached": False,
                    "processing_time_ms": (time.perf_counter() - start_time) * 1000,
                    "error": str(e),
                },
            )

        statistics = plan.statistics()
        logger.info(f"Created context routing for {len(per_step)} steps")

        return ChainContextResult(
            per_step_context=per_step,
            global_context=shared_context,
            metadata={
                "total_chunks": len(chunks),
                "strategy": plan.strategy.value,
                "reuse_efficiency": statistics["reuse_efficiency"],
                "routing": statistics,
                "cached": not computed,
                "processing_time_ms": (time.perf_counter() - start_time) * 1000,
            },
        )

    # =========================================================================
    # ASYNC FACADES
    # =========================================================================

    async def aprocess_context(
        self,
        content: str,
        task: str,
        task_type: "str | TaskType" = "general",
        max_tokens: int | None = None,
    ) -> ContextResult:
        """process_context on a worker thread."""
        return await asyncio.to_thread(self.process_context, content, task, task_type, max_tokens)

    async def aprocess_chain_context(
        self,
        content: str,
        steps: Iterable[Step | Mapping[str, Any]],
        global_context: Mapping[str, Any] | None = None,
        strategy: str | None = None,
        max_tokens_per_step: int | None = None,
    ) -> ChainContextResult:
        """process_chain_context on a worker thread."""
        return await asyncio.to_thread(
            self.process_chain_context,
            content,
            list(steps),
            global_context,
            strategy,
            max_tokens_per_step,
        )

    # =========================================================================
    # MANAGEMENT
    # =========================================================================

    def configure(self, **options: Any) -> ContextConfig:
        """
        Update configuration at runtime.

        Raises:
            ValueError: On unknown options or an invalid resulting configuration
        """
        previous = self.config
        self.config = previous.updated(**options)

        if self._started_sweeper and self.config.cache_sweep_interval != previous.cache_sweep_interval:
            self.cache.close()
            self.cache.start_sweeper(self.config.cache_sweep_interval)

        logger.info(f"Context manager configuration updated: {', '.join(sorted(options))}")
        return self.config

    def update_weights(self, task_type: "str | TaskType", weights: dict[str, float]) -> dict[str, float]:
        """Change scorer weights and drop results computed with the old ones."""
        profile = self.scorer.update_weights(task_type, weights)
        self.cache.invalidate_category(CacheCategory.CONTEXT)
        self.cache.invalidate_category(CacheCategory.ROUTING)
        return profile

    def invalidate_content(self, content: str) -> int:
        """Drop the chunks of a piece of content and every result derived from them."""
        return self.cache.invalidate(
            CacheCategory.CHUNKS, self._chunk_key(content, self.config), cascade=True
        )

    def clear_cache(self) -> int:
        count = self.cache.clear_all()
        logger.info("Context cache cleared")
        return count

    def get_statistics(self) -> dict[str, Any]:
        """Configuration, cache, stage latency and process statistics."""
        return {
            "config": self.config.to_dict(),
            "cache": self.cache.get_stats(),
            "stages": self.metrics.get_stats(),
            "scoring_weights": {
                task_type.value: self.scorer.get_weights(task_type) for task_type in TaskType
            },
            "process": get_process_stats(),
        }

    def close(self) -> None:
        """Stop the background cache sweeper started by this manager."""
        if self._started_sweeper:
            self.cache.close()
            self._started_sweeper = False

    def __enter__(self) -> "ContextManager":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _budget(self, requested: int | None, config: ContextConfig) -> int:
        if requested is None:
            return config.max_context_tokens
        if requested < 1:
            logger.warning(
                f"Ignoring token budget {requested}; using {config.max_context_tokens}"
            )
            return config.max_context_tokens
        return requested

    def _track(self, stage: str, config: ContextConfig) -> LatencyTracker:
        return LatencyTracker(stage, self.metrics, slow_threshold_ms=config.log_slow_stages_ms)

    def _chunk_key(self, content: str, config: ContextConfig) -> str:
        return self.cache.fingerprint({
            "stage": "chunks",
            "content": content,
            "chunk_size": config.chunk_size,
            "chunk_overlap": config.chunk_overlap,
            "preserve_structure": config.preserve_structure,
        })

    def _get_chunks(self, content: str, config: ContextConfig, chunk_key: str) -> list[Chunk]:
        def produce() -> list[Chunk]:
            with self._track("chunking", config):
                return self.chunker.chunk(
                    content,
                    max_chunk_size=config.chunk_size,
                    overlap=config.chunk_overlap,
                    preserve_structure=config.preserve_structure,
                )

        if not config.enable_caching:
            return produce()
        return self.cache.get_or_compute(CacheCategory.CHUNKS, chunk_key, produce)
