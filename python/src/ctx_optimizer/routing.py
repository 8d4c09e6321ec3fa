"""
Context routing for multi-step workflows.

Distributes chunks across the steps of a chain under a per-step token budget:
- Strategy inference from the step dependency shape
- Sequential, parallel, hierarchical and adaptive strategies
- Reuse accounting across the finished plan
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from .budget import merge_within_budget, select_within_budget, total_tokens
from .common_types import Chunk, ChunkKind, ScoredChunk, Step
from .profiling import profile_latency
from .relevance import RelevanceScorer, has_comment_markers

logger = logging.getLogger(__name__)


class RoutingStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    HIERARCHICAL = "hierarchical"
    ADAPTIVE = "adaptive"

    @classmethod
    def resolve(cls, value: "str | RoutingStrategy") -> "RoutingStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown routing strategy: {value!r}") from None


# Share of the step budget reserved for the chunks common to all parallel steps
PARALLEL_SHARED_RATIO = 0.6
# Budget share for steps below the roots of the dependency graph
HIERARCHY_CHILD_RATIO = 0.7
# Base score a chunk needs to enter the refactor pool
REFACTOR_POOL_MIN_SCORE = 0.7
# Score carried by chunks that arrive unscored
BASE_SCORE = 0.5

COMPLEXITY_FACTORS = {
    "simple": 0.6,
    "moderate": 1.0,
    "complex": 1.3,
    "very_complex": 1.5,
}

STEP_CATEGORIES = [
    ("analysis", re.compile(r"analyz|analys|review|inspect|check")),
    ("refactor", re.compile(r"refactor|improve|optimi[sz]e|clean")),
    ("generate", re.compile(r"generate|create|build|implement")),
]


@dataclass
class StepRoute:
    """The chunks routed to one step, with reuse and strategy annotations."""
    step_id: str
    step_name: str
    chunks: list[ScoredChunk]
    budget: float
    depends_on: tuple[str, ...] = ()
    shared_with_steps: list[str] = field(default_factory=list)
    reuse_ratio: float = 0.0

    # Strategy annotations
    depth: int | None = None
    siblings: list[str] = field(default_factory=list)
    category: str | None = None

    @property
    def tokens(self) -> int:
        return total_tokens(self.chunks)

    @property
    def chunk_ids(self) -> list[str]:
        return [c.id for c in self.chunks]

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "step_name": self.step_name,
            "chunk_ids": self.chunk_ids,
            "tokens": self.tokens,
            "budget": self.budget,
            "depends_on": list(self.depends_on),
            "shared_with_steps": list(self.shared_with_steps),
            "reuse_ratio": self.reuse_ratio,
            "depth": self.depth,
            "siblings": list(self.siblings),
            "category": self.category,
        }


@dataclass
class RoutingPlan:
    """Per-step routes for a whole chain."""
    strategy: RoutingStrategy
    routes: list[StepRoute] = field(default_factory=list)
    global_context: dict[str, Any] = field(default_factory=dict)
    fallback: bool = False  # True when the requested strategy failed

    def get(self, step_id: str) -> StepRoute | None:
        for route in self.routes:
            if route.step_id == step_id:
                return route
        return None

    def statistics(self) -> dict[str, Any]:
        """Aggregate figures over the plan."""
        assignments = sum(len(r.chunks) for r in self.routes)
        distinct = len({c.id for r in self.routes for c in r.chunks})
        step_count = len(self.routes)

        return {
            "strategy": self.strategy.value,
            "fallback": self.fallback,
            "total_steps": step_count,
            "distinct_chunks": distinct,
            "total_assignments": assignments,
            "avg_chunks_per_step": assignments / step_count if step_count else 0.0,
            "avg_reuse_ratio": (
                sum(r.reuse_ratio for r in self.routes) / step_count if step_count else 0.0
            ),
            "total_tokens": sum(r.tokens for r in self.routes),
            "reuse_efficiency": assignments / distinct if distinct else 0.0,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "fallback": self.fallback,
            "routes": [r.to_dict() for r in self.routes],
            "statistics": self.statistics(),
        }


@dataclass
class _RoutingInput:
    chunks: list[ScoredChunk]
    steps: list[Step]
    max_tokens: float


# =============================================================================
# DEPENDENCY ANALYSIS
# =============================================================================

def compute_depths(steps: Sequence[Step]) -> dict[str, int]:
    """
    Depth of every step in the dependency graph, by fixed-point iteration.

    Roots are depth 0; any other step is one deeper than its deepest
    dependency. Steps whose depth never resolves (unknown dependency ids,
    cycles) are depth 0.
    """
    depths = {s.id: 0 for s in steps if not s.dependencies}

    changed = True
    while changed:
        changed = False
        for step in steps:
            if step.id in depths:
                continue
            dep_depths = [depths.get(dep) for dep in step.dependencies]
            if all(d is not None for d in dep_depths):
                depths[step.id] = max(dep_depths) + 1
                changed = True

    for step in steps:
        if step.id not in depths:
            logger.warning(f"Unresolved dependencies for step {step.id}, treating it as a root")
            depths[step.id] = 0

    return depths


def categorize_step(step: Step) -> str:
    """Classify a step as analysis / refactor / generate / general from its wording."""
    combined = f"{step.name} {step.description}".lower()
    for category, pattern in STEP_CATEGORIES:
        if pattern.search(combined):
            return category
    return "general"


def complexity_factor(complexity: str | None) -> float:
    key = str(complexity or "moderate").strip().lower().replace("-", "_").replace(" ", "_")
    return COMPLEXITY_FACTORS.get(key, 1.0)


# =============================================================================
# ROUTER
# =============================================================================

class ContextRouter:
    """Builds routing plans that hand each step the chunks most relevant to it."""

    def __init__(self, scorer: RelevanceScorer | None = None):
        self.scorer = scorer or RelevanceScorer()
        self._strategies = {
            RoutingStrategy.SEQUENTIAL: self._route_sequential,
            RoutingStrategy.PARALLEL: self._route_parallel,
            RoutingStrategy.HIERARCHICAL: self._route_hierarchical,
            RoutingStrategy.ADAPTIVE: self._route_adaptive,
        }

    @profile_latency("routing.infer_strategy")
    def infer_strategy(self, steps: Sequence[Step]) -> RoutingStrategy:
        """
        Pick a strategy from the shape of the step graph.

        - more than two independent steps: parallel
        - any step with several dependencies: hierarchical
        - a strict linear chain: sequential
        - anything else: adaptive
        """
        if len(steps) > 2 and all(not s.dependencies for s in steps):
            return RoutingStrategy.PARALLEL

        if any(len(s.dependencies) > 1 for s in steps):
            return RoutingStrategy.HIERARCHICAL

        is_chain = all(
            not step.dependencies if i == 0 else step.dependencies == (steps[i - 1].id,)
            for i, step in enumerate(steps)
        )
        if is_chain:
            return RoutingStrategy.SEQUENTIAL

        return RoutingStrategy.ADAPTIVE

    def create_routing_plan(
        self,
        chunks: Iterable[Chunk | ScoredChunk],
        steps: Iterable[Step | Mapping[str, Any]],
        max_tokens_per_step: float = 8000,
        strategy: "str | RoutingStrategy | None" = None,
        global_context: Mapping[str, Any] | None = None,
    ) -> RoutingPlan:
        """
        Create a routing plan for a chain of steps.

        Args:
            chunks: Chunks to distribute; unscored chunks carry a 0.5 base score
            steps: Steps (or step dicts) in chain order
            max_tokens_per_step: Per-step token budget
            strategy: Force a strategy instead of inferring one
            global_context: Shared context attached to the plan as-is

        Returns:
            RoutingPlan with one route per step. If the chosen strategy fails
            (unknown names included) the plan falls back to sequential routing.

        Raises:
            ValueError: On malformed steps or a negative budget
        """
        if max_tokens_per_step < 0:
            raise ValueError("max_tokens_per_step must not be negative")

        base = [
            c if isinstance(c, ScoredChunk) else ScoredChunk(chunk=c, score=BASE_SCORE)
            for c in chunks
        ]
        step_list = [Step.from_dict(s) for s in steps]
        routing_input = _RoutingInput(chunks=base, steps=step_list, max_tokens=max_tokens_per_step)
        context = dict(global_context or {})

        logger.info(f"Creating routing plan for {len(step_list)} steps with {len(base)} chunks")

        try:
            chosen = (
                RoutingStrategy.resolve(strategy)
                if strategy is not None
                else self.infer_strategy(step_list)
            )
            logger.info(f"Using {chosen.value} routing strategy")

            routes = self._strategies[chosen](routing_input)
            plan = RoutingPlan(strategy=chosen, routes=routes, global_context=context)

        except Exception as e:
            logger.error(f"Routing plan creation failed ({e}), falling back to sequential")
            plan = RoutingPlan(
                strategy=RoutingStrategy.SEQUENTIAL,
                routes=self._route_sequential(routing_input),
                global_context=context,
                fallback=True,
            )

        self._apply_reuse(plan.routes)
        logger.info(f"Routing plan created with {len(plan.routes)} routes")
        return plan

    def get_statistics(self, plan: RoutingPlan) -> dict[str, Any]:
        return plan.statistics()

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    def _score_for_step(
        self,
        pool: list[ScoredChunk],
        task: str,
        task_type: str | None,
        total: int,
    ) -> list[ScoredChunk]:
        return self.scorer.score_chunks(
            pool, task, task_type or "general", total_chunks=total
        )

    def _route_sequential(self, data: _RoutingInput) -> list[StepRoute]:
        """Each step gets its own most relevant chunks."""
        routes = []
        total = len(data.chunks)

        for i, step in enumerate(data.steps):
            scored = self._score_for_step(data.chunks, step.task_text, step.task_type, total)
            selected = select_within_budget(scored, data.max_tokens)

            routes.append(StepRoute(
                step_id=step.id,
                step_name=step.name,
                chunks=selected,
                budget=data.max_tokens,
                depends_on=step.dependencies or ((data.steps[i - 1].id,) if i > 0 else ()),
            ))

        return routes

    def _route_parallel(self, data: _RoutingInput) -> list[StepRoute]:
        """All steps share a common base, topped up with step-specific chunks."""
        total = len(data.chunks)
        all_tasks = " ".join(s.task_text for s in data.steps)

        global_scored = self._score_for_step(data.chunks, all_tasks, "general", total)
        shared = select_within_budget(global_scored, data.max_tokens * PARALLEL_SHARED_RATIO)

        routes = []
        for step in data.steps:
            specific = self._score_for_step(data.chunks, step.task_text, step.task_type, total)
            combined = merge_within_budget(shared, specific, data.max_tokens)

            routes.append(StepRoute(
                step_id=step.id,
                step_name=step.name,
                chunks=combined,
                budget=data.max_tokens,
                depends_on=step.dependencies,
            ))

        return routes

    def _route_hierarchical(self, data: _RoutingInput) -> list[StepRoute]:
        """Roots get the full budget, deeper steps a reduced one."""
        total = len(data.chunks)
        depths = compute_depths(data.steps)

        routes = []
        for step in data.steps:
            depth = depths[step.id]
            budget = data.max_tokens if depth == 0 else data.max_tokens * HIERARCHY_CHILD_RATIO

            scored = self._score_for_step(data.chunks, step.task_text, step.task_type, total)
            selected = select_within_budget(scored, budget)

            routes.append(StepRoute(
                step_id=step.id,
                step_name=step.name,
                chunks=selected,
                budget=budget,
                depends_on=step.dependencies,
                depth=depth,
                siblings=[
                    other.id for other in data.steps
                    if other.id != step.id and depths[other.id] == depth
                ],
            ))

        return routes

    def _route_adaptive(self, data: _RoutingInput) -> list[StepRoute]:
        """Per-category chunk pools and complexity-scaled budgets."""
        total = len(data.chunks)
        pools = {
            "analysis": [
                c for c in data.chunks
                if c.kind in (ChunkKind.FUNCTION, ChunkKind.CLASS, ChunkKind.METHOD)
            ],
            "refactor": [c for c in data.chunks if c.score > REFACTOR_POOL_MIN_SCORE],
            "generate": [c for c in data.chunks if has_comment_markers(c.text)],
            "general": list(data.chunks),
        }

        routes = []
        for step in data.steps:
            category = categorize_step(step)
            pool = pools[category] or pools["general"]
            budget = data.max_tokens * complexity_factor(step.complexity)

            scored = self._score_for_step(
                pool, step.task_text, step.task_type or category, total
            )
            selected = select_within_budget(scored, budget)

            routes.append(StepRoute(
                step_id=step.id,
                step_name=step.name,
                chunks=selected,
                budget=budget,
                depends_on=step.dependencies,
                category=category,
            ))

        return routes

    # =========================================================================
    # REUSE
    # =========================================================================

    def _apply_reuse(self, routes: list[StepRoute]) -> None:
        """Derive reuse ratios and sharing links from the finished plan."""
        usage: dict[str, list[str]] = {}
        for route in routes:
            for chunk in route.chunks:
                users = usage.setdefault(chunk.id, [])
                if route.step_id not in users:
                    users.append(route.step_id)

        for route in routes:
            if not route.chunks:
                route.reuse_ratio = 0.0
                route.shared_with_steps = []
                continue

            reused = sum(1 for c in route.chunks if len(usage[c.id]) > 1)
            route.reuse_ratio = reused / len(route.chunks)

            shared: list[str] = []
            for chunk in route.chunks:
                for step_id in usage[chunk.id]:
                    if step_id != route.step_id and step_id not in shared:
                        shared.append(step_id)
            route.shared_with_steps = shared
