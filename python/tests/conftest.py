"""
Pytest configuration and fixtures for ctx-optimizer tests.
"""

from typing import Generator

import pytest

from ctx_optimizer.cache_manager import CacheManager
from ctx_optimizer.chunking import ContextChunker
from ctx_optimizer.config import ContextConfig
from ctx_optimizer.context_manager import ContextManager
from ctx_optimizer.relevance import RelevanceScorer
from ctx_optimizer.routing import ContextRouter


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context_config() -> ContextConfig:
    """Create a test configuration independent of the environment."""
    return ContextConfig(
        max_context_tokens=8000,
        chunk_size=1000,
        chunk_overlap=100,
        relevance_threshold=0.6,
        preserve_structure=True,
        enable_caching=True,
        cache_sweep_interval=300.0,
        default_strategy=None,
        log_slow_stages_ms=1000.0,
    )


@pytest.fixture
def cache(clock: FakeClock) -> Generator[CacheManager, None, None]:
    """Create a CacheManager driven by the fake clock."""
    manager = CacheManager(clock=clock)
    yield manager
    manager.close()


@pytest.fixture
def chunker() -> ContextChunker:
    return ContextChunker()


@pytest.fixture
def scorer(clock: FakeClock) -> RelevanceScorer:
    return RelevanceScorer(clock=clock)


@pytest.fixture
def router(scorer: RelevanceScorer) -> ContextRouter:
    return ContextRouter(scorer)


@pytest.fixture
def context_manager(
    context_config: ContextConfig, clock: FakeClock
) -> Generator[ContextManager, None, None]:
    """Create a ContextManager without a background sweeper."""
    manager = ContextManager(config=context_config, clock=clock, start_sweeper=False)
    yield manager
    manager.close()


@pytest.fixture
def sample_js() -> str:
    """Small JavaScript module with several top-level declarations."""
    return '''import { readFile } from "fs";

// Parses a user record
function parseUser(raw) {
  if (raw === null) {
    throw new Error("null user record");
  }
  return { id: raw.id, name: raw.name };
}

class UserStore {
  constructor() {
    this.users = new Map();
  }

  add(user) {
    this.users.set(user.id, user);
  }
}

const DEFAULT_LIMIT = 50;

export function listUsers(store, limit = DEFAULT_LIMIT) {
  return Array.from(store.users.values()).slice(0, limit);
}
'''


@pytest.fixture
def sample_python() -> str:
    return '''import os


def hello_world():
    """Say hello."""
    print("Hello, World!")


def add(a: int, b: int) -> int:
    """Add two numbers."""
    return a + b


class Calculator:
    """Simple calculator."""

    def multiply(self, x: int, y: int) -> int:
        return x * y
'''


@pytest.fixture
def sample_markdown() -> str:
    return '''Intro paragraph before any heading.

# Installation

Run the installer and restart the shell.

## Configuration

Set the environment variables described below.

```bash
# this is a shell comment, not a heading
export CTX_CHUNK_SIZE=500
```

# Usage

Call the manager with your content and task.
'''


@pytest.fixture
def function_only_code() -> str:
    """A single 50-line JavaScript function."""
    body = "\n".join(
        f"  total += items[{i}].price * items[{i}].quantity;" for i in range(48)
    )
    return f"function computeTotal(items) {{\n{body}\n}}"
