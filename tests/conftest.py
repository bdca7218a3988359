"""
Shared fixtures: in-memory search adapters and an agent loop wired to stubs.

No test needs Azure Search or a model API.
"""

import asyncio

import pytest

from cardsage.agent.loop import AgentLoop
from cardsage.agent.providers import ProviderRegistry
from cardsage.agent.tools import build_tool_registry
from cardsage.agent.types import SearchHit
from cardsage.core.errors import RetrievalUnavailableError


class FakeAdapter:
    """Stands in for RetrievalAdapter: query -> canned hits, or a simulated outage."""

    def __init__(self, hits=None, error=None, delay=0.0):
        self.hits = hits or {}
        self.error = error
        self.delay = delay
        self.queries = []
        self.cancelled = False

    async def search(self, query, top_k=None):
        self.queries.append(query)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled = True
                raise
        if self.error is not None:
            raise self.error
        return list(self.hits.get(query, []))


RULE_HITS = [
    SearchHit(score=7.5, text="The Battle Phase is divided into the Start Step, Battle Step, Damage Step and End Step."),
    SearchHit(score=4.2, text="A monster can only attack once per Battle Phase unless a card effect says otherwise."),
]


@pytest.fixture
def rules_adapter():
    return FakeAdapter({"battle phase": RULE_HITS})


@pytest.fixture
def information_adapter():
    return FakeAdapter()


@pytest.fixture
def tool_registry(information_adapter, rules_adapter):
    return build_tool_registry(information=information_adapter, rules=rules_adapter, timeout=1.0)


@pytest.fixture
def make_loop(tool_registry):
    """Build an AgentLoop around the given backends (key -> backend)."""

    def _make(*backends, max_steps=8, model_timeout=1.0, tools=None):
        registry = ProviderRegistry({b.descriptor.key: b for b in backends})
        return AgentLoop(registry, tools or tool_registry, max_steps=max_steps, model_timeout=model_timeout)

    return _make


@pytest.fixture
def unavailable_adapter():
    return FakeAdapter(error=RetrievalUnavailableError("Search index 'rules' timed out"))


@pytest.fixture
def fake_adapter():
    """The FakeAdapter class, for tests that need a custom one."""
    return FakeAdapter
