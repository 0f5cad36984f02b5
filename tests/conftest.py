"""Shared test fixtures — fake LLM and a wired optimization loop on temp dirs."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from devmind.analysis.reports import ReportWriter
from devmind.audit import AuditTrail
from devmind.controller import SelfImprovementController
from devmind.events.bus import EventBus
from devmind.ledger import OptimizationLedger
from devmind.llm.base import BaseLLMProvider, LLMResponse
from devmind.mutation.applier import MutationApplier
from devmind.mutation.safety import ArtifactStore, BackupStore, SafetyManager
from devmind.policy.optimization import OptimizationPolicy
from devmind.suggestions.generator import StaticSuggestionGenerator, SuggestionGenerator
from devmind.telemetry.store import TelemetryStore
from devmind.types import Suggestion


class MockLLMProvider(BaseLLMProvider):
    """LLM provider that returns canned responses. No API calls."""

    def __init__(self, responses: list[LLMResponse] | None = None, error: Exception | None = None):
        self._responses = responses or []
        self._error = error
        self._call_count = 0
        self.calls: list[dict] = []  # record all calls for assertions

    async def complete(self, messages, system=None, max_tokens=2000, temperature=0.2):
        self.calls.append({
            "messages": messages,
            "system": system,
            "max_tokens": max_tokens,
        })
        if self._error:
            raise self._error
        if self._call_count < len(self._responses):
            resp = self._responses[self._call_count]
            self._call_count += 1
            return resp
        return LLMResponse(content='{"suggestions": []}', stop_reason="end_turn")


class SlowGenerator(SuggestionGenerator):
    """Never answers within any reasonable timeout."""

    async def generate(self, request):
        await asyncio.sleep(10)
        return []


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


AGENT_SOURCE = '''class CodeReviewAgent:
    def review(self, diff):
        result = self.llm.ask(diff)
        return result
'''


def tighten_suggestion(confidence: float = 0.9) -> Suggestion:
    return Suggestion(
        description="Guard LLM call",
        current_implementation="result = self.llm.ask(diff)",
        suggested_implementation="result = self.llm.ask(diff) or ''",
        expected_improvement="fewer None results",
        confidence=confidence,
    )


@pytest.fixture
def mock_llm():
    return MockLLMProvider()


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def audit(tmp_path):
    trail = AuditTrail(str(tmp_path / "audit.db"))
    await trail.initialize()
    yield trail
    await trail.close()


@pytest.fixture
def loop_factory(tmp_path, audit, clock):
    """Build a wired controller around a given suggestion generator."""

    def _factory(generator: SuggestionGenerator | None = None, timeout: float = 5.0):
        bus = EventBus()
        telemetry = TelemetryStore(audit_trail=audit)
        ledger = OptimizationLedger(telemetry, audit_trail=audit, clock=clock)
        policy = OptimizationPolicy(telemetry, ledger)
        artifacts = ArtifactStore(tmp_path / "agents")
        safety = SafetyManager(
            artifacts, BackupStore(tmp_path / "backups"), audit_trail=audit, clock=clock
        )
        controller = SelfImprovementController(
            bus=bus,
            telemetry=telemetry,
            policy=policy,
            ledger=ledger,
            applier=MutationApplier(),
            safety=safety,
            generator=generator or StaticSuggestionGenerator([tighten_suggestion()]),
            audit_trail=audit,
            reports=ReportWriter(tmp_path / "reports"),
            suggestion_timeout=timeout,
        )
        controller.attach()
        return controller, bus, telemetry, ledger, safety

    return _factory


@pytest.fixture
def agent_source():
    return AGENT_SOURCE


@pytest.fixture
def make_suggestion():
    return tighten_suggestion


@pytest.fixture
def slow_generator():
    return SlowGenerator()


@pytest.fixture
def mock_llm_with_responses():
    def _factory(responses: list[LLMResponse] | None = None, error: Exception | None = None):
        return MockLLMProvider(responses=responses, error=error)
    return _factory
