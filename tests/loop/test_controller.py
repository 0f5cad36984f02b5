"""Tests for the event-driven self-improvement loop."""

import asyncio
from datetime import timedelta

import pytest

from devmind.events.topics import Topic
from devmind.suggestions.generator import SuggestionGenerator
from devmind.types import ImprovementGoal

AGENT = "CodeReviewAgent"


def _install(safety, source: str):
    path = safety.artifacts.path_for(AGENT)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(source)
    return path


def _topics(bus, pattern="*"):
    return [e.topic for e in reversed(bus.history(pattern, limit=100))]


class FailingGenerator(SuggestionGenerator):
    async def generate(self, request):
        raise RuntimeError("model unavailable")


class RacingGenerator(SuggestionGenerator):
    """Rewrites the artifact while suggestions are being produced."""

    def __init__(self, path, suggestion):
        self._path = path
        self._suggestion = suggestion

    async def generate(self, request):
        self._path.write_text("# edited by hand\n")
        return [self._suggestion]


@pytest.mark.asyncio
async def test_metrics_trigger_full_cycle(loop_factory, agent_source, tmp_path):
    controller, bus, telemetry, ledger, safety = loop_factory()
    path = _install(safety, agent_source)

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.3})
    await controller.drain()

    requested = bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value)[0]
    assert requested.data["source_text"] == agent_source
    assert ImprovementGoal.ERROR_HANDLING.value in requested.data["improvement_goals"]

    completed = bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)[0]
    assert completed.data["applied_change_count"] == 1
    assert "result = self.llm.ask(diff) or ''" in path.read_text()

    assert len(safety.backups.list_backups(AGENT)) == 1
    [record] = ledger.history(AGENT)
    assert record.description == "Automatic optimization with 1 change applied"
    assert telemetry.get(AGENT).last_optimized_at is not None
    assert (tmp_path / "reports" / "codereviewagent-optimization-report.md").exists()
    assert controller.in_flight == set()


@pytest.mark.asyncio
async def test_metrics_handler_does_not_wait_for_optimization(loop_factory, agent_source):
    controller, bus, _, _, safety = loop_factory()
    _install(safety, agent_source)

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.3})
    assert Topic.SELF_IMPROVEMENT_COMPLETED.value not in _topics(bus)

    await controller.drain()
    assert Topic.SELF_IMPROVEMENT_COMPLETED.value in _topics(bus)


@pytest.mark.asyncio
async def test_cooldown_blocks_second_cycle(loop_factory, agent_source, clock):
    controller, bus, _, ledger, safety = loop_factory()
    _install(safety, agent_source)

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.3})
    await controller.drain()
    clock.advance(hours=1)
    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.4})
    await controller.drain()

    assert _topics(bus, "SELF_IMPROVEMENT_REQUESTED") == ["SELF_IMPROVEMENT_REQUESTED"]
    assert len(ledger.history(AGENT)) == 1


@pytest.mark.asyncio
async def test_duplicate_samples_start_one_cycle(loop_factory, agent_source):
    controller, bus, _, _, safety = loop_factory()
    _install(safety, agent_source)

    for rate in (0.3, 0.35, 0.4):
        await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": rate})
    await controller.drain()

    assert len(bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value)) == 1


@pytest.mark.asyncio
async def test_low_feedback_requests_immediately(loop_factory, agent_source):
    controller, bus, telemetry, _, safety = loop_factory()
    _install(safety, agent_source)

    await bus.publish(
        Topic.USER_FEEDBACK_RECEIVED,
        {"agent_id": AGENT, "feedback_score": 2, "comments": "wrong answers"},
    )

    [requested] = bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value)
    assert set(requested.data["improvement_goals"]) == {
        "user_experience", "error_handling", "readability",
    }
    assert telemetry.get(AGENT).user_feedback_score == 2
    await controller.drain()


@pytest.mark.asyncio
async def test_low_feedback_respects_cooldown(loop_factory, agent_source, clock):
    controller, bus, _, ledger, safety = loop_factory()
    _install(safety, agent_source)
    await ledger.record(AGENT, [])
    clock.advance(hours=2)

    await bus.publish(Topic.USER_FEEDBACK_RECEIVED, {"agent_id": AGENT, "feedback_score": 1})
    await controller.drain()

    assert bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value) == []


@pytest.mark.asyncio
async def test_suggestion_timeout_means_no_changes(loop_factory, agent_source, slow_generator):
    controller, bus, _, ledger, safety = loop_factory(generator=slow_generator, timeout=0.05)
    path = _install(safety, agent_source)

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "success_rate": 0.5})
    await controller.drain()

    [completed] = bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)
    assert completed.data["applied_change_count"] == 0
    assert path.read_text() == agent_source
    assert ledger.history(AGENT) == []
    assert safety.backups.list_backups(AGENT) == []


@pytest.mark.asyncio
async def test_generator_failure_means_no_changes(loop_factory, agent_source):
    controller, bus, _, ledger, safety = loop_factory(generator=FailingGenerator())
    _install(safety, agent_source)

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "success_rate": 0.5})
    await controller.drain()

    assert bus.history(Topic.SELF_IMPROVEMENT_ERROR.value) == []
    assert bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)[0].data["applied_change_count"] == 0


@pytest.mark.asyncio
async def test_regression_after_mutation_reverts(loop_factory, agent_source, audit, clock):
    controller, bus, _, ledger, safety = loop_factory()
    path = _install(safety, agent_source)
    await audit.log_error(AGENT, "TypeError: NoneType", timestamp=clock.now + timedelta(minutes=1))

    await bus.publish(
        Topic.SELF_IMPROVEMENT_REQUESTED,
        {"agent_id": AGENT, "source_text": agent_source, "improvement_goals": ["errorHandling"]},
        source="review-ui",
    )
    await controller.drain()

    assert path.read_text() == agent_source
    [reverted] = bus.history(Topic.SELF_IMPROVEMENT_REVERTED.value)
    assert reverted.data["restored_from"].endswith(
        f"code-review-agent.py.backup-{int(clock.now.timestamp() * 1000)}"
    )
    [error] = bus.history(Topic.SELF_IMPROVEMENT_ERROR.value)
    assert "rolled back" in error.data["error"]
    assert error.data["requester"] == "review-ui"
    assert bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value) == []
    assert ledger.history(AGENT) == []


@pytest.mark.asyncio
async def test_artifact_edited_during_generation_is_not_overwritten(
    loop_factory, agent_source, tmp_path, make_suggestion
):
    path = tmp_path / "agents" / "code-review-agent.py"
    controller, bus, _, ledger, safety = loop_factory(
        generator=RacingGenerator(path, make_suggestion())
    )
    _install(safety, agent_source)

    await controller.improve(AGENT, agent_source, {ImprovementGoal.PERFORMANCE})

    assert path.read_text() == "# edited by hand\n"
    [error] = bus.history(Topic.SELF_IMPROVEMENT_ERROR.value)
    assert "changed" in error.data["error"]
    assert ledger.history(AGENT) == []


@pytest.mark.asyncio
async def test_request_without_artifact_returns_improved_source(loop_factory, agent_source):
    controller, bus, _, ledger, _ = loop_factory()

    outcome = await controller.improve("ExternalAgent", agent_source, set())

    assert outcome.success
    assert "or ''" in outcome.improved_source
    completed = bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)[0]
    assert completed.data["improved_source"] == outcome.improved_source
    assert len(ledger.history("ExternalAgent")) == 1


@pytest.mark.asyncio
async def test_missing_artifact_skips_request(loop_factory):
    controller, bus, *_ = loop_factory()

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.5})
    await controller.drain()

    assert bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value) == []
    assert controller.in_flight == set()


@pytest.mark.asyncio
async def test_runtime_error_in_metrics_is_recorded(loop_factory, audit):
    controller, bus, *_ = loop_factory()

    await bus.publish(
        Topic.AGENT_METRICS_UPDATED,
        {"agent_id": AGENT, "success_rate": 0.95, "error": "ValueError: empty diff"},
    )
    await controller.drain()

    [entry] = await audit.recent_errors(AGENT)
    assert entry.detail == "ValueError: empty diff"


@pytest.mark.asyncio
async def test_analysis_request(loop_factory, audit):
    controller, bus, telemetry, *_ = loop_factory()
    await telemetry.record_metrics(AGENT, {"error_rate": 0.2})
    await audit.log_error(AGENT, "timeout")

    await bus.publish(Topic.PERFORMANCE_ANALYSIS_REQUESTED, {"agent_id": AGENT}, source="dashboard")

    [completed] = bus.history(Topic.PERFORMANCE_ANALYSIS_COMPLETED.value)
    analysis = completed.data["analysis"]
    assert analysis["agent_id"] == AGENT
    assert analysis["error_rate"] == 0.2
    assert analysis["error_patterns"][0]["message"] == "timeout"
    assert completed.data["requester"] == "dashboard"


@pytest.mark.asyncio
async def test_periodic_analysis_and_system_report(loop_factory, agent_source, tmp_path):
    controller, bus, telemetry, _, safety = loop_factory()
    _install(safety, agent_source)
    await telemetry.record_metrics(AGENT, {"success_rate": 0.5})
    await telemetry.record_metrics("HealthyAgent", {"success_rate": 0.99})

    assert controller.registered_agents() == [AGENT, "HealthyAgent"]
    requested = await controller.run_periodic_analysis()
    await controller.drain()
    assert requested == [AGENT]

    path = await controller.generate_system_report()
    assert path == tmp_path / "reports" / "system-performance-report.md"
    content = path.read_text()
    assert f"| {AGENT} |" in content
    assert "| HealthyAgent |" in content


@pytest.mark.asyncio
async def test_detach_stops_handling(loop_factory):
    controller, bus, telemetry, *_ = loop_factory()
    controller.detach()

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.5})
    assert not telemetry.has(AGENT)


@pytest.mark.asyncio
async def test_unreadable_artifact_releases_agent(loop_factory, agent_source):
    controller, bus, _, _, safety = loop_factory()
    path = _install(safety, agent_source)
    path.write_bytes(b"\xff\xfe not utf-8")

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.3})
    await controller.drain()

    assert controller.in_flight == set()
    assert bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value) == []
    [error] = bus.history(Topic.SELF_IMPROVEMENT_ERROR.value)
    assert error.data["error"].startswith("Optimization request failed")

    path.write_text(agent_source)
    assert await controller.evaluate(AGENT)
    await controller.drain()
    assert len(bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)) == 1


@pytest.mark.asyncio
async def test_rolled_back_attempt_starts_cooldown(loop_factory, agent_source, audit, clock):
    controller, bus, telemetry, ledger, safety = loop_factory()
    path = _install(safety, agent_source)
    await audit.log_error(AGENT, "TypeError: NoneType", timestamp=clock.now + timedelta(minutes=1))

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.3})
    await controller.drain()
    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.4})
    await controller.drain()

    assert len(bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value)) == 1
    assert len(bus.history(Topic.SELF_IMPROVEMENT_REVERTED.value)) == 1
    assert len(safety.backups.list_backups(AGENT)) == 1
    assert path.read_text() == agent_source
    assert ledger.history(AGENT) == []
    assert telemetry.get(AGENT).last_optimized_at == clock.now
    assert not ledger.can_optimize(AGENT)


@pytest.mark.asyncio
async def test_repeated_low_feedback_starts_one_cycle(loop_factory, agent_source):
    controller, bus, _, _, safety = loop_factory()
    _install(safety, agent_source)

    await bus.publish(Topic.USER_FEEDBACK_RECEIVED, {"agent_id": AGENT, "feedback_score": 2})
    await bus.publish(Topic.USER_FEEDBACK_RECEIVED, {"agent_id": AGENT, "feedback_score": 1})
    await controller.drain()

    assert len(bus.history(Topic.SELF_IMPROVEMENT_REQUESTED.value)) == 1
    assert bus.history(Topic.SELF_IMPROVEMENT_ERROR.value) == []
    assert len(bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)) == 1
    assert controller.in_flight == set()


@pytest.mark.asyncio
async def test_improve_refused_while_cycle_running(loop_factory, agent_source, slow_generator):
    controller, bus, _, _, safety = loop_factory(generator=slow_generator, timeout=0.5)
    _install(safety, agent_source)

    await bus.publish(Topic.AGENT_METRICS_UPDATED, {"agent_id": AGENT, "error_rate": 0.3})
    await asyncio.sleep(0.1)
    assert controller.in_flight == {AGENT}

    outcome = await controller.improve(AGENT, agent_source, set(), requester="review-ui")

    assert outcome.error == "Optimization already in progress"
    assert controller.in_flight == {AGENT}
    [error] = bus.history(Topic.SELF_IMPROVEMENT_ERROR.value)
    assert error.data["requester"] == "review-ui"

    await controller.drain()
    assert controller.in_flight == set()
    assert len(bus.history(Topic.SELF_IMPROVEMENT_COMPLETED.value)) == 1
