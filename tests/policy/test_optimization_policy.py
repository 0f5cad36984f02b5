"""Tests for the optimization policy and the ledger's cooldown."""

import pytest

from devmind.ledger import OptimizationLedger
from devmind.policy.optimization import OptimizationPolicy, PolicyThresholds
from devmind.telemetry.store import TelemetryStore
from devmind.types import AppliedChange, ImprovementGoal, MutationType


@pytest.fixture
def policy_setup(clock):
    telemetry = TelemetryStore()
    ledger = OptimizationLedger(telemetry, clock=clock)
    return telemetry, ledger, OptimizationPolicy(telemetry, ledger)


@pytest.mark.asyncio
async def test_no_metrics_never_triggers(policy_setup):
    _, _, policy = policy_setup
    assert policy.should_optimize("Unknown") is False
    assert policy.determine_goals("Unknown") == {
        ImprovementGoal.PERFORMANCE,
        ImprovementGoal.ERROR_HANDLING,
        ImprovementGoal.READABILITY,
    }


@pytest.mark.asyncio
async def test_high_error_rate_triggers_with_error_handling_goal(policy_setup):
    telemetry, _, policy = policy_setup
    await telemetry.record_metrics("A", {"error_rate": 0.2, "success_rate": 0.9})

    assert policy.should_optimize("A") is True
    assert ImprovementGoal.ERROR_HANDLING in policy.determine_goals("A")


@pytest.mark.asyncio
async def test_each_threshold_trips(policy_setup):
    telemetry, _, policy = policy_setup
    await telemetry.record_metrics("Low", {"success_rate": 0.79})
    await telemetry.record_feedback("Unhappy", 3.4)
    for rt in [100, 200, 300, 400, 500]:
        await telemetry.record_metrics("Slow", {"response_time": rt})
    await telemetry.record_metrics("Fine", {"error_rate": 0.15, "success_rate": 0.8})

    assert policy.should_optimize("Low")
    assert policy.should_optimize("Unhappy")
    assert policy.should_optimize("Slow")
    assert not policy.should_optimize("Fine")


@pytest.mark.asyncio
async def test_cooldown_dominates_thresholds(policy_setup, clock):
    telemetry, ledger, policy = policy_setup
    await telemetry.record_metrics("A", {"error_rate": 0.9, "success_rate": 0.1})
    await ledger.record("A", [AppliedChange(description="x")])

    clock.advance(hours=1)
    assert policy.should_optimize("A") is False
    decision = policy.evaluate("A")
    assert decision.cooldown_active is True
    assert decision.reasons

    clock.advance(hours=23)
    assert ledger.can_optimize("A") is False  # exactly 24h is not enough

    clock.advance(seconds=1)
    assert policy.should_optimize("A") is True


@pytest.mark.asyncio
async def test_goal_derivation(policy_setup):
    telemetry, _, policy = policy_setup
    for i in range(5):
        await telemetry.record_metrics(
            "A", {"response_time": 100 + i * 50, "token_usage": 1000 + i * 100}
        )
    await telemetry.record_feedback("A", 3.9)

    assert policy.determine_goals("A") == {
        ImprovementGoal.RESPONSE_TIME,
        ImprovementGoal.PERFORMANCE,
        ImprovementGoal.TOKEN_EFFICIENCY,
        ImprovementGoal.USER_EXPERIENCE,
        ImprovementGoal.READABILITY,
    }

    await telemetry.record_metrics("Healthy", {"success_rate": 1.0})
    assert policy.determine_goals("Healthy") == {
        ImprovementGoal.PERFORMANCE,
        ImprovementGoal.READABILITY,
    }


def test_immediate_feedback_rule(policy_setup):
    _, _, policy = policy_setup
    assert policy.is_low_feedback(2.9)
    assert not policy.is_low_feedback(3.0)
    assert policy.immediate_goals() == {
        ImprovementGoal.USER_EXPERIENCE,
        ImprovementGoal.ERROR_HANDLING,
        ImprovementGoal.READABILITY,
    }


@pytest.mark.asyncio
async def test_thresholds_are_tunable(clock):
    telemetry = TelemetryStore()
    ledger = OptimizationLedger(telemetry, clock=clock)
    policy = OptimizationPolicy(telemetry, ledger, PolicyThresholds(max_error_rate=0.5))
    await telemetry.record_metrics("A", {"error_rate": 0.2})
    assert policy.should_optimize("A") is False


@pytest.mark.asyncio
async def test_ledger_record_and_fifo_bound(clock, audit):
    telemetry = TelemetryStore(audit_trail=audit, optimization_history_limit=10)
    ledger = OptimizationLedger(telemetry, audit_trail=audit, clock=clock)
    await telemetry.record_metrics("A", {"success_rate": 0.8})

    first = await ledger.record("A", [
        AppliedChange(mutation_type=MutationType.PROMPT, description="p"),
        AppliedChange(description="c"),
    ])
    assert first.mutation_type == MutationType.PROMPT
    assert first.description == "Automatic optimization with 2 changes applied"
    assert first.before.value == 0.8
    assert first.after.value == pytest.approx(0.88)
    assert telemetry.get("A").last_optimized_at == clock.now

    for i in range(11):
        clock.advance(minutes=1)
        await ledger.record("A", [AppliedChange(description=str(i))])

    history = ledger.history("A")
    assert len(history) == 10
    assert first.id not in {r.id for r in history}
    assert history[-1].timestamp == clock.now

    entries = await audit.query(agent_id="A", action="optimization")
    assert len(entries) == 12


@pytest.mark.asyncio
async def test_ledger_after_estimate_capped(clock):
    telemetry = TelemetryStore()
    ledger = OptimizationLedger(telemetry, clock=clock)
    record = await ledger.record("A", [])
    assert record.mutation_type == MutationType.CODE
    assert record.after.value == 1.0
    assert record.description == "Automatic optimization with 0 changes applied"


@pytest.mark.asyncio
async def test_rolled_back_attempt_blocks_without_history(clock):
    telemetry = TelemetryStore()
    ledger = OptimizationLedger(telemetry, clock=clock)
    await ledger.mark_attempt("A")

    assert ledger.history("A") == []
    assert not ledger.can_optimize("A")
    clock.advance(hours=25)
    assert ledger.can_optimize("A")
