"""Optimization Policy — decides whether and how an agent gets optimized.

The policy reads metrics, never writes them. A verdict requires both an
elapsed cooldown and at least one tripped criterion; goals are derived
from the same metrics so the generator knows what to work on.
"""

from __future__ import annotations

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

from devmind.analysis.trend import trend
from devmind.ledger import OptimizationLedger
from devmind.telemetry.store import TelemetryStore
from devmind.types import AgentId, ImprovementGoal, Trend, sorted_goals


class PolicyThresholds(BaseSettings):
    """Trigger thresholds for automatic optimization."""

    max_error_rate: float = 0.15
    min_success_rate: float = 0.8
    min_feedback_score: float = 3.5

    # Goal derivation
    goal_error_rate: float = 0.1
    goal_feedback_score: float = 4.0

    # Feedback below this requests an optimization immediately
    immediate_feedback_score: float = 3.0

    model_config = {"env_prefix": "DEVMIND_POLICY_"}


DEFAULT_GOALS = frozenset({
    ImprovementGoal.PERFORMANCE,
    ImprovementGoal.ERROR_HANDLING,
    ImprovementGoal.READABILITY,
})
FALLBACK_GOALS = frozenset({ImprovementGoal.PERFORMANCE, ImprovementGoal.READABILITY})
LOW_FEEDBACK_GOALS = frozenset({
    ImprovementGoal.USER_EXPERIENCE,
    ImprovementGoal.ERROR_HANDLING,
    ImprovementGoal.READABILITY,
})


class PolicyDecision(BaseModel):
    """Why the policy did or did not trigger for an agent."""

    agent_id: AgentId
    should_optimize: bool = False
    cooldown_active: bool = False
    reasons: list[str] = Field(default_factory=list)
    goals: list[str] = Field(default_factory=list)


class OptimizationPolicy:
    """Thresholds, trend and cooldown combined into a single verdict."""

    def __init__(
        self,
        telemetry: TelemetryStore,
        ledger: OptimizationLedger,
        thresholds: PolicyThresholds | None = None,
    ) -> None:
        self._telemetry = telemetry
        self._ledger = ledger
        self._thresholds = thresholds or PolicyThresholds()

    @property
    def thresholds(self) -> PolicyThresholds:
        return self._thresholds

    def trigger_reasons(self, agent_id: AgentId) -> list[str]:
        """The criteria an agent currently trips, ignoring cooldown."""
        if not self._telemetry.has(agent_id):
            return []
        m = self._telemetry.get(agent_id)
        t = self._thresholds
        reasons = []
        if m.error_rate > t.max_error_rate:
            reasons.append(f"error_rate {m.error_rate:.2f} > {t.max_error_rate}")
        if m.success_rate < t.min_success_rate:
            reasons.append(f"success_rate {m.success_rate:.2f} < {t.min_success_rate}")
        if m.user_feedback_score < t.min_feedback_score:
            reasons.append(
                f"user_feedback_score {m.user_feedback_score:.1f} < {t.min_feedback_score}"
            )
        if trend(m.response_times) == Trend.INCREASING:
            reasons.append("response_time trend increasing")
        return reasons

    def should_optimize(self, agent_id: AgentId) -> bool:
        if not self._telemetry.has(agent_id):
            return False
        if not self._ledger.can_optimize(agent_id):
            return False
        return bool(self.trigger_reasons(agent_id))

    def determine_goals(self, agent_id: AgentId) -> set[ImprovementGoal]:
        if not self._telemetry.has(agent_id):
            return set(DEFAULT_GOALS)

        m = self._telemetry.get(agent_id)
        t = self._thresholds
        goals: set[ImprovementGoal] = set()

        if m.error_rate > t.goal_error_rate:
            goals.add(ImprovementGoal.ERROR_HANDLING)
        if trend(m.response_times) == Trend.INCREASING:
            goals.update({ImprovementGoal.RESPONSE_TIME, ImprovementGoal.PERFORMANCE})
        if trend(m.token_usage) == Trend.INCREASING:
            goals.add(ImprovementGoal.TOKEN_EFFICIENCY)
        if m.user_feedback_score < t.goal_feedback_score:
            goals.update({ImprovementGoal.USER_EXPERIENCE, ImprovementGoal.READABILITY})

        return goals or set(FALLBACK_GOALS)

    def is_low_feedback(self, score: float) -> bool:
        return score < self._thresholds.immediate_feedback_score

    def immediate_goals(self) -> set[ImprovementGoal]:
        """Goals used when low feedback bypasses the periodic evaluation."""
        return set(LOW_FEEDBACK_GOALS)

    def evaluate(self, agent_id: AgentId) -> PolicyDecision:
        cooldown_active = not self._ledger.can_optimize(agent_id)
        return PolicyDecision(
            agent_id=agent_id,
            should_optimize=self.should_optimize(agent_id),
            cooldown_active=cooldown_active,
            reasons=self.trigger_reasons(agent_id),
            goals=sorted_goals(self.determine_goals(agent_id)),
        )
