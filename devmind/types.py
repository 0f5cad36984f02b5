"""Core types shared across all devmind subsystems."""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, TypeAlias

from pydantic import BaseModel, Field

# ── ID Types ──────────────────────────────────────────────────────────────────

AgentId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ─────────────────────────────────────────────────────────────────────


class MutationType(str, Enum):
    PROMPT = "prompt"
    CODE = "code"
    CONFIGURATION = "configuration"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class ImprovementGoal(str, Enum):
    PERFORMANCE = "performance"
    READABILITY = "readability"
    ERROR_HANDLING = "error_handling"
    TOKEN_EFFICIENCY = "token_efficiency"
    RESPONSE_TIME = "response_time"
    USER_EXPERIENCE = "user_experience"
    CODE_QUALITY = "code_quality"
    TEST_COVERAGE = "test_coverage"


_GOAL_KEYS = {g.value.replace("_", ""): g for g in ImprovementGoal}


def parse_goal(name: str) -> ImprovementGoal | None:
    """Resolve `errorHandling`, `error_handling` or `error-handling`."""
    key = re.sub(r"[-_\s]", "", name).lower()
    return _GOAL_KEYS.get(key)


def parse_goals(
    goals: Iterable[str | ImprovementGoal] | Mapping[str, bool] | None,
) -> set[ImprovementGoal]:
    """Normalize a goal list or a `{goal: enabled}` mapping into a set.

    Unknown names are ignored.
    """
    if not goals:
        return set()
    if isinstance(goals, Mapping):
        names: Iterable[Any] = [k for k, enabled in goals.items() if enabled]
    else:
        names = goals

    result: set[ImprovementGoal] = set()
    for name in names:
        if isinstance(name, ImprovementGoal):
            result.add(name)
            continue
        goal = parse_goal(str(name))
        if goal is not None:
            result.add(goal)
    return result


def sorted_goals(goals: Iterable[ImprovementGoal]) -> list[str]:
    """Stable, JSON-friendly ordering of a goal set."""
    return sorted(g.value for g in goals)


# ── Metrics ──────────────────────────────────────────────────────────────────


class MetricValue(BaseModel):
    name: str
    value: float


class OptimizationRecord(BaseModel):
    """One applied optimization in an agent's ledger."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    mutation_type: MutationType = MutationType.CODE
    description: str = ""
    before: MetricValue
    after: MetricValue  # estimated as before * 1.1, capped at 1.0; not re-measured
    change_count: int = 0


class AgentMetrics(BaseModel):
    """Runtime telemetry and optimization state of a single agent.

    A freshly created agent starts from optimistic defaults: full success,
    no errors and a perfect feedback score.
    """

    agent_id: AgentId
    response_times: list[float] = Field(default_factory=list)
    token_usage: list[float] = Field(default_factory=list)
    success_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    error_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    user_feedback_score: float = Field(default=5.0, ge=0.0, le=5.0)
    last_optimized_at: datetime | None = None
    optimization_history: list[OptimizationRecord] = Field(default_factory=list)

    @property
    def avg_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    @property
    def avg_token_usage(self) -> float:
        if not self.token_usage:
            return 0.0
        return sum(self.token_usage) / len(self.token_usage)

    @property
    def never_optimized(self) -> bool:
        return self.last_optimized_at is None


class MetricsUpdate(BaseModel):
    """A partial telemetry sample. Absent fields leave metrics untouched."""

    response_time: float | None = Field(default=None, ge=0.0)
    token_usage: float | None = Field(default=None, ge=0.0)
    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    error_rate: float | None = Field(default=None, ge=0.0, le=1.0)


# ── Suggestions ──────────────────────────────────────────────────────────────


class Suggestion(BaseModel):
    """A candidate mutation produced by a suggestion generator."""

    mutation_type: MutationType = MutationType.CODE
    description: str = ""
    current_implementation: str = ""
    suggested_implementation: str = ""
    expected_improvement: str = ""
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    priority: Priority = Priority.MEDIUM

    @property
    def is_actionable(self) -> bool:
        return bool(self.current_implementation and self.suggested_implementation)


class AppliedChange(BaseModel):
    mutation_type: MutationType = MutationType.CODE
    description: str = ""
    expected_improvement: str = ""
