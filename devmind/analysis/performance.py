"""Performance analysis of a single agent.

Combines averages, trends and the agent's recent error stream into a
report with plain-language recommendations.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime

from pydantic import BaseModel, Field

from devmind.analysis.trend import trend
from devmind.audit import AuditTrail
from devmind.telemetry.store import TelemetryStore
from devmind.types import AgentId, AgentMetrics, Trend, utcnow

HIGH_TOKEN_USAGE = 2000
HISTORY_EVENTS = 100


class ErrorPattern(BaseModel):
    message: str
    count: int
    frequency: float  # share of the execution events considered


class PerformanceAnalysis(BaseModel):
    agent_id: AgentId
    avg_response_time: float = 0.0
    avg_token_usage: float = 0.0
    success_rate: float = 1.0
    error_rate: float = 0.0
    user_feedback_score: float = 5.0
    last_optimized_at: datetime | None = None
    optimization_count: int = 0
    response_time_trend: Trend = Trend.STABLE
    token_usage_trend: Trend = Trend.STABLE
    error_patterns: list[ErrorPattern] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=utcnow)


def error_patterns(events: list[dict]) -> list[ErrorPattern]:
    """Group error events by message, most frequent first."""
    if not events:
        return []
    counts = Counter(e["detail"] for e in events if e.get("action") == "error" and e.get("detail"))
    patterns = [
        ErrorPattern(message=msg, count=n, frequency=n / len(events))
        for msg, n in counts.items()
    ]
    patterns.sort(key=lambda p: p.frequency, reverse=True)
    return patterns


def recommendations(analysis: PerformanceAnalysis) -> list[str]:
    recs = []
    if analysis.response_time_trend == Trend.INCREASING:
        recs.append("Reduce response time by caching frequent operations")
    if analysis.avg_token_usage > HIGH_TOKEN_USAGE:
        recs.append("Reduce token usage by trimming prompts and responses")
    if analysis.error_rate > 0.1:
        recs.append("Improve error handling to lower the failure rate")
    if analysis.user_feedback_score < 4:
        recs.append("Improve user experience with clearer messages and more precise answers")
    if analysis.error_patterns:
        top = analysis.error_patterns[0]
        recs.append(
            f'Address the most common error: "{top.message}" '
            f"({round(top.frequency * 100)}% of executions)"
        )
    if not recs:
        recs.append("Agent is operating normally, no immediate optimization required")
    return recs


def summarize(metrics: AgentMetrics, events: list[dict] | None = None) -> PerformanceAnalysis:
    analysis = PerformanceAnalysis(
        agent_id=metrics.agent_id,
        avg_response_time=metrics.avg_response_time,
        avg_token_usage=metrics.avg_token_usage,
        success_rate=metrics.success_rate,
        error_rate=metrics.error_rate,
        user_feedback_score=metrics.user_feedback_score,
        last_optimized_at=metrics.last_optimized_at,
        optimization_count=len(metrics.optimization_history),
        response_time_trend=trend(metrics.response_times),
        token_usage_trend=trend(metrics.token_usage),
        error_patterns=error_patterns(events or []),
    )
    analysis.recommendations = recommendations(analysis)
    return analysis


class PerformanceAnalyzer:
    """Builds PerformanceAnalysis reports from telemetry and the audit trail."""

    def __init__(
        self,
        telemetry: TelemetryStore,
        audit_trail: AuditTrail | None = None,
        history_events: int = HISTORY_EVENTS,
    ) -> None:
        self._telemetry = telemetry
        self._audit = audit_trail
        self._history_events = history_events

    async def execution_history(self, agent_id: AgentId) -> list[dict]:
        if self._audit is None:
            return []
        entries = await self._audit.query(agent_id=agent_id, limit=self._history_events)
        return [e.model_dump(mode="json") for e in entries]

    async def analyze(self, agent_id: AgentId) -> PerformanceAnalysis:
        events = await self.execution_history(agent_id)
        return summarize(self._telemetry.get(agent_id), events)
