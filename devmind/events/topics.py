"""Typed event topics and their payload shapes.

Each topic has one payload model. Fields listed here are the minimum a
publisher must send; additional fields pass through untouched.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from devmind.types import AgentId, ImprovementGoal, parse_goals, utcnow


class Topic(str, Enum):
    AGENT_METRICS_UPDATED = "AGENT_METRICS_UPDATED"
    USER_FEEDBACK_RECEIVED = "USER_FEEDBACK_RECEIVED"
    SELF_IMPROVEMENT_REQUESTED = "SELF_IMPROVEMENT_REQUESTED"
    SELF_IMPROVEMENT_COMPLETED = "SELF_IMPROVEMENT_COMPLETED"
    SELF_IMPROVEMENT_ERROR = "SELF_IMPROVEMENT_ERROR"
    SELF_IMPROVEMENT_REVERTED = "SELF_IMPROVEMENT_REVERTED"
    PERFORMANCE_ANALYSIS_REQUESTED = "PERFORMANCE_ANALYSIS_REQUESTED"
    PERFORMANCE_ANALYSIS_COMPLETED = "PERFORMANCE_ANALYSIS_COMPLETED"


class TopicPayload(BaseModel):
    model_config = {"extra": "allow"}

    agent_id: AgentId


class MetricsUpdatedPayload(TopicPayload):
    response_time: float | None = Field(default=None, ge=0.0)
    token_usage: float | None = Field(default=None, ge=0.0)
    success_rate: float | None = Field(default=None, ge=0.0, le=1.0)
    error_rate: float | None = Field(default=None, ge=0.0, le=1.0)


class FeedbackReceivedPayload(TopicPayload):
    feedback_score: float = Field(ge=0.0, le=5.0)
    comments: str | None = None


class ImprovementRequestedPayload(TopicPayload):
    source_text: str
    improvement_goals: list[ImprovementGoal] = Field(default_factory=list)

    @field_validator("improvement_goals", mode="before")
    @classmethod
    def _normalize_goals(cls, value: Any) -> list[ImprovementGoal]:
        # accepts camelCase, kebab-case and {goal: enabled} mappings
        return sorted(parse_goals(value), key=lambda g: g.value)


class ImprovementCompletedPayload(TopicPayload):
    applied_change_count: int = 0
    timestamp: datetime = Field(default_factory=utcnow)


class ImprovementErrorPayload(TopicPayload):
    error: str
    timestamp: datetime = Field(default_factory=utcnow)


class ImprovementRevertedPayload(TopicPayload):
    restored_from: str = ""
    reason: str = ""
    timestamp: datetime = Field(default_factory=utcnow)


class AnalysisRequestedPayload(TopicPayload):
    pass


class AnalysisCompletedPayload(TopicPayload):
    analysis: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)


TOPIC_PAYLOADS: dict[Topic, type[TopicPayload]] = {
    Topic.AGENT_METRICS_UPDATED: MetricsUpdatedPayload,
    Topic.USER_FEEDBACK_RECEIVED: FeedbackReceivedPayload,
    Topic.SELF_IMPROVEMENT_REQUESTED: ImprovementRequestedPayload,
    Topic.SELF_IMPROVEMENT_COMPLETED: ImprovementCompletedPayload,
    Topic.SELF_IMPROVEMENT_ERROR: ImprovementErrorPayload,
    Topic.SELF_IMPROVEMENT_REVERTED: ImprovementRevertedPayload,
    Topic.PERFORMANCE_ANALYSIS_REQUESTED: AnalysisRequestedPayload,
    Topic.PERFORMANCE_ANALYSIS_COMPLETED: AnalysisCompletedPayload,
}
