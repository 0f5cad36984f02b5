"""Suggestion generators — produce candidate mutations for an agent.

The optimization loop depends only on the SuggestionGenerator contract.
The default LLMSuggestionGenerator asks Claude for a JSON list of
suggestions. If the response is not valid JSON it falls back to a
heuristic text extractor; if that finds nothing too, the result is an
empty list rather than an error.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from devmind.llm.base import BaseLLMProvider, LLMMessage
from devmind.suggestions.source_analysis import SourceAnalysis
from devmind.types import (
    AgentId,
    AgentMetrics,
    ImprovementGoal,
    MutationType,
    Priority,
    Suggestion,
    sorted_goals,
)

logger = structlog.get_logger()

IMPROVEMENT_PROMPT = """You are a senior engineer improving the source of an autonomous agent.

Given the agent's current source, a static analysis summary, its recent
execution history, its performance metrics and the improvement goals,
propose concrete edits. Every edit must quote a fragment that appears
verbatim in the current source and the exact replacement for it.

Respond in JSON format:
{
    "suggestions": [
        {
            "type": "code",
            "description": "What the change does (one sentence)",
            "currentImplementation": "exact fragment from the current source",
            "suggestedImplementation": "replacement fragment",
            "expectedImprovement": "expected effect on the goals",
            "confidence": 0.85,
            "priority": "high"
        }
    ]
}

"type" is one of prompt, code, configuration. "confidence" is between 0
and 1. "priority" is one of low, medium, high.
If no safe improvement exists, respond: {"suggestions": []}"""


class SuggestionRequest(BaseModel):
    """Everything a generator may look at."""

    agent_id: AgentId
    source_text: str
    analysis: SourceAnalysis = Field(default_factory=SourceAnalysis)
    execution_history: list[dict[str, Any]] = Field(default_factory=list)
    metrics: AgentMetrics | None = None
    goals: set[ImprovementGoal] = Field(default_factory=set)


class SuggestionGenerator(ABC):
    """Produces candidate mutations for a request."""

    @abstractmethod
    async def generate(self, request: SuggestionRequest) -> list[Suggestion]:
        ...


class StaticSuggestionGenerator(SuggestionGenerator):
    """Returns a fixed list. Useful for dry runs and replaying suggestions."""

    def __init__(self, suggestions: list[Suggestion] | None = None) -> None:
        self._suggestions = list(suggestions or [])

    async def generate(self, request: SuggestionRequest) -> list[Suggestion]:
        return list(self._suggestions)


class LLMSuggestionGenerator(SuggestionGenerator):
    """Asks an LLM for suggestions and parses its answer leniently."""

    def __init__(
        self,
        llm: BaseLLMProvider,
        max_tokens: int = 2000,
        temperature: float = 0.2,
        history_events: int = 5,
    ) -> None:
        self._llm = llm
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._history_events = history_events

    async def generate(self, request: SuggestionRequest) -> list[Suggestion]:
        try:
            response = await self._llm.complete(
                messages=[LLMMessage(role="user", content=self.build_prompt(request))],
                system=IMPROVEMENT_PROMPT,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
            )
        except Exception as e:
            logger.warning("suggestion_llm_failed", agent_id=request.agent_id, error=str(e))
            return []

        if not response.content:
            return []
        return parse_suggestions(response.content)

    def build_prompt(self, request: SuggestionRequest) -> str:
        history = request.execution_history[-self._history_events:]
        metrics = (
            request.metrics.model_dump(mode="json", exclude={"optimization_history"})
            if request.metrics
            else {}
        )
        return (
            f"Agent: {request.agent_id}\n\n"
            f"## Current Source\n```\n{request.source_text}\n```\n\n"
            f"## Static Analysis\n{request.analysis.model_dump_json(indent=2)}\n\n"
            f"## Execution History (last {len(history)} events)\n"
            f"{json.dumps(history, indent=2, default=str)}\n\n"
            f"## Performance Metrics\n{json.dumps(metrics, indent=2)}\n\n"
            f"## Improvement Goals\n{', '.join(sorted_goals(request.goals)) or 'none'}"
        )


# ── Response parsing ─────────────────────────────────────────────────────────


def parse_suggestions(text: str) -> list[Suggestion]:
    """Parse an LLM answer: JSON first, then the heuristic text extractor."""
    data = _parse_json(text)
    if isinstance(data, dict) and isinstance(data.get("suggestions"), list):
        return [s for s in (_coerce(item) for item in data["suggestions"]) if s]

    suggestions = extract_suggestions_from_text(text)
    if not suggestions:
        logger.info("suggestions_unparseable", preview=text[:120])
    return suggestions


def _parse_json(text: str) -> Any:
    """Extract JSON from LLM response, handling markdown code blocks."""
    text = text.strip()

    if text.startswith("```"):
        lines = text.split("\n")
        lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        text = "\n".join(lines)

    try:
        return json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}") + 1
        if start >= 0 and end > start:
            try:
                return json.loads(text[start:end])
            except json.JSONDecodeError:
                pass
    return None


_FIELD_ALIASES = {
    "type": "mutation_type",
    "mutationType": "mutation_type",
    "currentImplementation": "current_implementation",
    "suggestedImplementation": "suggested_implementation",
    "expectedImprovement": "expected_improvement",
}


_MUTATION_TYPES = {t.value for t in MutationType}
_PRIORITIES = {p.value for p in Priority}


def _coerce(item: Any) -> Suggestion | None:
    if not isinstance(item, dict):
        return None
    data = {_FIELD_ALIASES.get(k, k): v for k, v in item.items()}
    data = {k: v for k, v in data.items() if k in Suggestion.model_fields and v is not None}

    if "mutation_type" in data:
        value = str(data["mutation_type"]).lower()
        data["mutation_type"] = value if value in _MUTATION_TYPES else "code"
    if "priority" in data:
        value = str(data["priority"]).lower()
        data["priority"] = value if value in _PRIORITIES else "medium"
    if "confidence" in data:
        try:
            data["confidence"] = min(1.0, max(0.0, float(data["confidence"])))
        except (TypeError, ValueError):
            data.pop("confidence")

    try:
        return Suggestion.model_validate(data)
    except ValidationError:
        return None


_BLOCK_SPLIT = re.compile(
    r"(?=^[ \t]*(?:Suggestion|Improvement)[ \t]*\d*[ \t]*:)", re.IGNORECASE | re.MULTILINE
)
_TYPE = re.compile(r"Type:?\s*(\w+)", re.IGNORECASE)
_DESCRIPTION = re.compile(r"Description:?\s*([^\n]+)", re.IGNORECASE)
_CURRENT = re.compile(r"Current implementation:?\s*```(?:\w+)?\s*([\s\S]*?)```", re.IGNORECASE)
_SUGGESTED = re.compile(r"Suggested implementation:?\s*```(?:\w+)?\s*([\s\S]*?)```", re.IGNORECASE)
_EXPECTED = re.compile(r"Expected improvement:?\s*([^\n]+)", re.IGNORECASE)
_CONFIDENCE = re.compile(r"Confidence:?\s*(\d+(?:\.\d+)?)", re.IGNORECASE)
_PRIORITY = re.compile(r"Priority:?\s*(low|medium|high)", re.IGNORECASE)


_FIELD_PATTERNS = [
    ("mutation_type", _TYPE),
    ("description", _DESCRIPTION),
    ("current_implementation", _CURRENT),
    ("suggested_implementation", _SUGGESTED),
    ("expected_improvement", _EXPECTED),
    ("confidence", _CONFIDENCE),
    ("priority", _PRIORITY),
]


def extract_suggestions_from_text(text: str) -> list[Suggestion]:
    """Heuristic extraction from free-form answers.

    A block needs at least a description and a suggested implementation.
    Missing type defaults to code, confidence to 0.7, priority to medium.
    """
    suggestions = []
    for block in _BLOCK_SPLIT.split(text):
        if not block.strip():
            continue

        data: dict[str, Any] = {}
        for field, pattern in _FIELD_PATTERNS:
            match = pattern.search(block)
            if match:
                data[field] = match.group(1).strip()

        if not (data.get("description") and data.get("suggested_implementation")):
            continue
        suggestion = _coerce(data)
        if suggestion:
            suggestions.append(suggestion)
    return suggestions
