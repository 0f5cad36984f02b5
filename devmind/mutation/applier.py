"""MutationApplier — confidence-gated application of suggestions.

Suggestions are applied in the order supplied. Anything under the
confidence threshold, or missing either implementation fragment, is
skipped. Accepted suggestions go through a Mutator; only suggestions
that actually change the text are reported as applied.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod

import structlog
from pydantic import BaseModel, Field

from devmind.exceptions import MutationError
from devmind.types import AppliedChange, Suggestion

logger = structlog.get_logger()

DEFAULT_CONFIDENCE_THRESHOLD = 0.7


class Mutator(ABC):
    """Strategy that rewrites source text for a single suggestion."""

    name: str = ""

    @abstractmethod
    def substitute(self, text: str, suggestion: Suggestion) -> str:
        """Return the rewritten text. Raises MutationError if it cannot."""
        ...


class PatternMutator(Mutator):
    """Literal substitution through an escaped, multiline-safe pattern.

    Every occurrence of the current implementation is replaced. If the
    regex engine fails on the input, the first occurrence is replaced
    with a plain string replace instead.
    """

    name = "pattern"

    def substitute(self, text: str, suggestion: Suggestion) -> str:
        current = suggestion.current_implementation
        replacement = suggestion.suggested_implementation
        try:
            return self._regex_substitute(text, current, replacement)
        except (re.error, RecursionError, OverflowError, MemoryError) as e:
            logger.warning(
                "pattern_substitution_failed",
                description=suggestion.description,
                error=str(e),
            )

        try:
            return text.replace(current, replacement, 1)
        except Exception as e:
            raise MutationError(f"Cannot apply '{suggestion.description}': {e}") from e

    def _regex_substitute(self, text: str, current: str, replacement: str) -> str:
        pattern = re.compile(re.escape(current), re.MULTILINE)
        # A callable keeps backslashes and group references in the
        # replacement literal.
        return pattern.sub(lambda _m: replacement, text)


class SkippedSuggestion(BaseModel):
    description: str = ""
    reason: str = ""  # "inert", "low_confidence", "no_match", "failed"


class MutationResult(BaseModel):
    text: str
    applied_changes: list[AppliedChange] = Field(default_factory=list)
    skipped: list[SkippedSuggestion] = Field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.applied_changes)


class MutationApplier:
    """Filters suggestions by confidence and applies the survivors."""

    def __init__(
        self,
        mutator: Mutator | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
    ) -> None:
        self._mutator = mutator or PatternMutator()
        self._threshold = confidence_threshold

    @property
    def confidence_threshold(self) -> float:
        return self._threshold

    def apply(self, source: str, suggestions: list[Suggestion]) -> MutationResult:
        text = source
        applied: list[AppliedChange] = []
        skipped: list[SkippedSuggestion] = []

        for suggestion in suggestions:
            if not suggestion.is_actionable:
                skipped.append(SkippedSuggestion(
                    description=suggestion.description, reason="inert",
                ))
                continue
            if suggestion.confidence < self._threshold:
                skipped.append(SkippedSuggestion(
                    description=suggestion.description, reason="low_confidence",
                ))
                continue

            try:
                updated = self._mutator.substitute(text, suggestion)
            except MutationError as e:
                logger.error(
                    "suggestion_dropped",
                    description=suggestion.description,
                    error=str(e),
                )
                skipped.append(SkippedSuggestion(
                    description=suggestion.description, reason="failed",
                ))
                continue

            if updated == text:
                skipped.append(SkippedSuggestion(
                    description=suggestion.description, reason="no_match",
                ))
                continue

            text = updated
            applied.append(AppliedChange(
                mutation_type=suggestion.mutation_type,
                description=suggestion.description,
                expected_improvement=suggestion.expected_improvement,
            ))

        return MutationResult(text=text, applied_changes=applied, skipped=skipped)
