"""SelfImprovementController — the event-driven optimization loop.

Telemetry handlers only record and schedule; they never wait for an
optimization. Evaluation runs as a background task per agent: decide
under the agent's lock, publish SELF_IMPROVEMENT_REQUESTED, and the
improvement task then generates suggestions (bounded by a timeout),
applies them, swaps the artifact through the SafetyManager, verifies,
and either records the optimization or reverts.

The agent lock is held only around read-decide-write sections, never
across the suggestion generator call. The artifact is snapshotted before
generation and compared again before it is replaced.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field

from devmind.analysis.performance import PerformanceAnalysis, PerformanceAnalyzer, summarize
from devmind.analysis.reports import (
    SYSTEM_REPORT_FILENAME,
    ReportWriter,
    render_optimization_report,
    render_system_report,
    report_filename,
)
from devmind.audit import AuditTrail
from devmind.events.bus import Event, EventBus
from devmind.events.topics import Topic
from devmind.ledger import OptimizationLedger
from devmind.mutation.applier import MutationApplier
from devmind.mutation.safety import SafetyManager
from devmind.policy.optimization import OptimizationPolicy
from devmind.suggestions.generator import SuggestionGenerator, SuggestionRequest
from devmind.suggestions.source_analysis import analyze_source
from devmind.telemetry.store import TelemetryStore
from devmind.types import (
    AgentId,
    AppliedChange,
    ImprovementGoal,
    MetricsUpdate,
    OptimizationRecord,
    Suggestion,
    parse_goals,
    sorted_goals,
    utcnow,
)

logger = structlog.get_logger()

_METRIC_FIELDS = ("response_time", "token_usage", "success_rate", "error_rate")


class ImprovementOutcome(BaseModel):
    """Result of one improvement cycle for an agent."""

    agent_id: AgentId
    success: bool = False
    applied_changes: list[AppliedChange] = Field(default_factory=list)
    improved_source: str = ""
    record: OptimizationRecord | None = None
    reverted: bool = False
    report_path: str = ""
    error: str = ""


class SelfImprovementController:
    """Wires telemetry, policy, generator, applier, safety and ledger to the bus."""

    def __init__(
        self,
        bus: EventBus,
        telemetry: TelemetryStore,
        policy: OptimizationPolicy,
        ledger: OptimizationLedger,
        applier: MutationApplier,
        safety: SafetyManager,
        generator: SuggestionGenerator,
        audit_trail: AuditTrail | None = None,
        analyzer: PerformanceAnalyzer | None = None,
        reports: ReportWriter | None = None,
        suggestion_timeout: float = 60.0,
    ) -> None:
        self._bus = bus
        self._telemetry = telemetry
        self._policy = policy
        self._ledger = ledger
        self._applier = applier
        self._safety = safety
        self._generator = generator
        self._audit = audit_trail
        self._analyzer = analyzer or PerformanceAnalyzer(telemetry, audit_trail)
        self._reports = reports
        self._suggestion_timeout = suggestion_timeout

        self._locks: dict[AgentId, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._in_flight: set[AgentId] = set()
        self._handoff: set[AgentId] = set()
        self._tasks: set[asyncio.Task] = set()
        self._attached = False

    # ── Bus wiring ───────────────────────────────────────────────

    def attach(self) -> None:
        """Subscribe the loop's handlers to the bus."""
        if self._attached:
            return
        for topic, handler in self._handlers():
            self._bus.subscribe(topic, handler)
        self._attached = True

    def detach(self) -> None:
        for topic, handler in self._handlers():
            self._bus.unsubscribe(topic, handler)
        self._attached = False

    def _handlers(self) -> list[tuple[Topic, Any]]:
        return [
            (Topic.AGENT_METRICS_UPDATED, self._on_metrics_updated),
            (Topic.USER_FEEDBACK_RECEIVED, self._on_feedback_received),
            (Topic.SELF_IMPROVEMENT_REQUESTED, self._on_improvement_requested),
            (Topic.PERFORMANCE_ANALYSIS_REQUESTED, self._on_analysis_requested),
        ]

    @property
    def in_flight(self) -> set[AgentId]:
        return set(self._in_flight)

    async def drain(self) -> None:
        """Wait for every scheduled evaluation and improvement task."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Handlers ─────────────────────────────────────────────────

    async def _on_metrics_updated(self, event: Event) -> None:
        data = event.data
        agent_id = data["agent_id"]
        update = MetricsUpdate(**{k: data.get(k) for k in _METRIC_FIELDS})
        await self._telemetry.record_metrics(agent_id, update)

        # Runtime errors reported alongside metrics feed the verification stream.
        error = data.get("error")
        if error and self._audit:
            await self._audit.log_error(agent_id, str(error))

        self._spawn(self.evaluate(agent_id), name=f"evaluate:{agent_id}")

    async def _on_feedback_received(self, event: Event) -> None:
        data = event.data
        agent_id = data["agent_id"]
        score = data["feedback_score"]
        await self._telemetry.record_feedback(agent_id, score, data.get("comments"))

        if not self._policy.is_low_feedback(score):
            return
        logger.warning("low_feedback_detected", agent_id=agent_id, score=score)
        if not self._ledger.can_optimize(agent_id):
            logger.info("optimization_cooldown_active", agent_id=agent_id)
            return
        if not await self._claim(agent_id):
            logger.info("optimization_in_flight", agent_id=agent_id)
            return
        await self._request_claimed(agent_id, self._policy.immediate_goals())

    async def _on_improvement_requested(self, event: Event) -> None:
        data = event.data
        agent_id = data["agent_id"]
        args = (
            agent_id,
            data["source_text"],
            parse_goals(data.get("improvement_goals")),
            data.get("requester") or event.source,
        )
        if agent_id in self._handoff:
            # Our own request: the guard is already held for this cycle.
            self._handoff.discard(agent_id)
            coro = self._run_claimed(*args)
        else:
            coro = self.improve(*args)
        self._spawn(coro, name=f"improve:{agent_id}")

    async def _on_analysis_requested(self, event: Event) -> None:
        agent_id = event.data["agent_id"]
        analysis = await self.analyze(agent_id)
        await self._bus.publish(
            Topic.PERFORMANCE_ANALYSIS_COMPLETED,
            {
                "agent_id": agent_id,
                "analysis": analysis.model_dump(mode="json"),
                "timestamp": utcnow(),
                "requester": event.source,
            },
            source="self_improvement",
        )

    # ── Decisions ────────────────────────────────────────────────

    async def _claim(self, agent_id: AgentId) -> bool:
        async with self._locks[agent_id]:
            if agent_id in self._in_flight:
                return False
            self._in_flight.add(agent_id)
            return True

    async def evaluate(self, agent_id: AgentId) -> bool:
        """Request an optimization if the policy says so. Returns True if requested."""
        async with self._locks[agent_id]:
            if agent_id in self._in_flight:
                return False
            if not self._policy.should_optimize(agent_id):
                return False
            goals = self._policy.determine_goals(agent_id)
            self._in_flight.add(agent_id)

        logger.info(
            "optimization_triggered",
            agent_id=agent_id,
            reasons=self._policy.trigger_reasons(agent_id),
            goals=sorted_goals(goals),
        )
        return await self._request_claimed(agent_id, goals)

    async def _request_claimed(
        self, agent_id: AgentId, goals: set[ImprovementGoal]
    ) -> bool:
        """Publish a request for an agent whose guard the caller holds.

        The guard passes to the improvement cycle started by the request;
        it is released here if no cycle picked the request up.
        """
        requested = False
        self._handoff.add(agent_id)
        try:
            requested = await self.request_improvement(agent_id, goals)
        except Exception as e:
            logger.error("optimization_request_failed", agent_id=agent_id, error=str(e))
            await self._publish_outcome(
                ImprovementOutcome(
                    agent_id=agent_id, error=f"Optimization request failed: {e}"
                )
            )
        finally:
            picked_up = agent_id not in self._handoff
            self._handoff.discard(agent_id)
            if not (requested and picked_up):
                self._in_flight.discard(agent_id)
        return requested

    async def request_improvement(
        self, agent_id: AgentId, goals: set[ImprovementGoal]
    ) -> bool:
        """Publish SELF_IMPROVEMENT_REQUESTED with the agent's current source."""
        if not self._safety.artifacts.exists(agent_id):
            logger.error(
                "artifact_missing",
                agent_id=agent_id,
                path=str(self._safety.artifacts.path_for(agent_id)),
            )
            return False
        source_text = await self._safety.artifacts.read(agent_id)
        await self._bus.publish(
            Topic.SELF_IMPROVEMENT_REQUESTED,
            {
                "agent_id": agent_id,
                "source_text": source_text,
                "improvement_goals": sorted_goals(goals),
            },
            source="self_improvement",
        )
        return True

    # ── Improvement cycle ────────────────────────────────────────

    async def improve(
        self,
        agent_id: AgentId,
        source_text: str,
        goals: set[ImprovementGoal],
        requester: str = "",
    ) -> ImprovementOutcome:
        """Run one generate → apply → mutate → verify → record cycle.

        Refused with an error outcome while another cycle holds the agent.
        """
        if not await self._claim(agent_id):
            logger.warning("improvement_request_skipped", agent_id=agent_id)
            outcome = ImprovementOutcome(
                agent_id=agent_id, error="Optimization already in progress"
            )
            await self._publish_outcome(outcome, requester)
            return outcome
        return await self._run_claimed(agent_id, source_text, goals, requester)

    async def _run_claimed(
        self,
        agent_id: AgentId,
        source_text: str,
        goals: set[ImprovementGoal],
        requester: str = "",
    ) -> ImprovementOutcome:
        try:
            outcome = await self._improve(agent_id, source_text, goals)
        except Exception as e:
            logger.error("self_improvement_failed", agent_id=agent_id, error=str(e))
            outcome = ImprovementOutcome(agent_id=agent_id, error=str(e))
        finally:
            self._in_flight.discard(agent_id)

        await self._publish_outcome(outcome, requester)
        return outcome

    async def _publish_outcome(
        self, outcome: ImprovementOutcome, requester: str = ""
    ) -> None:
        if outcome.error:
            await self._bus.publish(
                Topic.SELF_IMPROVEMENT_ERROR,
                {
                    "agent_id": outcome.agent_id,
                    "error": outcome.error,
                    "timestamp": utcnow(),
                    "requester": requester,
                },
                source="self_improvement",
            )
        else:
            await self._bus.publish(
                Topic.SELF_IMPROVEMENT_COMPLETED,
                {
                    "agent_id": outcome.agent_id,
                    "applied_change_count": len(outcome.applied_changes),
                    "timestamp": utcnow(),
                    "improved_source": outcome.improved_source,
                    "report_path": outcome.report_path,
                    "requester": requester,
                },
                source="self_improvement",
            )


    async def _improve(
        self, agent_id: AgentId, source_text: str, goals: set[ImprovementGoal]
    ) -> ImprovementOutcome:
        logger.info("self_improvement_started", agent_id=agent_id, goals=sorted_goals(goals))
        before = self._telemetry.get(agent_id)

        suggestions = await self._generate(SuggestionRequest(
            agent_id=agent_id,
            source_text=source_text,
            analysis=analyze_source(source_text),
            execution_history=await self._analyzer.execution_history(agent_id),
            metrics=before,
            goals=goals,
        ))
        result = self._applier.apply(source_text, suggestions)
        logger.info(
            "suggestions_applied",
            agent_id=agent_id,
            suggested=len(suggestions),
            applied=len(result.applied_changes),
            skipped=len(result.skipped),
        )
        if not result.changed:
            return ImprovementOutcome(
                agent_id=agent_id, success=True, improved_source=source_text
            )

        outcome = ImprovementOutcome(
            agent_id=agent_id,
            applied_changes=result.applied_changes,
            improved_source=result.text,
        )

        if self._safety.artifacts.exists(agent_id):
            async with self._locks[agent_id]:
                current = await self._safety.artifacts.read(agent_id)
                if current != source_text:
                    outcome.error = "Artifact changed while suggestions were generated"
                    return outcome
                mutation = await self._safety.mutate(agent_id, result.text)
            if not mutation.success:
                outcome.error = f"Mutation failed: {mutation.error}"
                return outcome

            healthy = await self._safety.verify(agent_id, mutation.mutated_at or utcnow())
            if not healthy:
                revert = await self._safety.revert(agent_id)
                outcome.reverted = revert.success
                # A rolled-back attempt still starts the cooldown.
                await self._ledger.mark_attempt(agent_id)
                await self._bus.publish(
                    Topic.SELF_IMPROVEMENT_REVERTED,
                    {
                        "agent_id": agent_id,
                        "restored_from": revert.restored_from,
                        "reason": "errors observed after mutation",
                        "timestamp": utcnow(),
                    },
                    source="self_improvement",
                )
                outcome.error = (
                    "Verification failed after mutation, rolled back"
                    if revert.success
                    else f"Verification failed and revert failed: {revert.error}"
                )
                return outcome

        outcome.record = await self._ledger.record(agent_id, result.applied_changes, before)
        outcome.success = True

        if self._reports:
            report = render_optimization_report(
                agent_id, result.applied_changes, before, source_text, result.text
            )
            path = await self._write_report(report_filename(agent_id), report)
            outcome.report_path = str(path) if path else ""

        logger.info(
            "self_improvement_completed",
            agent_id=agent_id,
            changes=len(result.applied_changes),
        )
        return outcome

    async def _generate(self, request: SuggestionRequest) -> list[Suggestion]:
        try:
            return await asyncio.wait_for(
                self._generator.generate(request), timeout=self._suggestion_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "suggestion_timeout",
                agent_id=request.agent_id,
                timeout=self._suggestion_timeout,
            )
        except Exception as e:
            logger.warning("suggestion_generation_failed", agent_id=request.agent_id, error=str(e))
        return []

    # ── Analysis & reports ───────────────────────────────────────

    async def analyze(self, agent_id: AgentId) -> PerformanceAnalysis:
        return await self._analyzer.analyze(agent_id)

    def registered_agents(self) -> list[AgentId]:
        """Agents with an artifact on disk or recorded metrics."""
        return sorted(set(self._safety.artifacts.list_agents()) | set(self._telemetry.agent_ids()))

    async def run_periodic_analysis(self) -> list[AgentId]:
        """Evaluate every registered agent. Returns the agents requested."""
        requested = []
        for agent_id in self.registered_agents():
            try:
                if await self.evaluate(agent_id):
                    requested.append(agent_id)
            except Exception as e:
                logger.error("periodic_evaluation_failed", agent_id=agent_id, error=str(e))
        logger.info("periodic_analysis_completed", requested=requested)
        return requested

    async def generate_system_report(self, now: datetime | None = None) -> Path | None:
        analyses = [
            summarize(self._telemetry.get(agent_id))
            for agent_id in self._telemetry.agent_ids()
        ]
        return await self._write_report(
            SYSTEM_REPORT_FILENAME, render_system_report(analyses, now)
        )

    async def _write_report(self, filename: str, content: str) -> Path | None:
        if self._reports is None:
            return None
        try:
            return await self._reports.write(filename, content)
        except OSError as e:
            logger.error("report_write_failed", filename=filename, error=str(e))
            return None
