"""OptimizationLedger — bounded, append-only optimization history.

The ledger is the source of truth for an agent's cooldown. Records are
appended in the order optimizations complete. The "after" metric of a
record is an optimistic estimate (+10% success rate), not a measurement.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable

import structlog

from devmind.audit import AuditTrail
from devmind.telemetry.store import TelemetryStore
from devmind.types import (
    AgentId,
    AgentMetrics,
    AppliedChange,
    MetricValue,
    MutationType,
    OptimizationRecord,
    utcnow,
)

logger = structlog.get_logger()

DEFAULT_COOLDOWN = timedelta(hours=24)
ESTIMATED_IMPROVEMENT = 1.1


class OptimizationLedger:
    """Records applied optimizations and enforces the per-agent cooldown."""

    def __init__(
        self,
        telemetry: TelemetryStore,
        audit_trail: AuditTrail | None = None,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._telemetry = telemetry
        self._audit = audit_trail
        self._cooldown = cooldown
        self._clock = clock

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    def now(self) -> datetime:
        return self._clock()

    def can_optimize(self, agent_id: AgentId) -> bool:
        """True if never optimized or the cooldown has fully elapsed."""
        if not self._telemetry.has(agent_id):
            return True
        last = self._telemetry.get(agent_id).last_optimized_at
        if last is None:
            return True
        return self.now() - last > self._cooldown

    def history(self, agent_id: AgentId) -> list[OptimizationRecord]:
        return self._telemetry.get(agent_id).optimization_history

    async def mark_attempt(self, agent_id: AgentId) -> None:
        """Start the cooldown for an attempt that was rolled back.

        Nothing is appended to the history.
        """
        await self._telemetry.mark_optimized(agent_id, self.now())
        if self._audit:
            await self._audit.log_action(
                agent_id, "optimization_attempt", "Optimization rolled back", success=False
            )
        logger.info("optimization_attempt_recorded", agent_id=agent_id)

    async def record(
        self,
        agent_id: AgentId,
        applied_changes: list[AppliedChange],
        before: AgentMetrics | None = None,
    ) -> OptimizationRecord:
        """Append a record for a completed optimization."""
        before = before or self._telemetry.get(agent_id)
        mutation_type = (
            applied_changes[0].mutation_type if applied_changes else MutationType.CODE
        )
        count = len(applied_changes)
        record = OptimizationRecord(
            timestamp=self.now(),
            mutation_type=mutation_type,
            description=(
                f"Automatic optimization with {count} change"
                f"{'' if count == 1 else 's'} applied"
            ),
            before=MetricValue(name="success_rate", value=before.success_rate),
            after=MetricValue(
                name="success_rate",
                value=min(1.0, before.success_rate * ESTIMATED_IMPROVEMENT),
            ),
            change_count=count,
        )
        await self._telemetry.append_optimization(agent_id, record)

        if self._audit:
            await self._audit.log_action(
                agent_id,
                "optimization",
                record.description,
                data={"record_id": record.id, "mutation_type": mutation_type.value},
            )
        logger.info(
            "optimization_recorded",
            agent_id=agent_id,
            changes=count,
            mutation_type=mutation_type.value,
        )
        return record
