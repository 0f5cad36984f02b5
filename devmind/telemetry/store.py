"""TelemetryStore — the only owner of mutable per-agent metric state.

Series fields (response times, token usage) are append-then-trim; scalar
fields are last-write-wins. Updates for one agent are serialized behind a
per-agent lock, different agents proceed in parallel. Every mutation
writes through to the configured MetricsStore; a failed write is logged
and the in-memory table stays authoritative until the next write
succeeds.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any

import structlog

from devmind.audit import AuditTrail
from devmind.exceptions import AgentNotFoundError, PersistenceError
from devmind.telemetry.backends import InMemoryMetricsStore, MetricsStore
from devmind.types import AgentId, AgentMetrics, MetricsUpdate, OptimizationRecord, utcnow

logger = structlog.get_logger()

DEFAULT_HISTORY_LIMIT = 100
DEFAULT_OPTIMIZATION_HISTORY_LIMIT = 10


def _append_bounded(series: list[float], value: float, limit: int) -> list[float]:
    series.append(value)
    if len(series) > limit:
        return series[-limit:]
    return series


class TelemetryStore:
    """Per-agent bounded metrics with write-through persistence."""

    def __init__(
        self,
        backend: MetricsStore | None = None,
        audit_trail: AuditTrail | None = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        optimization_history_limit: int = DEFAULT_OPTIMIZATION_HISTORY_LIMIT,
    ) -> None:
        self._backend = backend or InMemoryMetricsStore()
        self._audit = audit_trail
        self._history_limit = history_limit
        self._optimization_history_limit = optimization_history_limit
        self._metrics: dict[AgentId, AgentMetrics] = {}
        self._locks: dict[AgentId, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self) -> int:
        """Load persisted metrics. Returns the number of agents loaded."""
        try:
            self._metrics = await self._backend.load()
        except PersistenceError as e:
            logger.error("metrics_load_failed", error=str(e))
            self._metrics = {}
        logger.info("metrics_loaded", agents=len(self._metrics))
        return len(self._metrics)

    def has(self, agent_id: AgentId) -> bool:
        return agent_id in self._metrics

    def agent_ids(self) -> list[AgentId]:
        return sorted(self._metrics)

    def get(self, agent_id: AgentId) -> AgentMetrics:
        """Snapshot of an agent's metrics, or the optimistic default."""
        metrics = self._metrics.get(agent_id)
        if metrics is None:
            return AgentMetrics(agent_id=agent_id)
        return metrics.model_copy(deep=True)

    def require(self, agent_id: AgentId) -> AgentMetrics:
        """Like get, but raises AgentNotFoundError for agents never seen."""
        if agent_id not in self._metrics:
            raise AgentNotFoundError(f"No metrics recorded for agent {agent_id}")
        return self.get(agent_id)

    def lock_for(self, agent_id: AgentId) -> asyncio.Lock:
        return self._locks[agent_id]

    async def record_metrics(
        self, agent_id: AgentId, update: MetricsUpdate | dict[str, Any]
    ) -> AgentMetrics:
        """Merge a telemetry sample into the agent's metrics."""
        if not isinstance(update, MetricsUpdate):
            update = MetricsUpdate.model_validate(update)

        async with self._locks[agent_id]:
            metrics = self._metrics.setdefault(agent_id, AgentMetrics(agent_id=agent_id))

            if update.response_time is not None:
                metrics.response_times = _append_bounded(
                    metrics.response_times, update.response_time, self._history_limit
                )
            if update.token_usage is not None:
                metrics.token_usage = _append_bounded(
                    metrics.token_usage, update.token_usage, self._history_limit
                )
            if update.success_rate is not None:
                metrics.success_rate = update.success_rate
            if update.error_rate is not None:
                metrics.error_rate = update.error_rate

            await self._persist(agent_id, metrics)
            logger.debug("metrics_updated", agent_id=agent_id)
            return metrics.model_copy(deep=True)

    async def record_feedback(
        self, agent_id: AgentId, score: float, comment: str | None = None
    ) -> AgentMetrics:
        """Overwrite the feedback score and log the event to the audit trail."""
        async with self._locks[agent_id]:
            metrics = self._metrics.setdefault(agent_id, AgentMetrics(agent_id=agent_id))
            metrics.user_feedback_score = score
            await self._persist(agent_id, metrics)
            snapshot = metrics.model_copy(deep=True)

        if self._audit:
            await self._audit.log_feedback(agent_id, score, comment or "")
        logger.info("feedback_recorded", agent_id=agent_id, score=score)
        return snapshot

    async def append_optimization(
        self, agent_id: AgentId, record: OptimizationRecord
    ) -> AgentMetrics:
        """Append a ledger record, FIFO-bounded, and stamp last_optimized_at."""
        async with self._locks[agent_id]:
            metrics = self._metrics.setdefault(agent_id, AgentMetrics(agent_id=agent_id))
            metrics.optimization_history.append(record)
            if len(metrics.optimization_history) > self._optimization_history_limit:
                metrics.optimization_history = metrics.optimization_history[
                    -self._optimization_history_limit:
                ]
            metrics.last_optimized_at = record.timestamp or utcnow()
            await self._persist(agent_id, metrics)
            return metrics.model_copy(deep=True)

    async def mark_optimized(self, agent_id: AgentId, at: datetime) -> AgentMetrics:
        """Stamp last_optimized_at without touching the history."""
        async with self._locks[agent_id]:
            metrics = self._metrics.setdefault(agent_id, AgentMetrics(agent_id=agent_id))
            metrics.last_optimized_at = at
            await self._persist(agent_id, metrics)
            return metrics.model_copy(deep=True)

    async def _persist(self, agent_id: AgentId, metrics: AgentMetrics) -> None:
        try:
            await self._backend.put(agent_id, metrics)
        except PersistenceError as e:
            logger.error("metrics_persist_failed", agent_id=agent_id, error=str(e))

    async def close(self) -> None:
        await self._backend.close()
