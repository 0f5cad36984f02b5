"""Optimization daemon — periodic analysis of every registered agent.

Each cycle evaluates all agents against the optimization policy and
regenerates the system performance report. Uses asyncio tasks for
scheduling.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from devmind.controller import SelfImprovementController
from devmind.types import AgentId, utcnow

logger = structlog.get_logger()


class AnalysisCycle(BaseModel):
    """Outcome of one daemon cycle."""

    started_at: datetime = Field(default_factory=utcnow)
    requested: list[AgentId] = Field(default_factory=list)
    report_path: str = ""


class OptimizationDaemon:
    """Background daemon that runs analysis cycles on a schedule."""

    def __init__(
        self,
        controller: SelfImprovementController,
        interval_hours: float = 24.0,
        history_limit: int = 50,
    ) -> None:
        self._controller = controller
        self._interval_hours = interval_hours
        self._history_limit = history_limit
        self._running = False
        self._task: asyncio.Task | None = None
        self._history: list[AnalysisCycle] = []

    async def start(self) -> None:
        """Start the daemon loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("optimization_daemon_started", interval_hours=self._interval_hours)

    async def stop(self) -> None:
        """Stop the daemon and wait for in-flight optimizations."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        await self._controller.drain()
        logger.info("optimization_daemon_stopped")

    async def run_once(self) -> AnalysisCycle:
        """Run a single analysis cycle."""
        cycle = AnalysisCycle()
        cycle.requested = await self._controller.run_periodic_analysis()
        path: Path | None = await self._controller.generate_system_report()
        cycle.report_path = str(path) if path else ""

        self._history.append(cycle)
        if len(self._history) > self._history_limit:
            self._history = self._history[-self._history_limit:]
        return cycle

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def history(self) -> list[AnalysisCycle]:
        return list(self._history)

    async def _run_loop(self) -> None:
        interval_seconds = self._interval_hours * 3600
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("optimization_daemon_cycle_failed", error=str(e))

            try:
                await asyncio.sleep(interval_seconds)
            except asyncio.CancelledError:
                break
