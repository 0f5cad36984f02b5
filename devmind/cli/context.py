"""CLI runtime context — bridges sync CLI to the async optimization loop."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Coroutine

from devmind.analysis.performance import PerformanceAnalyzer
from devmind.analysis.reports import ReportWriter
from devmind.audit import AuditTrail
from devmind.config import DevmindSettings, settings
from devmind.controller import SelfImprovementController
from devmind.daemon import OptimizationDaemon
from devmind.events.bus import EventBus
from devmind.ledger import OptimizationLedger
from devmind.llm.anthropic import AnthropicProvider
from devmind.log import configure_logging
from devmind.mutation.applier import MutationApplier
from devmind.mutation.safety import ArtifactStore, BackupStore, SafetyManager
from devmind.policy.optimization import OptimizationPolicy
from devmind.suggestions.generator import LLMSuggestionGenerator
from devmind.telemetry.backends import create_metrics_store
from devmind.telemetry.store import TelemetryStore


class DevmindContext:
    """Singleton runtime context that holds all subsystem instances."""

    _instance: DevmindContext | None = None

    def __init__(self, config: DevmindSettings | None = None) -> None:
        self.config = config or settings
        configure_logging(self.config.log_level)

        self.event_bus = EventBus()
        self.audit_trail = AuditTrail(str(self.config.db_path))
        self.telemetry = TelemetryStore(
            backend=create_metrics_store(self.config),
            audit_trail=self.audit_trail,
            history_limit=self.config.metrics_history_limit,
            optimization_history_limit=self.config.optimization_history_limit,
        )
        self.ledger = OptimizationLedger(
            self.telemetry,
            audit_trail=self.audit_trail,
            cooldown=timedelta(hours=self.config.cooldown_hours),
        )
        self.policy = OptimizationPolicy(self.telemetry, self.ledger)
        self.safety = SafetyManager(
            ArtifactStore(self.config.agents_dir, self.config.artifact_suffix),
            BackupStore(self.config.backups_dir, self.config.artifact_suffix),
            audit_trail=self.audit_trail,
            error_lookback=self.config.verification_error_lookback,
            verification_window=self.config.verification_window_seconds,
        )
        self.llm = AnthropicProvider(
            api_key=self.config.anthropic_api_key,
            model=self.config.default_model,
        )
        self.analyzer = PerformanceAnalyzer(self.telemetry, self.audit_trail)
        self.reports = ReportWriter(self.config.reports_dir)
        self.controller = SelfImprovementController(
            bus=self.event_bus,
            telemetry=self.telemetry,
            policy=self.policy,
            ledger=self.ledger,
            applier=MutationApplier(confidence_threshold=self.config.confidence_threshold),
            safety=self.safety,
            generator=LLMSuggestionGenerator(self.llm),
            audit_trail=self.audit_trail,
            analyzer=self.analyzer,
            reports=self.reports,
            suggestion_timeout=self.config.suggestion_timeout_seconds,
        )
        self.daemon = OptimizationDaemon(
            self.controller, interval_hours=self.config.analysis_interval_hours
        )
        self._initialized = False

    async def ensure_initialized(self) -> None:
        """Open storage and subscribe the loop on first use."""
        if self._initialized:
            return
        self.config.workspace_dir.mkdir(parents=True, exist_ok=True)
        await self.audit_trail.initialize()
        await self.telemetry.load()
        self.controller.attach()
        self._initialized = True

    async def close(self) -> None:
        await self.controller.drain()
        await self.telemetry.close()
        await self.audit_trail.close()
        self._initialized = False

    @classmethod
    def get(cls) -> DevmindContext:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance


def run_async(coro: Coroutine) -> Any:
    """Run an async coroutine from sync CLI code."""
    return asyncio.run(coro)
