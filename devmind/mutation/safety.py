"""SafetyManager — backup, replace, verify and revert agent artifacts.

Before an artifact is overwritten its current bytes are copied to the
backup area under ``<artifact>.backup-<epoch_ms>``. Backups are never
modified or deleted, so writing them needs no coordination; reverting
restores the newest one byte for byte. Verification consults the agent's
recent runtime errors and fails if any arrived after the mutation.
"""

from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import structlog
from pydantic import BaseModel

from devmind.audit import AuditTrail
from devmind.exceptions import ArtifactNotFoundError, BackupNotFoundError
from devmind.types import AgentId, utcnow

logger = structlog.get_logger()

_BACKUP_MARKER = ".backup-"


def artifact_filename(agent_id: AgentId, suffix: str = ".py") -> str:
    """``CodeReviewAgent`` -> ``code-review-agent.py``."""
    base = agent_id[:-5] if agent_id.endswith("Agent") and len(agent_id) > 5 else agent_id
    base = re.sub(r"([a-z0-9])([A-Z])", r"\1-\2", base)
    base = re.sub(r"[\s_]+", "-", base).strip("-").lower()
    if base.endswith("-agent"):
        base = base[: -len("-agent")]
    return f"{base}-agent{suffix}"


def agent_name_from_filename(filename: str) -> str:
    """``code-review-agent.py`` -> ``CodeReviewAgent``."""
    stem = filename.split(".", 1)[0]
    if stem.endswith("-agent"):
        stem = stem[: -len("-agent")]
    return "".join(part[:1].upper() + part[1:] for part in stem.split("-") if part) + "Agent"


class ArtifactStore:
    """Live agent source files in a single directory."""

    def __init__(self, directory: Path | str, suffix: str = ".py") -> None:
        self._dir = Path(directory)
        self._suffix = suffix

    @property
    def directory(self) -> Path:
        return self._dir

    def path_for(self, agent_id: AgentId) -> Path:
        return self._dir / artifact_filename(agent_id, self._suffix)

    def exists(self, agent_id: AgentId) -> bool:
        return self.path_for(agent_id).is_file()

    async def read_bytes(self, agent_id: AgentId) -> bytes:
        path = self.path_for(agent_id)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Agent artifact not found: {path}")
        return await asyncio.to_thread(path.read_bytes)

    async def read(self, agent_id: AgentId) -> str:
        return (await self.read_bytes(agent_id)).decode("utf-8")

    async def write_bytes(self, agent_id: AgentId, content: bytes) -> Path:
        path = self.path_for(agent_id)
        await asyncio.to_thread(_atomic_write, path, content)
        return path

    def list_agents(self) -> list[str]:
        """Agent names derived from ``*-agent<suffix>`` files."""
        if not self._dir.is_dir():
            return []
        return sorted(
            agent_name_from_filename(p.name)
            for p in self._dir.glob(f"*-agent{self._suffix}")
            if p.is_file()
        )


class BackupInfo(BaseModel):
    path: str
    agent_id: AgentId
    timestamp_ms: int

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000, tz=timezone.utc)


class BackupStore:
    """Append-only prior snapshots keyed by (agent, timestamp)."""

    def __init__(self, directory: Path | str, suffix: str = ".py") -> None:
        self._dir = Path(directory)
        self._suffix = suffix

    @property
    def directory(self) -> Path:
        return self._dir

    async def write(
        self, agent_id: AgentId, content: bytes, timestamp_ms: int | None = None
    ) -> BackupInfo:
        prefix = artifact_filename(agent_id, self._suffix) + _BACKUP_MARKER
        ts = timestamp_ms if timestamp_ms is not None else time.time_ns() // 1_000_000

        def _write() -> Path:
            self._dir.mkdir(parents=True, exist_ok=True)
            nonlocal ts
            while (self._dir / f"{prefix}{ts}").exists():
                ts += 1
            path = self._dir / f"{prefix}{ts}"
            path.write_bytes(content)
            return path

        path = await asyncio.to_thread(_write)
        return BackupInfo(path=str(path), agent_id=agent_id, timestamp_ms=ts)

    def list_backups(self, agent_id: AgentId) -> list[BackupInfo]:
        """Backups for an agent, newest first."""
        if not self._dir.is_dir():
            return []
        prefix = artifact_filename(agent_id, self._suffix) + _BACKUP_MARKER
        backups = []
        for path in self._dir.iterdir():
            if not path.name.startswith(prefix):
                continue
            stamp = path.name[len(prefix):]
            if not stamp.isdigit():
                continue
            backups.append(BackupInfo(path=str(path), agent_id=agent_id, timestamp_ms=int(stamp)))
        backups.sort(key=lambda b: b.timestamp_ms, reverse=True)
        return backups

    def latest(self, agent_id: AgentId) -> BackupInfo | None:
        backups = self.list_backups(agent_id)
        return backups[0] if backups else None


class MutationOutcome(BaseModel):
    success: bool = False
    agent_id: AgentId = ""
    backup_path: str = ""
    mutated_at: datetime | None = None
    error: str = ""


class RevertOutcome(BaseModel):
    success: bool = False
    agent_id: AgentId = ""
    restored_from: str = ""
    error: str = ""


class SafetyManager:
    """Guards artifact replacement with backups and verification."""

    def __init__(
        self,
        artifacts: ArtifactStore,
        backups: BackupStore,
        audit_trail: AuditTrail | None = None,
        error_lookback: int = 5,
        verification_window: float = 0.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._artifacts = artifacts
        self._backups = backups
        self._audit = audit_trail
        self._error_lookback = error_lookback
        self._verification_window = verification_window
        self._clock = clock

    @property
    def artifacts(self) -> ArtifactStore:
        return self._artifacts

    @property
    def backups(self) -> BackupStore:
        return self._backups

    async def mutate(self, agent_id: AgentId, new_source: str) -> MutationOutcome:
        """Back up the live artifact, then overwrite it."""
        try:
            current = await self._artifacts.read_bytes(agent_id)
        except ArtifactNotFoundError as e:
            logger.error("mutation_failed", agent_id=agent_id, error=str(e))
            return MutationOutcome(agent_id=agent_id, error=str(e))

        mutated_at = self._clock()
        try:
            backup = await self._backups.write(
                agent_id, current, int(mutated_at.timestamp() * 1000)
            )
            await self._artifacts.write_bytes(agent_id, new_source.encode("utf-8"))
        except OSError as e:
            logger.error("mutation_failed", agent_id=agent_id, error=str(e))
            return MutationOutcome(agent_id=agent_id, error=str(e))

        if self._audit:
            await self._audit.log_action(
                agent_id, "mutation", f"Artifact replaced, backup {backup.path}",
                data={"backup_path": backup.path},
            )
        logger.info("artifact_mutated", agent_id=agent_id, backup=backup.path)
        return MutationOutcome(
            success=True,
            agent_id=agent_id,
            backup_path=backup.path,
            mutated_at=mutated_at,
        )

    async def verify(self, agent_id: AgentId, since: datetime) -> bool:
        """False if the agent reported any error after ``since``."""
        if self._audit is None:
            return True
        if self._verification_window > 0:
            await asyncio.sleep(self._verification_window)

        errors = await self._audit.recent_errors(agent_id, limit=self._error_lookback)
        regressions = [e for e in errors if e.timestamp > since]
        if regressions:
            logger.warning(
                "post_mutation_errors",
                agent_id=agent_id,
                count=len(regressions),
                latest=regressions[0].detail,
            )
            return False
        return True

    async def revert(self, agent_id: AgentId) -> RevertOutcome:
        """Restore the newest backup verbatim. Never raises."""
        try:
            backup = self._backups.latest(agent_id)
            if backup is None:
                raise BackupNotFoundError(f"No backups found for agent {agent_id}")
            content = await asyncio.to_thread(Path(backup.path).read_bytes)
            await self._artifacts.write_bytes(agent_id, content)
        except (BackupNotFoundError, OSError) as e:
            logger.error("revert_failed", agent_id=agent_id, error=str(e))
            if self._audit:
                await self._audit.log_action(agent_id, "revert", str(e), success=False)
            return RevertOutcome(agent_id=agent_id, error=str(e))

        if self._audit:
            await self._audit.log_action(
                agent_id, "revert", f"Restored {Path(backup.path).name}",
                data={"backup_path": backup.path},
            )
        logger.info("artifact_reverted", agent_id=agent_id, backup=backup.path)
        return RevertOutcome(success=True, agent_id=agent_id, restored_from=backup.path)


def _atomic_write(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(content)
    tmp.replace(path)
