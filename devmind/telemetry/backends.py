"""Metrics storage backends.

The TelemetryStore keeps the hot metrics table in memory and writes
through to one of these backends after every mutation. Backends only
persist; they never decide anything.

- InMemoryMetricsStore: nothing durable, for tests and dry runs.
- JsonFileMetricsStore: the whole table as one JSON object keyed by agent.
- SqliteMetricsStore: one row per agent in a SQLite table.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path

import aiosqlite
import orjson

from devmind.config import DevmindSettings
from devmind.exceptions import PersistenceError
from devmind.types import AgentId, AgentMetrics


class MetricsStore(ABC):
    """Persistence port for per-agent metrics."""

    @abstractmethod
    async def load(self) -> dict[AgentId, AgentMetrics]:
        """Load every stored agent's metrics."""
        ...

    @abstractmethod
    async def get(self, agent_id: AgentId) -> AgentMetrics | None:
        ...

    @abstractmethod
    async def put(self, agent_id: AgentId, metrics: AgentMetrics) -> None:
        """Persist one agent's metrics. Raises PersistenceError on failure."""
        ...

    async def close(self) -> None:
        return None


class InMemoryMetricsStore(MetricsStore):
    def __init__(self) -> None:
        self._table: dict[AgentId, AgentMetrics] = {}

    async def load(self) -> dict[AgentId, AgentMetrics]:
        return {k: v.model_copy(deep=True) for k, v in self._table.items()}

    async def get(self, agent_id: AgentId) -> AgentMetrics | None:
        metrics = self._table.get(agent_id)
        return metrics.model_copy(deep=True) if metrics else None

    async def put(self, agent_id: AgentId, metrics: AgentMetrics) -> None:
        self._table[agent_id] = metrics.model_copy(deep=True)


class JsonFileMetricsStore(MetricsStore):
    """Full-table JSON file. Every put rewrites the file."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._table: dict[AgentId, AgentMetrics] = {}
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> dict[AgentId, AgentMetrics]:
        if not self._path.exists():
            self._table = {}
            return {}
        try:
            raw = await asyncio.to_thread(self._path.read_bytes)
            data = orjson.loads(raw)
            self._table = {
                agent_id: AgentMetrics.model_validate({"agent_id": agent_id, **item})
                for agent_id, item in data.items()
            }
        except (OSError, orjson.JSONDecodeError, ValueError) as e:
            raise PersistenceError(f"Cannot load metrics from {self._path}: {e}") from e
        return {k: v.model_copy(deep=True) for k, v in self._table.items()}

    async def get(self, agent_id: AgentId) -> AgentMetrics | None:
        metrics = self._table.get(agent_id)
        return metrics.model_copy(deep=True) if metrics else None

    async def put(self, agent_id: AgentId, metrics: AgentMetrics) -> None:
        async with self._lock:
            self._table[agent_id] = metrics.model_copy(deep=True)
            payload = {
                k: v.model_dump(mode="json") for k, v in self._table.items()
            }
            try:
                await asyncio.to_thread(self._write, payload)
            except OSError as e:
                raise PersistenceError(f"Cannot write metrics to {self._path}: {e}") from e

    def _write(self, payload: dict) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        tmp.replace(self._path)


class SqliteMetricsStore(MetricsStore):
    """One JSON document per agent in a SQLite table."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def _connect(self) -> aiosqlite.Connection:
        if self._db is None:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._db = await aiosqlite.connect(self._db_path)
            await self._db.execute("""
                CREATE TABLE IF NOT EXISTS agent_metrics (
                    agent_id TEXT PRIMARY KEY,
                    metrics TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            await self._db.commit()
        return self._db

    async def load(self) -> dict[AgentId, AgentMetrics]:
        try:
            db = await self._connect()
            async with db.execute("SELECT agent_id, metrics FROM agent_metrics") as cursor:
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Cannot load metrics from {self._db_path}: {e}") from e
        return {row[0]: AgentMetrics.model_validate_json(row[1]) for row in rows}

    async def get(self, agent_id: AgentId) -> AgentMetrics | None:
        db = await self._connect()
        async with db.execute(
            "SELECT metrics FROM agent_metrics WHERE agent_id = ?", (agent_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return AgentMetrics.model_validate_json(row[0]) if row else None

    async def put(self, agent_id: AgentId, metrics: AgentMetrics) -> None:
        try:
            db = await self._connect()
            await db.execute(
                """INSERT INTO agent_metrics (agent_id, metrics, updated_at)
                   VALUES (?, ?, datetime('now'))
                   ON CONFLICT(agent_id) DO UPDATE SET
                       metrics = excluded.metrics,
                       updated_at = excluded.updated_at""",
                (agent_id, metrics.model_dump_json()),
            )
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Cannot write metrics to {self._db_path}: {e}") from e

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None


def create_metrics_store(config: DevmindSettings) -> MetricsStore:
    """Build the backend named by ``config.metrics_backend``."""
    backend = config.metrics_backend.lower()
    if backend == "memory":
        return InMemoryMetricsStore()
    if backend == "sqlite":
        return SqliteMetricsStore(config.db_path)
    if backend == "json":
        return JsonFileMetricsStore(config.metrics_path)
    raise ValueError(f"Unknown metrics backend: {config.metrics_backend!r}")
