"""Audit Trail — append-only log of feedback, errors and optimizations.

Every user feedback event, runtime error reported by an agent, applied
optimization and revert gets recorded here. The error entries double as
the runtime error stream consulted when verifying a mutation.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

import aiosqlite
import orjson
from pydantic import BaseModel, Field

from devmind.types import new_id, utcnow


class AuditEntry(BaseModel):
    """A single audit log entry."""

    id: str = Field(default_factory=new_id)
    timestamp: datetime = Field(default_factory=utcnow)
    agent_id: str = ""
    action: str = ""  # "feedback", "error", "optimization", "mutation", "revert"
    detail: str = ""
    score: float | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    success: bool = True


class AuditTrail:
    """Append-only audit log, in memory with optional SQLite backing."""

    def __init__(self, db_path: str | None = None) -> None:
        self._db_path = db_path
        self._entries: list[AuditEntry] = []
        self._lock = asyncio.Lock()
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Create the audit table if needed and load prior entries."""
        if not self._db_path:
            return
        self._db = await aiosqlite.connect(self._db_path)
        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS audit_log (
                id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                agent_id TEXT,
                action TEXT NOT NULL,
                detail TEXT,
                score REAL,
                data TEXT,
                success INTEGER DEFAULT 1
            )
        """)
        await self._db.commit()

        async with self._db.execute(
            "SELECT id, timestamp, agent_id, action, detail, score, data, success "
            "FROM audit_log ORDER BY timestamp"
        ) as cursor:
            rows = await cursor.fetchall()
        self._entries = [
            AuditEntry(
                id=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                agent_id=row[2] or "",
                action=row[3],
                detail=row[4] or "",
                score=row[5],
                data=orjson.loads(row[6]) if row[6] else {},
                success=bool(row[7]),
            )
            for row in rows
        ]

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def record(self, entry: AuditEntry) -> None:
        """Record an audit entry (immutable append)."""
        async with self._lock:
            self._entries.append(entry)
            if self._db:
                await self._db.execute(
                    """INSERT INTO audit_log
                       (id, timestamp, agent_id, action, detail, score, data, success)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.id,
                        entry.timestamp.isoformat(),
                        entry.agent_id,
                        entry.action,
                        entry.detail,
                        entry.score,
                        orjson.dumps(entry.data).decode(),
                        int(entry.success),
                    ),
                )
                await self._db.commit()

    async def log_feedback(
        self, agent_id: str, score: float, comments: str = ""
    ) -> AuditEntry:
        """Convenience: log a user feedback score."""
        entry = AuditEntry(
            agent_id=agent_id,
            action="feedback",
            detail=comments,
            score=score,
        )
        await self.record(entry)
        return entry

    async def log_error(
        self,
        agent_id: str,
        error: str,
        timestamp: datetime | None = None,
    ) -> AuditEntry:
        """Convenience: log a runtime error reported by an agent."""
        entry = AuditEntry(
            agent_id=agent_id,
            action="error",
            detail=error[:500],
            success=False,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        await self.record(entry)
        return entry

    async def log_action(
        self,
        agent_id: str,
        action: str,
        detail: str,
        success: bool = True,
        data: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """Convenience: log an optimization, mutation or revert."""
        entry = AuditEntry(
            agent_id=agent_id,
            action=action,
            detail=detail,
            success=success,
            data=data or {},
        )
        await self.record(entry)
        return entry

    async def query(
        self,
        agent_id: str = "",
        action: str = "",
        limit: int = 50,
    ) -> list[AuditEntry]:
        """Query the audit log with filters, most recent first."""
        results = self._entries

        if agent_id:
            results = [e for e in results if e.agent_id == agent_id]
        if action:
            results = [e for e in results if e.action == action]

        results = sorted(results, key=lambda e: e.timestamp, reverse=True)
        return results[:limit]

    async def recent_errors(self, agent_id: str, limit: int = 5) -> list[AuditEntry]:
        """The agent's most recent runtime errors, newest first."""
        return await self.query(agent_id=agent_id, action="error", limit=limit)

    async def count(self) -> int:
        """Total number of audit entries."""
        return len(self._entries)

    def __repr__(self) -> str:
        return f"AuditTrail(entries={len(self._entries)})"
