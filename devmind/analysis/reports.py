"""Markdown reports for the whole system and for single optimizations.

Reports are written to ``{workspace_dir}/reports``:
  - system-performance-report.md
  - <agent>-optimization-report.md
"""

from __future__ import annotations

import asyncio
import difflib
from datetime import datetime
from pathlib import Path

from devmind.analysis.performance import PerformanceAnalysis
from devmind.types import AgentId, AgentMetrics, AppliedChange, utcnow

SYSTEM_REPORT_FILENAME = "system-performance-report.md"


def agent_recommendation(a: PerformanceAnalysis) -> str:
    """The single most pressing action for an agent."""
    if a.error_rate > 0.2:
        return "Urgent optimization to reduce errors"
    if a.success_rate < 0.7:
        return "Improve processing logic to raise the success rate"
    if a.user_feedback_score < 3:
        return "Improve user experience and clarity of responses"
    if a.avg_response_time > 2000:
        return "Optimize response time with caching"
    if a.avg_token_usage > 3000:
        return "Reduce token usage by optimizing prompts"
    if a.last_optimized_at is None:
        return "Run a first optimization to establish a baseline"
    return "Keep monitoring and optimize if indicators worsen"


def needs_attention(a: PerformanceAnalysis) -> bool:
    return a.error_rate > 0.1 or a.success_rate < 0.8 or a.user_feedback_score < 3.5


def _fmt_time(ts: datetime | None) -> str:
    return ts.strftime("%Y-%m-%d %H:%M") if ts else "Never"


def trend_notes(agents: list[PerformanceAnalysis]) -> list[str]:
    notes = []
    high_error = sum(1 for a in agents if a.error_rate > 0.1)
    if high_error:
        notes.append(
            f"- **{high_error} agent(s)** have error rates above 10%, "
            "which points to stability problems."
        )
    slow = sum(1 for a in agents if a.avg_response_time > 1500)
    if slow:
        notes.append(
            f"- **{slow} agent(s)** respond slower than 1500ms on average."
        )
    never = sum(1 for a in agents if a.last_optimized_at is None)
    if never:
        notes.append(f"- **{never} agent(s)** have never been optimized.")
    low_feedback = sum(1 for a in agents if a.user_feedback_score < 4)
    if low_feedback:
        notes.append(
            f"- **{low_feedback} agent(s)** have feedback scores below 4/5."
        )
    if not notes:
        notes.append("- The system is healthy overall, no significant negative trends.")
    return notes


def render_system_report(
    agents: list[PerformanceAnalysis], now: datetime | None = None
) -> str:
    """Render the system-wide performance report, worst error rate first."""
    now = now or utcnow()
    agents = sorted(agents, key=lambda a: a.error_rate, reverse=True)
    optimized = sum(1 for a in agents if a.optimization_count > 0)

    lines = [
        "# System Performance Report",
        "",
        "## Summary",
        f"- **Date:** {now.strftime('%Y-%m-%d %H:%M')} UTC",
        f"- **Agents analyzed:** {len(agents)}",
        f"- **Agents optimized:** {optimized}",
        "",
        "## Metrics by Agent",
        "",
        "| Agent | Resp. Time | Tokens | Success | Errors | Feedback | Last Optimized |",
        "|-------|------------|--------|---------|--------|----------|----------------|",
    ]
    for a in agents:
        lines.append(
            f"| {a.agent_id} | {a.avg_response_time:.2f}ms | {a.avg_token_usage:.2f} "
            f"| {a.success_rate * 100:.2f}% | {a.error_rate * 100:.2f}% "
            f"| {a.user_feedback_score:.1f}/5 | {_fmt_time(a.last_optimized_at)} |"
        )

    lines.extend(["", "## Agents Needing Attention", ""])
    flagged = [a for a in agents if needs_attention(a)]
    if not flagged:
        lines.append("None.")
    for a in flagged:
        lines.extend([
            f"### {a.agent_id}",
            f"- **Error rate:** {a.error_rate * 100:.2f}%",
            f"- **Success rate:** {a.success_rate * 100:.2f}%",
            f"- **User feedback:** {a.user_feedback_score:.1f}/5",
            f"- **Recommendation:** {agent_recommendation(a)}",
            "",
        ])

    lines.extend(["", "## System Trends", ""])
    if agents:
        n = len(agents)
        lines.extend([
            "### System Averages",
            f"- **Response time:** {sum(a.avg_response_time for a in agents) / n:.2f}ms",
            f"- **Token usage:** {sum(a.avg_token_usage for a in agents) / n:.2f}",
            f"- **Success rate:** {sum(a.success_rate for a in agents) / n * 100:.2f}%",
            f"- **Error rate:** {sum(a.error_rate for a in agents) / n * 100:.2f}%",
            f"- **User feedback:** {sum(a.user_feedback_score for a in agents) / n:.1f}/5",
            "",
            "### Trend Analysis",
        ])
    lines.extend(trend_notes(agents))
    return "\n".join(lines) + "\n"


def unified_diff(before: str, after: str, name: str = "artifact") -> str:
    return "".join(difflib.unified_diff(
        before.splitlines(keepends=True),
        after.splitlines(keepends=True),
        fromfile=f"{name} (before)",
        tofile=f"{name} (after)",
    ))


def render_optimization_report(
    agent_id: AgentId,
    applied_changes: list[AppliedChange],
    before: AgentMetrics,
    source_before: str,
    source_after: str,
    now: datetime | None = None,
) -> str:
    now = now or utcnow()
    lines = [
        f"# Optimization Report: {agent_id}",
        "",
        "## Summary",
        f"- **Date:** {now.strftime('%Y-%m-%d %H:%M')} UTC",
        f"- **Changes applied:** {len(applied_changes)}",
        "- **Metrics before optimization:**",
        f"  - Response time: {before.avg_response_time:.2f}ms",
        f"  - Token usage: {before.avg_token_usage:.2f}",
        f"  - Success rate: {before.success_rate * 100:.2f}%",
        f"  - Error rate: {before.error_rate * 100:.2f}%",
        f"  - User feedback: {before.user_feedback_score:.1f}/5",
        "",
        "## Applied Changes",
    ]
    for i, change in enumerate(applied_changes, 1):
        lines.extend([
            "",
            f"### Change {i}: {change.mutation_type.value}",
            change.description,
        ])
        if change.expected_improvement:
            lines.append(f"**Expected improvement:** {change.expected_improvement}")

    diff = unified_diff(source_before, source_after, agent_id)
    lines.extend(["", "## Diff", "", "```diff", diff.rstrip("\n"), "```"])
    return "\n".join(lines) + "\n"


def report_filename(agent_id: AgentId) -> str:
    return f"{agent_id.lower()}-optimization-report.md"


class ReportWriter:
    """Writes Markdown reports into the reports directory."""

    def __init__(self, directory: Path | str) -> None:
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    async def write(self, filename: str, content: str) -> Path:
        path = self._dir / filename

        def _write() -> None:
            self._dir.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return path
