"""Tests for performance analysis and Markdown reports."""

from datetime import datetime, timezone

import pytest

from devmind.analysis.performance import (
    PerformanceAnalysis,
    PerformanceAnalyzer,
    error_patterns,
    summarize,
)
from devmind.analysis.reports import (
    ReportWriter,
    agent_recommendation,
    render_optimization_report,
    render_system_report,
    report_filename,
)
from devmind.telemetry.store import TelemetryStore
from devmind.types import AgentMetrics, AppliedChange, MutationType, Trend

NOW = datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc)


def test_error_patterns_frequency():
    events = [
        {"action": "error", "detail": "timeout"},
        {"action": "error", "detail": "timeout"},
        {"action": "error", "detail": "bad json"},
        {"action": "feedback", "detail": "meh"},
    ]
    patterns = error_patterns(events)
    assert [p.message for p in patterns] == ["timeout", "bad json"]
    assert patterns[0].count == 2
    assert patterns[0].frequency == 0.5
    assert error_patterns([]) == []


def test_summarize_recommendations():
    metrics = AgentMetrics(
        agent_id="A",
        response_times=[100, 200, 300, 400, 500],
        token_usage=[2500, 2500],
        error_rate=0.2,
        user_feedback_score=3.0,
    )
    analysis = summarize(metrics, [{"action": "error", "detail": "timeout"}])

    assert analysis.avg_response_time == 300
    assert analysis.response_time_trend == Trend.INCREASING
    assert analysis.token_usage_trend == Trend.STABLE
    assert len(analysis.recommendations) == 5
    assert analysis.recommendations[-1].startswith('Address the most common error: "timeout"')
    assert "(100% of executions)" in analysis.recommendations[-1]


def test_healthy_agent_needs_nothing():
    analysis = summarize(AgentMetrics(agent_id="A"))
    assert analysis.recommendations == [
        "Agent is operating normally, no immediate optimization required"
    ]


@pytest.mark.asyncio
async def test_analyzer_reads_audit_error_stream(audit):
    telemetry = TelemetryStore(audit_trail=audit)
    await telemetry.record_metrics("A", {"error_rate": 0.3})
    await audit.log_error("A", "KeyError")
    await audit.log_error("B", "unrelated")

    analysis = await PerformanceAnalyzer(telemetry, audit).analyze("A")
    assert analysis.error_rate == 0.3
    assert [p.message for p in analysis.error_patterns] == ["KeyError"]


def test_recommendation_ladder():
    def rec(**kwargs):
        return agent_recommendation(PerformanceAnalysis(agent_id="A", **kwargs))

    assert rec(error_rate=0.25).startswith("Urgent")
    assert "success rate" in rec(success_rate=0.6)
    assert "user experience" in rec(user_feedback_score=2.5)
    assert "caching" in rec(avg_response_time=2500)
    assert "token usage" in rec(avg_token_usage=3500)
    assert "first optimization" in rec()
    assert "Keep monitoring" in rec(last_optimized_at=NOW)


def test_system_report_sorted_by_error_rate():
    agents = [
        PerformanceAnalysis(agent_id="Calm", error_rate=0.01, last_optimized_at=NOW, optimization_count=1),
        PerformanceAnalysis(agent_id="Broken", error_rate=0.3, success_rate=0.6),
    ]
    report = render_system_report(agents, now=NOW)

    assert report.startswith("# System Performance Report")
    assert "- **Date:** 2025-03-01 09:30 UTC" in report
    assert "- **Agents optimized:** 1" in report
    assert report.index("| Broken |") < report.index("| Calm |")
    assert "### Broken" in report
    assert "### Calm" not in report
    assert "Urgent optimization" in report
    assert "**1 agent(s)** have error rates above 10%" in report


def test_empty_system_report():
    report = render_system_report([], now=NOW)
    assert "- **Agents analyzed:** 0" in report
    assert "healthy overall" in report


def test_optimization_report_contains_diff():
    report = render_optimization_report(
        "CodeReviewAgent",
        [AppliedChange(mutation_type=MutationType.CODE, description="Guard", expected_improvement="fewer errors")],
        AgentMetrics(agent_id="CodeReviewAgent", success_rate=0.5),
        "x = 1\n",
        "x = 2\n",
        now=NOW,
    )
    assert "# Optimization Report: CodeReviewAgent" in report
    assert "### Change 1: code" in report
    assert "**Expected improvement:** fewer errors" in report
    assert "-x = 1" in report
    assert "+x = 2" in report
    assert "Success rate: 50.00%" in report


@pytest.mark.asyncio
async def test_report_writer(tmp_path):
    writer = ReportWriter(tmp_path / "reports")
    path = await writer.write(report_filename("CodeReviewAgent"), "# hi\n")
    assert path.name == "codereviewagent-optimization-report.md"
    assert path.read_text() == "# hi\n"
