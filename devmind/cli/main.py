"""devmind CLI — inspect and drive the optimization loop.

`devmind record`, `devmind feedback` publish telemetry onto the bus, so
the same policy, suggestion and safety path runs as in the daemon.
"""

from __future__ import annotations

import asyncio
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from devmind.config import settings
from devmind.events.topics import Topic
from devmind.exceptions import AgentNotFoundError

app = typer.Typer(
    name="devmind",
    help="devmind -- self-optimization loop for monitored agents.",
    no_args_is_help=True,
)
console = Console()


@app.command()
def init():
    """Initialize a devmind workspace in the current directory."""
    workspace = settings.workspace_dir
    workspace.mkdir(parents=True, exist_ok=True)
    settings.agents_dir.mkdir(exist_ok=True)
    settings.backups_dir.mkdir(exist_ok=True)
    settings.reports_dir.mkdir(exist_ok=True)

    console.print(
        Panel(
            f"[green]devmind workspace initialized at {workspace}[/green]\n\n"
            f"Put agent sources in [bold]{settings.agents_dir}[/bold] "
            f"(e.g. code-review-agent{settings.artifact_suffix})\n\n"
            "Set your API key:\n"
            "  [bold]export DEVMIND_ANTHROPIC_API_KEY=your-key[/bold]",
            title="devmind",
            border_style="cyan",
        )
    )


@app.command()
def status():
    """Show system-wide status."""
    from devmind import __version__
    from devmind.cli.context import DevmindContext, run_async

    ctx = DevmindContext.get()

    async def _status():
        await ctx.ensure_initialized()
        agents = ctx.controller.registered_agents()
        due = [a for a in agents if ctx.policy.should_optimize(a)]
        await ctx.close()
        return agents, due

    agents, due = run_async(_status())
    has_key = bool(settings.anthropic_api_key)

    console.print(Panel(
        f"[bold]devmind v{__version__}[/bold]\n\n"
        f"API Key:    {'[green]set[/green]' if has_key else '[red]not set[/red]'}\n"
        f"Workspace:  {settings.workspace_dir}\n"
        f"Model:      {settings.default_model}\n"
        f"Backend:    {settings.metrics_backend}\n"
        f"Agents:     {len(agents)} registered\n"
        f"Due:        {len(due)} need optimization",
        title="System Status",
        border_style="cyan",
    ))


@app.command()
def analyze(
    agent: str = typer.Argument(help="Agent id, e.g. CodeReviewAgent"),
):
    """Analyze an agent's performance."""
    from devmind.cli.context import DevmindContext, run_async

    ctx = DevmindContext.get()

    async def _analyze():
        await ctx.ensure_initialized()
        try:
            ctx.telemetry.require(agent)
            return await ctx.controller.analyze(agent), ctx.policy.evaluate(agent)
        finally:
            await ctx.close()

    try:
        analysis, decision = run_async(_analyze())
    except AgentNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Performance — {agent}")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Avg response time", f"{analysis.avg_response_time:.2f}ms")
    table.add_row("Avg token usage", f"{analysis.avg_token_usage:.2f}")
    table.add_row("Success rate", f"{analysis.success_rate * 100:.2f}%")
    table.add_row("Error rate", f"{analysis.error_rate * 100:.2f}%")
    table.add_row("User feedback", f"{analysis.user_feedback_score:.1f}/5")
    table.add_row("Response time trend", analysis.response_time_trend.value)
    table.add_row("Token usage trend", analysis.token_usage_trend.value)
    table.add_row("Optimizations", str(analysis.optimization_count))
    console.print(table)

    for rec in analysis.recommendations:
        console.print(f"  [yellow]•[/yellow] {rec}")
    if decision.should_optimize:
        console.print(
            f"\n[red]Optimization due[/red]: {', '.join(decision.reasons)} "
            f"[dim](goals: {', '.join(decision.goals)})[/dim]"
        )


@app.command()
def report():
    """Write the system performance report."""
    from devmind.cli.context import DevmindContext, run_async

    ctx = DevmindContext.get()

    async def _report():
        await ctx.ensure_initialized()
        path = await ctx.controller.generate_system_report()
        await ctx.close()
        return path

    path = run_async(_report())
    if path is None:
        console.print("[red]Report could not be written.[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Report written to[/green] {path}")


@app.command()
def record(
    agent: str = typer.Argument(help="Agent id"),
    response_time: Optional[float] = typer.Option(None, "--response-time", "-r", help="Milliseconds"),
    token_usage: Optional[float] = typer.Option(None, "--token-usage", "-t"),
    success_rate: Optional[float] = typer.Option(None, "--success-rate", "-s"),
    error_rate: Optional[float] = typer.Option(None, "--error-rate", "-e"),
    error: Optional[str] = typer.Option(None, "--error", help="Runtime error message"),
):
    """Record a telemetry sample and run the optimization loop on it."""
    from devmind.cli.context import DevmindContext, run_async

    ctx = DevmindContext.get()
    payload = {
        "agent_id": agent,
        "response_time": response_time,
        "token_usage": token_usage,
        "success_rate": success_rate,
        "error_rate": error_rate,
    }
    if error:
        payload["error"] = error

    async def _record():
        await ctx.ensure_initialized()
        await ctx.event_bus.publish(Topic.AGENT_METRICS_UPDATED, payload, source="cli")
        await ctx.controller.drain()
        events = ctx.event_bus.history("SELF_IMPROVEMENT_*")
        await ctx.close()
        return events

    _print_outcomes(run_async(_record()))
    console.print(f"[green]Recorded[/green] sample for [bold]{agent}[/bold]")


@app.command()
def feedback(
    agent: str = typer.Argument(help="Agent id"),
    score: float = typer.Argument(help="Score from 0 to 5"),
    comments: Optional[str] = typer.Option(None, "--comments", "-c"),
):
    """Record user feedback; low scores trigger an immediate optimization."""
    from devmind.cli.context import DevmindContext, run_async

    if not 0 <= score <= 5:
        console.print("[red]Score must be between 0 and 5.[/red]")
        raise typer.Exit(1)

    ctx = DevmindContext.get()

    async def _feedback():
        await ctx.ensure_initialized()
        await ctx.event_bus.publish(
            Topic.USER_FEEDBACK_RECEIVED,
            {"agent_id": agent, "feedback_score": score, "comments": comments},
            source="cli",
        )
        await ctx.controller.drain()
        events = ctx.event_bus.history("SELF_IMPROVEMENT_*")
        await ctx.close()
        return events

    _print_outcomes(run_async(_feedback()))
    console.print(f"[green]Feedback {score:.1f}/5 recorded[/green] for [bold]{agent}[/bold]")


@app.command()
def revert(
    agent: str = typer.Argument(help="Agent id"),
):
    """Restore an agent's newest backup."""
    from devmind.cli.context import DevmindContext, run_async

    ctx = DevmindContext.get()

    async def _revert():
        await ctx.ensure_initialized()
        outcome = await ctx.safety.revert(agent)
        await ctx.close()
        return outcome

    outcome = run_async(_revert())
    if not outcome.success:
        console.print(f"[red]Revert failed:[/red] {outcome.error}")
        raise typer.Exit(1)
    console.print(f"[green]Restored[/green] {agent} from {outcome.restored_from}")


@app.command()
def backups(
    agent: str = typer.Argument(help="Agent id"),
):
    """List an agent's backups, newest first."""
    from devmind.cli.context import DevmindContext

    ctx = DevmindContext.get()
    items = ctx.safety.backups.list_backups(agent)
    if not items:
        console.print(f"[dim]No backups for {agent}.[/dim]")
        return

    table = Table(title=f"Backups — {agent}")
    table.add_column("Created", style="dim", no_wrap=True)
    table.add_column("Path", style="white")
    for b in items:
        table.add_row(b.created_at.strftime("%Y-%m-%d %H:%M:%S"), b.path)
    console.print(table)


@app.command()
def daemon(
    once: bool = typer.Option(False, "--once", help="Run a single analysis cycle and exit"),
):
    """Run periodic analysis of every registered agent."""
    from devmind.cli.context import DevmindContext, run_async

    ctx = DevmindContext.get()

    async def _run():
        await ctx.ensure_initialized()
        try:
            if once:
                return await ctx.daemon.run_once()
            await ctx.daemon.start()
            console.print(
                f"[green]Daemon running[/green] every {settings.analysis_interval_hours}h. "
                "[dim]Press Ctrl+C to stop.[/dim]"
            )
            while ctx.daemon.is_running:
                await asyncio.sleep(1)
        finally:
            await ctx.daemon.stop()
            await ctx.close()

    try:
        cycle = run_async(_run())
    except KeyboardInterrupt:
        console.print("\n[dim]Daemon stopped.[/dim]")
        return
    if cycle is not None:
        console.print(
            f"Requested optimization for: {', '.join(cycle.requested) or 'none'}\n"
            f"Report: {cycle.report_path or '-'}"
        )


def _print_outcomes(events) -> None:
    for event in events:
        if event.topic == Topic.SELF_IMPROVEMENT_COMPLETED.value:
            console.print(
                f"[green]Optimized[/green] {event.data['agent_id']}: "
                f"{event.data['applied_change_count']} change(s)"
            )
        elif event.topic == Topic.SELF_IMPROVEMENT_REVERTED.value:
            console.print(f"[yellow]Reverted[/yellow] {event.data['agent_id']}")
        elif event.topic == Topic.SELF_IMPROVEMENT_ERROR.value:
            console.print(f"[red]Optimization failed[/red]: {event.data['error']}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
