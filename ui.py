"""
Rich terminal UI components for Market Analyst.

WHY THIS FILE EXISTS:
--------------------
The CLI needs to display sessions in a readable way: the plan with every
step's outcome, the judgments, the final summary and, under partial
failure, the step error log. Rich provides panels, tables and colors.

COMPONENTS:
----------
- show_plan() - Steps and their outcomes
- show_results() - Judgments per entity
- show_summary() - The final report
- show_session_report() - All of the above for one session
- show_sessions_list() - Session history
- show_health() - Provider and model health
"""

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich import box

from schemas import AnalysisResult, ExecutionPlan, FinalSummary
from session import Session

# Global console instance for consistent output
console = Console()


# =============================================================================
# COLOR SCHEMES
# =============================================================================

RECOMMENDATION_COLORS = {
    "buy": "green bold",
    "sell": "red bold",
    "hold": "yellow",
}

SENTIMENT_COLORS = {
    "bullish": "green bold",
    "bearish": "red bold",
    "neutral": "yellow",
}

RISK_COLORS = {
    "low": "green",
    "medium": "yellow",
    "high": "red",
}

STATUS_COLORS = {
    "completed": "green",
    "partial": "yellow",
    "cancelled": "red",
    "connected": "green",
    "connecting": "yellow",
    "disconnected": "dim",
}


# =============================================================================
# HEADER/SECTION UTILITIES
# =============================================================================

def show_header(title: str, subtitle: str = "") -> None:
    """Display a styled header."""
    console.print()
    console.rule(f"[bold blue]{title}[/bold blue]")
    if subtitle:
        console.print(f"[dim]{subtitle}[/dim]", justify="center")
    console.print()


def show_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def show_error(message: str) -> None:
    console.print(f"[red]✗[/red] {message}")


def show_warning(message: str) -> None:
    console.print(f"[yellow]⚠[/yellow] {message}")


def show_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def show_thinking(message: str = "Analyzing..."):
    """
    Context manager that shows a spinner while processing.

    Usage:
        with show_thinking("Analyzing..."):
            session = await orchestrator.run(query)
    """
    return console.status(f"[bold blue]{message}[/bold blue]", spinner="dots")


def _colored(value: str, colors: dict) -> str:
    color = colors.get(value, "white")
    return f"[{color}]{value}[/{color}]"


# =============================================================================
# PLAN / RESULTS / SUMMARY
# =============================================================================

def show_plan(plan: ExecutionPlan, fallback: bool = False) -> None:
    """Display the executed plan with each step's outcome."""
    title = f"[bold]Plan[/bold] ({plan.analysis_kind}, priority {plan.priority})"
    if fallback:
        title += " [dim]fallback[/dim]"

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title=title)
    table.add_column("#", justify="right", style="cyan", width=3)
    table.add_column("Step", style="white")
    table.add_column("Provider", style="green")
    table.add_column("Entity")
    table.add_column("Outcome", justify="center")

    for i, step in enumerate(plan.steps, 1):
        if step.result is None:
            outcome = "[dim]not run[/dim]"
        elif step.result.success:
            outcome = f"[green]ok[/green] [dim]{step.result.duration_ms}ms[/dim]"
        else:
            outcome = f"[red]{step.result.error_kind}[/red]"
        table.add_row(str(i), step.operation, step.provider, step.target_entity or "-", outcome)

    console.print(table)


def show_results(results: list[AnalysisResult]) -> None:
    """Display individual judgments."""
    if not results:
        console.print("[dim]No judgments were produced.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Judgments[/bold]")
    table.add_column("Entity", style="cyan")
    table.add_column("Source", style="dim")
    table.add_column("Call", justify="center")
    table.add_column("Confidence", justify="right")
    table.add_column("Rationale")

    for result in results:
        rationale = result.rationale[:70] + "..." if len(result.rationale) > 70 else result.rationale
        if result.is_default:
            rationale = f"[dim]{rationale}[/dim]"
        table.add_row(
            result.target_entity,
            result.operation,
            _colored(result.recommendation, RECOMMENDATION_COLORS),
            f"{result.confidence:.0%}",
            rationale,
        )

    console.print(table)


def show_summary(summary: FinalSummary) -> None:
    """Display the final summary."""
    lines = [
        f"[bold]Sentiment:[/bold] {_colored(summary.overall_sentiment, SENTIMENT_COLORS)}"
        f"   [bold]Risk:[/bold] {_colored(summary.risk_level, RISK_COLORS)}"
        f"   [bold]Confidence:[/bold] {summary.confidence:.0%}",
        "",
        summary.summary,
    ]

    if summary.key_findings:
        lines.append("")
        lines.append("[bold]Key findings:[/bold]")
        lines.extend(f"  • {finding}" for finding in summary.key_findings)

    if summary.recommendations:
        lines.append("")
        lines.append("[bold]Recommendations:[/bold]")
        lines.extend(f"  {i}. {rec}" for i, rec in enumerate(summary.recommendations, 1))

    title = "[bold]Summary[/bold]"
    if summary.is_fallback:
        title += " [dim](aggregated)[/dim]"

    console.print(Panel("\n".join(lines), title=title, border_style="blue", box=box.DOUBLE))


def show_session_report(session: Session, verbose: bool = False) -> None:
    """Display everything about a finished session."""
    show_header(f"Session {session.session_id}", session.query)

    console.print(f"[bold]Status:[/bold] {_colored(session.status, STATUS_COLORS)}")
    console.print(f"[bold]Entities:[/bold] {', '.join(session.target_entities) or 'none'}")

    plan = session.get_plan()
    if plan is not None and (verbose or plan.steps):
        show_plan(plan, fallback=session.used_fallback_plan)

    if verbose:
        show_results(session.get_results())

    summary = session.get_summary()
    if summary is not None:
        show_summary(summary)

    if session.step_errors:
        console.print(f"\n[bold yellow]Step errors ({len(session.step_errors)}):[/bold yellow]")
        for error in session.step_errors:
            console.print(f"  [yellow]•[/yellow] {error}")

    if verbose and session.context_errors:
        console.print("\n[bold dim]Context errors:[/bold dim]")
        for error in session.context_errors:
            console.print(f"  [dim]• {error}[/dim]")


# =============================================================================
# SESSION LIST / HEALTH
# =============================================================================

def show_sessions_list(sessions: list[Session]) -> None:
    """Display a list of sessions, most recent first."""
    if not sessions:
        console.print("[dim]No sessions found.[/dim]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Status")
    table.add_column("Query")
    table.add_column("Sentiment")
    table.add_column("Created", style="dim")

    for session in sessions:
        summary = session.get_summary()
        query = session.query[:50] + "..." if len(session.query) > 50 else session.query
        table.add_row(
            session.session_id,
            _colored(session.status, STATUS_COLORS),
            query,
            _colored(summary.overall_sentiment, SENTIMENT_COLORS) if summary else "-",
            session.created_at[:19],
        )

    console.print(table)


def show_health(providers: dict[str, bool], model: tuple[bool, str]) -> None:
    """Display provider and model health."""
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold", title="[bold]Health[/bold]")
    table.add_column("Component", style="cyan")
    table.add_column("Status", justify="center")

    for name, healthy in providers.items():
        table.add_row(f"provider: {name}", "[green]✓[/green]" if healthy else "[red]✗[/red]")

    available, detail = model
    table.add_row(f"model: {detail}", "[green]✓[/green]" if available else "[red]✗[/red]")

    console.print(table)
