"""
Typer CLI for the retention scheduler.

Commands:
    srs init-db                         - Initialize database tables
    srs enroll STUDENT ITEM             - First exposure (seed schedule, due now)
    srs review STUDENT ITEM GRADE       - Submit feedback (again|hard|good|easy or 1-4)
    srs due STUDENT                     - Items due by the end of today
    srs overdue STUDENT [--grace N]     - Items past due by more than N days
    srs stats STUDENT                   - Student statistics
    srs item ITEM                       - Item performance across students
    srs show STUDENT ITEM               - Current schedule of a pair
    srs complete STUDENT ITEM           - Deactivate a schedule
    srs reconcile STUDENT ITEM          - Rebuild a schedule from its study records

Usage:
    srs --help
    srs review alice card-42 good --time-ms 3200
    srs overdue alice --grace 2
"""

from __future__ import annotations

import sys
from datetime import datetime

import typer
from loguru import logger
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from config import Settings, get_settings
from src.scheduling.models import ResponseMeta, ReviewSchedule
from src.scheduling.policy import difficulty_level
from src.scheduling.result import OperationResult
from src.scheduling.service import SchedulingService

app = typer.Typer(
    help="Spaced-repetition review scheduler",
    no_args_is_help=True,
)

console = Console()


# ========================================
# Context Builder (Dependency Injection)
# ========================================


class CLIContext:
    """
    Dependency injection container for CLI commands.

    The service is built lazily so ``--help`` never touches the database.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._service: SchedulingService | None = None

    @property
    def service(self) -> SchedulingService:
        if self._service is None:
            self._service = SchedulingService.from_settings(self.settings)
        return self._service

    def close(self) -> None:
        if self._service is not None:
            self._service.close()


def configure_logging(level: str, log_file: str | None = None) -> None:
    """Route loguru to stderr and, when configured, a rotating file."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<dim>{time:HH:mm:ss}</dim> | <level>{level: <8}</level> | {message}",
    )
    if log_file:
        logger.add(log_file, level=level, rotation="10 MB", retention=5)


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_level: str | None = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
):
    """Spaced-repetition review scheduler."""
    settings = get_settings()
    configure_logging((log_level or settings.log_level).upper(), settings.log_file)
    cli_ctx = CLIContext(settings)
    ctx.obj = cli_ctx
    ctx.call_on_close(cli_ctx.close)


def _service(ctx: typer.Context) -> SchedulingService:
    return ctx.obj.service


def _unwrap(result: OperationResult):
    """Value of a successful result; print the error and exit otherwise."""
    if not result.ok:
        error = result.error
        rprint(f"[red]✗[/red] {error.kind.value}: {escape(str(error))}")
        if error.retryable:
            rprint("  [dim]Retryable - try again shortly[/dim]")
        raise typer.Exit(code=1)
    if result.stale:
        rprint("[yellow]⚠[/yellow] Store unavailable - showing last known data")
    return result.value


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _schedule_table(title: str, schedules: list[ReviewSchedule], now: datetime) -> Table:
    table = Table(title=title, show_header=True)
    table.add_column("Item", style="cyan")
    table.add_column("Next Due", style="yellow")
    table.add_column("Interval", justify="right")
    table.add_column("Ease", justify="right")
    table.add_column("Failures", justify="right", style="red")
    table.add_column("Days Overdue", justify="right", style="dim")

    for schedule in schedules:
        table.add_row(
            schedule.item_id,
            _fmt(schedule.next_due_at),
            f"{schedule.interval_days:.1f}d",
            f"{schedule.ease_factor:.2f}",
            str(schedule.consecutive_failures),
            f"{schedule.days_overdue(now):.1f}",
        )
    return table


# ========================================
# Commands
# ========================================


@app.command("init-db")
def init_db_command(ctx: typer.Context) -> None:
    """
    Initialize database tables from SQLAlchemy models.

    Safe to run multiple times (idempotent).
    """
    from src.db.database import create_db_engine, init_db

    settings = ctx.obj.settings
    engine = create_db_engine(settings.database_url)
    try:
        init_db(engine)
    finally:
        engine.dispose()
    rprint("[green]✓[/green] Database initialized!")


@app.command("enroll")
def enroll(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
    item_id: str = typer.Argument(..., help="Learning item identifier"),
) -> None:
    """Create a schedule for a newly assigned item."""
    schedule = _unwrap(_service(ctx).enroll(student_id, item_id))
    rprint(f"[green]✓[/green] {student_id} enrolled on {item_id} (due {_fmt(schedule.next_due_at)})")


@app.command("review")
def review(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
    item_id: str = typer.Argument(..., help="Learning item identifier"),
    grade: str = typer.Argument(..., help="again | hard | good | easy (or 1-4)"),
    time_ms: int | None = typer.Option(None, "--time-ms", help="Response time in milliseconds"),
    correct: bool | None = typer.Option(None, "--correct/--incorrect", help="Override correctness"),
) -> None:
    """Submit feedback for one review."""
    meta = ResponseMeta(response_time_ms=time_ms, correct=correct)
    outcome = _unwrap(_service(ctx).submit_feedback(student_id, item_id, grade, meta))

    rprint(f"\n[bold cyan]{outcome.grade.name.title()}[/bold cyan] recorded for {item_id}")
    rprint(f"  Next due: {_fmt(outcome.next_due_at)}")
    rprint(f"  Interval: {outcome.interval_days:.1f} days")
    rprint(f"  Ease: {outcome.ease_factor:.2f} ({difficulty_level(outcome.ease_factor)})")
    if outcome.lapse:
        rprint("  [red]Lapse[/red]")
    if outcome.late:
        rprint("  [yellow]Late review - penalty applied[/yellow]")
    if not outcome.cache_invalidated:
        rprint(f"  [yellow]⚠[/yellow] Cached views not refreshed: {escape(outcome.invalidation_error or '')}")


@app.command("due")
def due(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
) -> None:
    """List items due by the end of today."""
    service = _service(ctx)
    schedules = _unwrap(service.get_due_today(student_id))
    if not schedules:
        rprint(f"[green]✓[/green] Nothing due today for {student_id}")
        return
    console.print(_schedule_table(f"Due Today - {student_id} ({len(schedules)})", schedules, service.clock.now()))


@app.command("overdue")
def overdue(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
    grace: float | None = typer.Option(None, "--grace", "-g", help="Grace window in days"),
) -> None:
    """List items past due by more than the grace window."""
    service = _service(ctx)
    schedules = _unwrap(service.get_overdue(student_id, grace))
    if not schedules:
        rprint(f"[green]✓[/green] No overdue items for {student_id}")
        return
    console.print(_schedule_table(f"Overdue - {student_id} ({len(schedules)})", schedules, service.clock.now()))


@app.command("stats")
def stats(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
) -> None:
    """Show a student's statistics."""
    statistics = _unwrap(_service(ctx).get_statistics(student_id))

    table = Table(title=f"Statistics - {student_id}", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Total items", str(statistics.total_items))
    table.add_row("Due today", str(statistics.due_today))
    table.add_row("Overdue", str(statistics.overdue))
    table.add_row("New", str(statistics.new_items))
    table.add_row("Reviewed today", str(statistics.completed_today))
    table.add_row("Average ease", f"{statistics.average_ease_factor:.2f}")
    console.print(table)


@app.command("item")
def item(
    ctx: typer.Context,
    item_id: str = typer.Argument(..., help="Learning item identifier"),
) -> None:
    """Show how an item performs across students."""
    performance = _unwrap(_service(ctx).get_item_performance(item_id))

    table = Table(title=f"Item Performance - {item_id}", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    table.add_row("Reviews", str(performance.total_reviews))
    table.add_row("Success rate", f"{performance.success_rate:.1f}%")
    table.add_row("Avg response", f"{performance.avg_response_time_ms:.0f} ms")
    table.add_row("Lapses", str(performance.lapse_count))
    table.add_row("Active schedules", str(performance.active_schedules))
    table.add_row("Average ease", f"{performance.average_ease_factor:.2f}")
    table.add_row("Average interval", f"{performance.average_interval_days:.1f}d")
    console.print(table)


@app.command("show")
def show(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
    item_id: str = typer.Argument(..., help="Learning item identifier"),
) -> None:
    """Show the schedule of a (student, item) pair."""
    service = _service(ctx)
    schedule = _unwrap(service.get_schedule(student_id, item_id))
    now = service.clock.now()

    table = Table(title=f"{student_id} / {item_id}", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Status", schedule.status_at(now, service.overdue_grace_days).value)
    table.add_row("Next due", _fmt(schedule.next_due_at))
    table.add_row("Interval", f"{schedule.interval_days:.1f} days")
    table.add_row("Ease", f"{schedule.ease_factor:.2f} ({difficulty_level(schedule.ease_factor)})")
    table.add_row("Reviews", str(schedule.review_count))
    table.add_row("Lapses", str(schedule.lapse_count))
    table.add_row("Consecutive failures", str(schedule.consecutive_failures))
    table.add_row("Last reviewed", _fmt(schedule.last_reviewed_at))
    console.print(table)


@app.command("complete")
def complete(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
    item_id: str = typer.Argument(..., help="Learning item identifier"),
) -> None:
    """Deactivate a schedule (the item is no longer assigned)."""
    _unwrap(_service(ctx).complete_schedule(student_id, item_id))
    rprint(f"[green]✓[/green] {item_id} completed for {student_id}")


@app.command("reconcile")
def reconcile(
    ctx: typer.Context,
    student_id: str = typer.Argument(..., help="Student identifier"),
    item_id: str = typer.Argument(..., help="Learning item identifier"),
) -> None:
    """Rebuild a schedule by replaying its study records."""
    schedule = _unwrap(_service(ctx).reconcile_schedule(student_id, item_id))
    rprint(f"[green]✓[/green] Reconciled {item_id} for {student_id}")
    rprint(f"  Next due: {_fmt(schedule.next_due_at)}")
    rprint(f"  Interval: {schedule.interval_days:.1f} days, ease {schedule.ease_factor:.2f}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
