"""Rich-based display functions for Gmail Janitor."""

from __future__ import annotations

import logging
from datetime import datetime

from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .models import (
    CleanupJob,
    CleanupPolicy,
    CleanupResults,
    JobStatus,
    PolicyEvaluation,
    SystemHealth,
)

console = Console()

_STATUS_COLORS = {
    JobStatus.PENDING: "yellow",
    JobStatus.IN_PROGRESS: "blue",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
    JobStatus.CANCELLED: "dim",
}

_ACTION_COLORS = {"delete": "red", "archive": "yellow"}


def setup_logging(verbose: bool = False) -> None:
    """Route library logging through the shared console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # googleapiclient is chatty at INFO
    logging.getLogger("googleapiclient").setLevel(logging.WARNING)


def _fmt_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "-"


def _fmt_bytes(size: int) -> str:
    if size >= 1_048_576:
        return f"{size / 1_048_576:.1f} MB"
    if size >= 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size} B"


def _status(status: JobStatus) -> str:
    color = _STATUS_COLORS[status]
    return f"[{color}]{status.value}[/{color}]"


def display_policies(policies: list[CleanupPolicy]) -> None:
    """Display policies in priority order."""
    if not policies:
        console.print("[dim]No policies defined.[/dim]")
        return

    table = Table(title="Cleanup Policies")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Priority", justify="right")
    table.add_column("Action")
    table.add_column("Schedule")
    table.add_column("Enabled")
    table.add_column("Runs", justify="right")
    table.add_column("Cleaned", justify="right")

    for policy in policies:
        color = _ACTION_COLORS.get(policy.action.type, "white")
        schedule = (
            f"{policy.schedule.frequency} {policy.schedule.time}"
            if policy.schedule and policy.schedule.enabled
            else "-"
        )
        table.add_row(
            policy.id,
            policy.name,
            str(policy.priority),
            f"[{color}]{policy.action.type}[/{color}]",
            schedule,
            "[green]yes[/green]" if policy.enabled else "[dim]no[/dim]",
            str(policy.run_count),
            str(policy.total_emails_cleaned),
        )
    console.print(table)


def display_policy_detail(policy: CleanupPolicy) -> None:
    """Display one policy with its criteria and safety settings."""
    c = policy.criteria
    criteria = {
        "Older than (days)": c.age_days_min,
        "Importance at most": c.importance_level_max,
        "Size at least (bytes)": c.size_threshold_min,
        "Spam score at least": c.spam_score_min,
        "Promotional score at least": c.promotional_score_min,
        "Access score at most": c.access_score_max,
        "Not accessed for (days)": c.no_access_days,
    }

    lines = [
        f"[bold]ID:[/bold] {policy.id}",
        f"[bold]Name:[/bold] {policy.name}",
        f"[bold]Enabled:[/bold] {'yes' if policy.enabled else 'no'}",
        f"[bold]Priority:[/bold] {policy.priority}",
        f"[bold]Action:[/bold] {policy.action.type} ({policy.action.method})",
        "",
        "[bold]Criteria:[/bold]",
    ]
    lines.extend(f"  - {label}: {value}" for label, value in criteria.items() if value is not None)
    lines.extend(
        [
            "",
            "[bold]Safety:[/bold]",
            f"  - Max emails per run: {policy.safety.max_emails_per_run}",
            f"  - Preserve important: {'yes' if policy.safety.preserve_important else 'no'}",
        ]
    )
    if policy.schedule:
        lines.append("")
        lines.append(
            f"[bold]Schedule:[/bold] {policy.schedule.frequency} at {policy.schedule.time}"
            + ("" if policy.schedule.enabled else " (disabled)")
        )
    lines.append("")
    lines.append(f"[bold]Last run:[/bold] {_fmt_time(policy.last_run_at)}")
    lines.append(f"[bold]Runs:[/bold] {policy.run_count}  |  "
                 f"[bold]Emails cleaned:[/bold] {policy.total_emails_cleaned}")

    console.print(Panel("\n".join(lines), title="Policy Detail"))


def display_jobs(jobs: list[CleanupJob]) -> None:
    """Display jobs newest first."""
    if not jobs:
        console.print("[dim]No cleanup jobs.[/dim]")
        return

    table = Table(title="Cleanup Jobs")
    table.add_column("Job ID", style="dim")
    table.add_column("Type")
    table.add_column("Policy")
    table.add_column("Trigger")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created")

    for job in jobs:
        table.add_row(
            job.job_id,
            job.job_type,
            job.cleanup_metadata.policy_id or "-",
            job.cleanup_metadata.triggered_by,
            _status(job.status),
            f"{job.progress}%",
            _fmt_time(job.created_at),
        )
    console.print(table)


def display_job_detail(job: CleanupJob) -> None:
    meta = job.cleanup_metadata
    progress = job.progress_details
    lines = [
        f"[bold]Job ID:[/bold] {job.job_id}",
        f"[bold]Type:[/bold] {job.job_type}",
        f"[bold]Status:[/bold] {_status(job.status)}"
        + (" [yellow](cancel requested)[/yellow]" if job.cancel_requested and not job.status.is_terminal else ""),
        f"[bold]Policy:[/bold] {meta.policy_id or '-'}",
        f"[bold]Triggered by:[/bold] {meta.triggered_by} ({meta.priority} priority)",
        f"[bold]Batch size:[/bold] {meta.batch_size}  |  [bold]Target:[/bold] {meta.target_emails}",
        f"[bold]Dry run:[/bold] {'yes' if job.dry_run else 'no'}",
        "",
        f"[bold]Progress:[/bold] {job.progress}% "
        f"(batch {progress.current_batch}/{progress.total_batches})",
        f"[bold]Analyzed:[/bold] {progress.emails_analyzed}  |  "
        f"[bold]Cleaned:[/bold] {progress.emails_cleaned}  |  "
        f"[bold]Errors:[/bold] {progress.errors_encountered}",
        "",
        f"[bold]Created:[/bold] {_fmt_time(job.created_at)}",
        f"[bold]Started:[/bold] {_fmt_time(job.started_at)}",
        f"[bold]Completed:[/bold] {_fmt_time(job.completed_at)}",
    ]
    if job.error_details:
        lines.append("")
        lines.append(f"[bold red]Error:[/bold red] {job.error_details}")

    console.print(Panel("\n".join(lines), title="Job Detail"))
    if job.results:
        display_cleanup_results(job.results)


def display_cleanup_results(results: CleanupResults) -> None:
    """Display the outcome of a run, including dry-run candidates."""
    if results.candidates:
        table = Table(title="Cleanup Candidates" + (" (dry run)" if results.dry_run else ""))
        table.add_column("#", justify="right", style="dim")
        table.add_column("Email ID")
        table.add_column("Action")
        table.add_column("Score", justify="right")
        table.add_column("Size", justify="right")
        for idx, candidate in enumerate(results.candidates, start=1):
            color = _ACTION_COLORS.get(candidate["action"], "white")
            table.add_row(
                str(idx),
                candidate["email_id"],
                f"[{color}]{candidate['action']}[/{color}]",
                f"{candidate['score']:.3f}",
                _fmt_bytes(candidate["size"]),
            )
        console.print(table)

    verb = "Would clean" if results.dry_run else "Cleaned"
    style = "green" if results.success else "red"
    lines = [
        f"[bold {style}]{verb} {results.emails_deleted + results.emails_archived} "
        f"of {results.emails_processed} emails[/bold {style}]",
        f"Deleted: {results.emails_deleted}  |  Archived: {results.emails_archived}  |  "
        f"Storage freed: {_fmt_bytes(results.storage_freed)}",
    ]
    if results.cancelled:
        lines.append("[yellow]Run was cancelled before finishing.[/yellow]")
    for error in results.errors:
        lines.append(f"[red]- {error}[/red]")
    console.print(Panel("\n".join(lines), title="Results"))


def display_evaluation(evaluation: PolicyEvaluation) -> None:
    """Display protected messages from a policy evaluation."""
    summary = evaluation.evaluation_summary
    console.print(
        f"[bold]Evaluated:[/bold] {summary.get('total_emails', 0)}  |  "
        f"[bold]Candidates:[/bold] {summary.get('candidates_count', 0)}  |  "
        f"[bold]Protected:[/bold] {summary.get('protected_count', 0)}  |  "
        f"[bold]Unmatched:[/bold] {summary.get('unmatched_count', 0)}"
    )
    if not evaluation.protected_emails:
        return

    table = Table(title="Protected Emails")
    table.add_column("Email ID", style="dim")
    table.add_column("Subject")
    table.add_column("Rule")
    table.add_column("Reason")
    for protected in evaluation.protected_emails:
        table.add_row(
            protected.email.id, protected.email.subject, protected.rule, protected.reason
        )
    console.print(table)


def display_status(status: dict) -> None:
    """Display the automation status panel."""
    counts = status["jobs_by_status"]
    lines = [
        f"[bold]Services running:[/bold] {'yes' if status['running'] else 'no'}",
        f"[bold]Scheduler:[/bold] {'running' if status['scheduler_running'] else 'stopped'} "
        f"({status['active_schedules']} active schedules)",
        f"[bold]Next scheduled cleanup:[/bold] {_fmt_time(status['next_scheduled_cleanup'])}",
        f"[bold]Continuous cleanup:[/bold] "
        f"{'enabled' if status['continuous_cleanup_enabled'] else 'disabled'}",
        f"[bold]Queued jobs:[/bold] {status['queue_length']}",
        "",
        "[bold]Jobs:[/bold] "
        + "  |  ".join(f"{_status(JobStatus(name))} {count}" for name, count in counts.items()),
    ]
    last = status.get("last_execution")
    if last is not None:
        lines.append("")
        lines.append(
            f"[bold]Last execution:[/bold] {last.execution_id} at {_fmt_time(last.completed_at)} "
            f"({last.emails_deleted} deleted, {last.emails_archived} archived, "
            f"effectiveness {last.effectiveness:.0%})"
        )
    console.print(Panel("\n".join(lines), title="Automation Status"))


def display_stats(
    storage: dict, staleness: dict, access: dict, health: SystemHealth, days: int = 30
) -> None:
    """Display mailbox statistics: storage, staleness and access patterns."""
    table = Table(title="Mailbox Statistics")
    table.add_column("Metric")
    table.add_column("Value", justify="right")

    table.add_row("Indexed emails", str(storage["total_emails"]))
    table.add_row("Archived emails", str(storage["archived_emails"]))
    table.add_row("Active size", _fmt_bytes(storage["active_size"]))
    for category, count in sorted(storage["by_category"].items()):
        table.add_row(f"  {category}", str(count))
    table.add_row("Average staleness", f"{staleness['average_staleness']:.3f}")
    for rec, count in staleness["recommendations"].items():
        color = _ACTION_COLORS.get(rec, "green")
        table.add_row(f"  [{color}]{rec}[/{color}]", str(count))
    table.add_row(f"Access events ({days} days)", str(access["total_access_events"]))
    table.add_row(f"Emails accessed ({days} days)", str(access["unique_emails_accessed"]))
    console.print(table)

    color = {"healthy": "green", "warning": "yellow", "critical": "red"}[health.status]
    lines = [
        f"[bold]Status:[/bold] [{color}]{health.status}[/{color}]",
        f"[bold]Storage:[/bold] {health.storage_usage_percent:.1f}%  |  "
        f"[bold]Query time:[/bold] {health.average_query_time_ms:.1f}ms  |  "
        f"[bold]Cache hit rate:[/bold] {health.cache_hit_rate:.0%}",
    ]
    lines.extend(f"[yellow]- {w}[/yellow]" for w in health.warnings)
    lines.extend(f"[red]- {e}[/red]" for e in health.errors)
    console.print(Panel("\n".join(lines), title="Health"))


def create_progress(description: str) -> Progress:
    """Create a configured Rich Progress bar."""
    return Progress(
        SpinnerColumn(),
        TextColumn(f"[bold blue]{description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )
