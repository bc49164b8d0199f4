"""CLI entry point for Gmail Janitor."""

from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path

import click

from .access_tracker import AccessPatternTracker
from .auth import check_auth, get_gmail_service
from .config import merge_config
from .constants import IMPORTANCE_LEVELS, JOBS_LIST_LIMIT, ORPHANED_JOB_TIMEOUT_MINUTES
from .database import CleanupDatabase
from .display import (
    console,
    create_progress,
    display_cleanup_results,
    display_evaluation,
    display_job_detail,
    display_jobs,
    display_policies,
    display_policy_detail,
    display_stats,
    display_status,
    setup_logging,
)
from .engine import CleanupAutomationEngine
from .errors import CleanupError
from .gmail_client import GmailDeletionExecutor
from .health import SystemHealthMonitor
from .job_queue import JobQueue
from .models import (
    JOB_TYPES,
    CleanupPolicy,
    CleanupResults,
    JobStatus,
    PolicyAction,
    PolicyCriteria,
    PolicySafety,
    PolicySchedule,
)
from .policy_engine import CleanupPolicyEngine
from .scorer import StalenessScorer


@contextmanager
def _cli_errors():
    try:
        yield
    except (CleanupError, FileNotFoundError, ValueError) as e:
        raise click.ClickException(str(e)) from e


def _open_database(ctx: click.Context) -> CleanupDatabase:
    return CleanupDatabase(ctx.obj["db_path"])


def _build_policy_engine(database: CleanupDatabase) -> CleanupPolicyEngine:
    scorer = StalenessScorer(AccessPatternTracker(database))
    return CleanupPolicyEngine(database, scorer)


def _build_engine(database: CleanupDatabase, with_gmail: bool) -> CleanupAutomationEngine:
    """Wire the engine; the Gmail service is only needed when mail is actually trashed."""
    executor = GmailDeletionExecutor(get_gmail_service(), database) if with_gmail else None
    return CleanupAutomationEngine(
        database,
        _build_policy_engine(database),
        JobQueue(),
        executor,
        SystemHealthMonitor(database),
    )


def _load_engine_config(engine: CleanupAutomationEngine) -> None:
    stored = engine.database.load_automation_config()
    if stored:
        engine.config = merge_config(engine.config, stored)


@click.group()
@click.version_option(version="0.1.0", prog_name="gmail-janitor")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Path to the janitor database (default ~/.gmail-janitor/janitor.db).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, db_path: Path | None) -> None:
    """Gmail Janitor - policy-driven cleanup of stale Gmail messages."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path


# --- policies ---


@cli.group(name="policy")
def policy_group() -> None:
    """Manage cleanup policies."""


@policy_group.command(name="list")
@click.pass_context
def policy_list(ctx: click.Context) -> None:
    """List all policies, highest priority first."""
    with _open_database(ctx) as database:
        display_policies(_build_policy_engine(database).get_all_policies())


@policy_group.command(name="show")
@click.argument("policy_id")
@click.pass_context
def policy_show(ctx: click.Context, policy_id: str) -> None:
    """Show one policy."""
    with _open_database(ctx) as database:
        policy = _build_policy_engine(database).get_policy(policy_id)
    if policy is None:
        raise click.ClickException(f"Policy not found: {policy_id}")
    display_policy_detail(policy)


@policy_group.command(name="create")
@click.option("--file", "policy_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Create the policy from a JSON file instead of options.")
@click.option("--name", default=None, help="Policy name.")
@click.option("--priority", default=50, type=click.IntRange(0, 100), help="0-100, higher runs first.")
@click.option("--action", "action_type", type=click.Choice(["archive", "delete"]), default="archive")
@click.option("--age-days", default=None, type=int, help="Only mail older than this many days.")
@click.option("--importance-max", default=None, type=click.Choice(IMPORTANCE_LEVELS),
              help="Only mail at or below this importance.")
@click.option("--size-min", default=None, type=int, help="Only mail at least this many bytes.")
@click.option("--spam-min", default=None, type=float, help="Minimum spam score (0.0-1.0).")
@click.option("--promo-min", default=None, type=float, help="Minimum promotional score (0.0-1.0).")
@click.option("--access-max", default=None, type=float, help="Maximum access score (0.0-1.0).")
@click.option("--no-access-days", default=None, type=int, help="Not opened for this many days.")
@click.option("--max-per-run", default=100, type=int, help="Emails cleaned per run at most.")
@click.option("--allow-important", is_flag=True, help="Do not protect important or VIP mail.")
@click.option("--schedule", "frequency", default=None,
              type=click.Choice(["continuous", "daily", "weekly", "monthly"]))
@click.option("--at", "run_time", default="02:00", help="Schedule time (HH:MM, UTC).")
@click.option("--disabled", is_flag=True, help="Create the policy disabled.")
@click.pass_context
def policy_create(
    ctx: click.Context,
    policy_file: Path | None,
    name: str | None,
    priority: int,
    action_type: str,
    age_days: int | None,
    importance_max: str | None,
    size_min: int | None,
    spam_min: float | None,
    promo_min: float | None,
    access_max: float | None,
    no_access_days: int | None,
    max_per_run: int,
    allow_important: bool,
    frequency: str | None,
    run_time: str,
    disabled: bool,
) -> None:
    """Create a cleanup policy."""
    if policy_file is not None:
        try:
            policy = CleanupPolicy.from_dict(json.loads(policy_file.read_text()))
        except (json.JSONDecodeError, TypeError) as e:
            raise click.ClickException(f"Invalid policy file: {e}") from e
    else:
        if not name:
            raise click.ClickException("--name is required unless --file is given.")
        policy = CleanupPolicy(
            name=name,
            enabled=not disabled,
            priority=priority,
            criteria=PolicyCriteria(
                age_days_min=age_days,
                importance_level_max=importance_max,
                size_threshold_min=size_min,
                spam_score_min=spam_min,
                promotional_score_min=promo_min,
                access_score_max=access_max,
                no_access_days=no_access_days,
            ),
            action=PolicyAction(type=action_type),
            safety=PolicySafety(
                max_emails_per_run=max_per_run, preserve_important=not allow_important
            ),
            schedule=PolicySchedule(frequency=frequency, time=run_time) if frequency else None,
        )

    with _open_database(ctx) as database, _cli_errors():
        policy_id = _build_policy_engine(database).create_policy(policy)
    console.print(f"[green]Created policy {policy_id}.[/green]")


@policy_group.command(name="delete")
@click.argument("policy_id")
@click.pass_context
def policy_delete(ctx: click.Context, policy_id: str) -> None:
    """Delete a policy."""
    with _open_database(ctx) as database, _cli_errors():
        _build_policy_engine(database).delete_policy(policy_id)
    console.print(f"[green]Deleted policy {policy_id}.[/green]")


def _set_enabled(ctx: click.Context, policy_id: str, enabled: bool) -> None:
    with _open_database(ctx) as database, _cli_errors():
        _build_policy_engine(database).update_policy(policy_id, {"enabled": enabled})
    console.print(f"[green]Policy {policy_id} {'enabled' if enabled else 'disabled'}.[/green]")


@policy_group.command(name="enable")
@click.argument("policy_id")
@click.pass_context
def policy_enable(ctx: click.Context, policy_id: str) -> None:
    """Enable a policy."""
    _set_enabled(ctx, policy_id, True)


@policy_group.command(name="disable")
@click.argument("policy_id")
@click.pass_context
def policy_disable(ctx: click.Context, policy_id: str) -> None:
    """Disable a policy."""
    _set_enabled(ctx, policy_id, False)


# --- cleanup runs ---


async def _run_cleanup(
    engine: CleanupAutomationEngine,
    policy_id: str,
    dry_run: bool,
    max_emails: int | None,
    force: bool,
) -> CleanupResults:
    job_id = await engine.trigger_manual_cleanup(
        policy_id, dry_run=dry_run, max_emails=max_emails, force=force
    )
    engine.job_queue.remove_job(job_id)
    console.print(f"[dim]Job {job_id}[/dim]")
    return await engine.process_cleanup_job(job_id)


@cli.group(name="cleanup")
def cleanup_group() -> None:
    """Run cleanup policies now."""


@cleanup_group.command(name="run")
@click.argument("policy_id")
@click.option("-m", "--max-emails", default=None, type=int, help="Cap on emails for this run.")
@click.option("--force", is_flag=True, help="Run even if the policy is disabled.")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
@click.pass_context
def cleanup_run(
    ctx: click.Context, policy_id: str, max_emails: int | None, force: bool, yes: bool
) -> None:
    """Archive or trash the messages a policy selects."""
    with _open_database(ctx) as database, _cli_errors():
        policy = database.get_policy(policy_id)
        if policy is not None and policy.safety.require_confirmation and not yes:
            click.confirm(f"Run policy '{policy.name}' ({policy.action.type})?", abort=True)

        engine = _build_engine(database, with_gmail=True)
        _load_engine_config(engine)
        with create_progress(f"Running {policy_id}") as progress:
            task = progress.add_task("cleanup", total=1)
            results = asyncio.run(_run_cleanup(engine, policy_id, False, max_emails, force))
            progress.advance(task)
    display_cleanup_results(results)


@cleanup_group.command(name="dry-run")
@click.argument("policy_id")
@click.option("-m", "--max-emails", default=None, type=int, help="Cap on emails to evaluate.")
@click.option("--force", is_flag=True, help="Evaluate even if the policy is disabled.")
@click.option("--show-protected", is_flag=True, help="Also list protected messages.")
@click.pass_context
def cleanup_dry_run(
    ctx: click.Context,
    policy_id: str,
    max_emails: int | None,
    force: bool,
    show_protected: bool,
) -> None:
    """Show what a policy would clean up, without touching Gmail."""
    with _open_database(ctx) as database, _cli_errors():
        engine = _build_engine(database, with_gmail=False)
        results = asyncio.run(_run_cleanup(engine, policy_id, True, max_emails, force))
        display_cleanup_results(results)

        if show_protected:
            policy_engine = engine.policy_engine
            policy = policy_engine.get_policy(policy_id)
            limit = max_emails or policy.safety.max_emails_per_run
            emails = policy_engine.get_emails_for_cleanup(policy, limit=limit)
            display_evaluation(policy_engine.evaluate_emails_for_cleanup(emails, [policy]))


# --- jobs ---


@cli.group(name="jobs")
def jobs_group() -> None:
    """Inspect and control cleanup jobs."""


@jobs_group.command(name="list")
@click.option("--status", default=None, type=click.Choice([s.value for s in JobStatus]),
              help="Only jobs in this state.")
@click.option("--type", "job_type", default=None, type=click.Choice(JOB_TYPES))
@click.option("-n", "--limit", default=JOBS_LIST_LIMIT, type=int, help="Number of jobs to show.")
@click.pass_context
def jobs_list(ctx: click.Context, status: str | None, job_type: str | None, limit: int) -> None:
    """List recent jobs, newest first."""
    with _open_database(ctx) as database:
        jobs = database.list_cleanup_jobs(
            status=JobStatus(status) if status else None, job_type=job_type, limit=limit
        )
    display_jobs(jobs)


@jobs_group.command(name="show")
@click.argument("job_id")
@click.pass_context
def jobs_show(ctx: click.Context, job_id: str) -> None:
    """Show a job with its progress and results."""
    with _open_database(ctx) as database:
        job = database.get_cleanup_job(job_id)
    if job is None:
        raise click.ClickException(f"Job not found: {job_id}")
    display_job_detail(job)


@jobs_group.command(name="cancel")
@click.argument("job_id")
@click.pass_context
def jobs_cancel(ctx: click.Context, job_id: str) -> None:
    """Cancel a pending job, or stop a running one after its current batch."""
    with _open_database(ctx) as database, _cli_errors():
        status = _build_engine(database, with_gmail=False).cancel_job(job_id)
    if status == JobStatus.CANCELLED:
        console.print(f"[green]Job {job_id} cancelled.[/green]")
    else:
        console.print(f"[yellow]Job {job_id} will stop after its current batch.[/yellow]")


@jobs_group.command(name="reconcile")
@click.option("--stale-minutes", default=ORPHANED_JOB_TIMEOUT_MINUTES, type=int,
              help="Fail jobs running longer than this.")
@click.option("--run", "run_pending", is_flag=True, help="Run re-queued pending jobs now.")
@click.pass_context
def jobs_reconcile(ctx: click.Context, stale_minutes: int, run_pending: bool) -> None:
    """Fail orphaned running jobs and re-queue pending ones."""
    with _open_database(ctx) as database, _cli_errors():
        engine = _build_engine(database, with_gmail=run_pending)
        outcome = engine.reconcile_orphaned_jobs(stale_after=timedelta(minutes=stale_minutes))
        console.print(
            f"[bold]Marked failed:[/bold] {len(outcome['failed'])}  |  "
            f"[bold]Re-queued:[/bold] {len(outcome['requeued'])}"
        )
        for job_id in outcome["failed"]:
            console.print(f"  [red]- {job_id}[/red]")

        if run_pending and outcome["requeued"]:
            _load_engine_config(engine)
            for results in asyncio.run(engine.run_pending_jobs()):
                display_cleanup_results(results)


# --- configuration ---


def _parse_setting(assignment: str) -> dict:
    """Turn ``a.b.c=value`` into ``{"a": {"b": {"c": value}}}``; values are JSON when possible."""
    key, sep, raw = assignment.partition("=")
    if not sep or not key:
        raise click.BadParameter(f"expected KEY=VALUE, got {assignment!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    changes: dict = value
    for part in reversed(key.split(".")):
        changes = {part: changes}
    return changes


@cli.group(name="config")
def config_group() -> None:
    """Show or change automation settings."""


@config_group.command(name="show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective automation settings as JSON."""
    with _open_database(ctx) as database:
        engine = _build_engine(database, with_gmail=False)
        _load_engine_config(engine)
        console.print_json(json.dumps(engine.get_configuration().to_dict()))


@config_group.command(name="set")
@click.argument("assignments", nargs=-1, required=True)
@click.pass_context
def config_set(ctx: click.Context, assignments: tuple[str, ...]) -> None:
    """Change settings, e.g. continuous_cleanup.enabled=true batch_error_policy=continue."""
    with _open_database(ctx) as database, _cli_errors():
        engine = _build_engine(database, with_gmail=False)
        _load_engine_config(engine)
        for assignment in assignments:
            asyncio.run(engine.update_configuration(_parse_setting(assignment)))
    console.print("[green]Configuration updated.[/green]")


# --- status and statistics ---


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show automation status and job counts."""
    with _open_database(ctx) as database:
        engine = _build_engine(database, with_gmail=False)
        _load_engine_config(engine)
        display_status(engine.get_automation_status())


@cli.command()
@click.option("--days", default=30, type=int, help="Access analytics window in days.")
@click.pass_context
def stats(ctx: click.Context, days: int) -> None:
    """Show storage, staleness and access statistics."""
    with _open_database(ctx) as database:
        tracker = AccessPatternTracker(database)
        scorer = StalenessScorer(tracker)
        emails = database.search_records(archived=False, limit=10000)
        display_stats(
            database.get_storage_stats(),
            scorer.get_staleness_statistics(emails),
            tracker.generate_access_analytics(days=days),
            SystemHealthMonitor(database).get_current_health(),
            days=days,
        )


# --- long-running service ---


async def _serve(engine: CleanupAutomationEngine, continuous: bool) -> None:
    await engine.initialize()
    if continuous and not engine.config.continuous_cleanup.enabled:
        await engine.update_configuration({"continuous_cleanup": {"enabled": True}})
    try:
        await asyncio.Event().wait()
    finally:
        await engine.shutdown()


@cli.command()
@click.option("--continuous", is_flag=True, help="Turn on continuous cleanup.")
@click.pass_context
def daemon(ctx: click.Context, continuous: bool) -> None:
    """Run the scheduler, event triggers and job workers until interrupted."""
    with _open_database(ctx) as database, _cli_errors():
        engine = _build_engine(database, with_gmail=True)
        console.print("[bold]Gmail Janitor running.[/bold] Press Ctrl+C to stop.")
        try:
            asyncio.run(_serve(engine, continuous))
        except KeyboardInterrupt:
            console.print("[dim]Stopped.[/dim]")


@cli.command()
def auth() -> None:
    """Test or reset Gmail authentication."""
    check_auth()
