"""Agentvisor CLI application."""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path
from typing import List, Optional

import typer
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from agentvisor import __version__
from agentvisor.config import (
    DEFAULT_CONFIG_DIR,
    DEFAULT_CONFIG_FILE,
    ConfigError,
    ensure_config_dir,
    get_db_path,
    load_config,
    write_default_config,
)
from agentvisor.core.coordinator import JobCoordinator
from agentvisor.core.output_cleaner import clean_output
from agentvisor.core.store import JobStoreError
from agentvisor.core.supervisor import ProcessSupervisor
from agentvisor.db import Database
from agentvisor.models import AgentvisorConfig, Job, JobStatus

# Initialize
app = typer.Typer(
    name="agentvisor",
    help="Agentvisor - Supervisor for AI coding agent CLIs",
    no_args_is_help=True,
)
console = Console()

STATUS_STYLES = {
    JobStatus.RUNNING: "green",
    JobStatus.COMPLETED: "blue",
    JobStatus.FAILED: "red",
    JobStatus.PAUSED: "yellow",
    JobStatus.AWAITING_INTERACTION: "yellow",
}


def setup_logging(verbose: bool = False, config: AgentvisorConfig | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    # File logging
    if config is not None and config.daemon.log_file:
        logger.add(
            config.daemon.log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
            level=config.daemon.log_level,
            rotation=config.daemon.log_rotation,
            retention=config.daemon.log_retention,
        )


def _load(config_path: Path | None) -> tuple[AgentvisorConfig, Database]:
    """Load configuration and open the job store, exiting on errors."""
    try:
        config = load_config(config_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(1)

    db_path = get_db_path(config)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return config, Database(db_path)


def _format_status(status: JobStatus) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status.value}[/{style}]" if style else status.value


def _parse_env(pairs: list[str]) -> dict[str, str]:
    env = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            console.print(f"[red]Invalid --env value '{pair}', expected KEY=VALUE[/red]")
            raise typer.Exit(1)
        env[key] = value
    return env


# ============================================================================
# Job Commands
# ============================================================================


@app.command("submit")
def submit_job(
    executable: str = typer.Argument(..., help="Agent CLI to run (name or path)"),
    arguments: str = typer.Option("", "--args", "-a", help="Argument string passed to the CLI"),
    name: str = typer.Option("", "--name", "-n", help="Display name"),
    priority: int = typer.Option(0, "--priority", "-p", help="Higher runs first"),
    depends_on: Optional[str] = typer.Option(None, "--depends-on", help="Job that must complete first"),
    parent: Optional[str] = typer.Option(None, "--parent", help="Parent job ID"),
    cwd: Optional[str] = typer.Option(None, "--cwd", help="Working directory"),
    env: List[str] = typer.Option([], "--env", "-e", help="Environment variable KEY=VALUE"),
    executable_path: Optional[str] = typer.Option(None, "--path", help="Explicit executable path"),
    family: Optional[str] = typer.Option(None, "--family", "-f", help="Agent family for output cleaning"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model the agent should use"),
    max_tokens: Optional[int] = typer.Option(None, "--max-tokens", help="Token budget"),
    max_cost: Optional[float] = typer.Option(None, "--max-cost", help="Cost budget in USD"),
    max_minutes: Optional[float] = typer.Option(None, "--max-minutes", help="Execution time budget"),
    stall_timeout: Optional[float] = typer.Option(None, "--stall-timeout", help="Seconds of silence before restart"),
    max_restarts: int = typer.Option(3, "--max-restarts", help="Restarts allowed per attempt"),
    max_retries: int = typer.Option(3, "--max-retries", help="Attempts allowed after the first"),
    success_patterns: List[str] = typer.Option([], "--success-pattern", help="Regex that must appear in output"),
    failure_patterns: List[str] = typer.Option([], "--failure-pattern", help="Regex that fails the job"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Queue a new agent job."""
    setup_logging()
    _, db = _load(config_path)

    try:
        job = Job(
            name=name,
            executable=executable,
            arguments=arguments,
            executable_path=executable_path,
            working_directory=cwd,
            environment=_parse_env(env),
            agent_family=family,
            model=model,
            priority=priority,
            depends_on_job_id=depends_on,
            parent_job_id=parent,
            max_tokens=max_tokens,
            max_cost_usd=max_cost,
            max_execution_minutes=max_minutes,
            stall_timeout_seconds=stall_timeout,
            max_restarts=max_restarts,
            max_retries=max_retries,
            success_patterns=success_patterns,
            failure_patterns=failure_patterns,
        )
        db.add_job(job)
    except (JobStoreError, ValidationError) as e:
        console.print(f"[red]Cannot submit job: {e}[/red]")
        raise typer.Exit(1)

    console.print(f"[green]✓ Queued job {job.id}[/green]")


@app.command("list")
def list_jobs(
    status: Optional[str] = typer.Option(None, "--status", "-s", help="Filter by status"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """List jobs."""
    status_filter = None
    if status:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in JobStatus)
            console.print(f"[red]Unknown status '{status}' (valid: {valid})[/red]")
            raise typer.Exit(1)

    _, db = _load(config_path)
    jobs = db.list_jobs(status_filter)
    if not jobs:
        console.print("[yellow]No jobs match the filter[/yellow]")
        return

    table = Table(title="Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Depends On")
    table.add_column("Retries", justify="right")
    table.add_column("Created")

    for job in jobs:
        table.add_row(
            job.id,
            job.name or "-",
            _format_status(job.status),
            str(job.priority),
            job.depends_on_job_id or "-",
            f"{job.retry_count}/{job.max_retries}",
            job.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@app.command("show")
def show_job(
    job_id: str = typer.Argument(..., help="Job ID"),
    output: bool = typer.Option(False, "--output", "-o", help="Print captured output"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Show details of a job."""
    _, db = _load(config_path)

    job = db.get_job(job_id)
    if not job:
        console.print(f"[red]Job '{job_id}' not found[/red]")
        raise typer.Exit(1)

    table = Table(title=job.display_name, show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("ID", job.id)
    table.add_row("Status", _format_status(job.status))
    table.add_row("Command", f"{job.executable} {job.arguments}".strip())
    table.add_row("Priority", str(job.priority))
    if job.depends_on_job_id:
        table.add_row("Depends On", job.depends_on_job_id)
    if job.parent_job_id:
        table.add_row("Parent", job.parent_job_id)
    table.add_row("Retries", f"{job.retry_count}/{job.max_retries}")

    if job.worker_instance_id:
        table.add_row("Worker", job.worker_instance_id)
    if job.process_id:
        table.add_row("PID", str(job.process_id))
    if job.started_at:
        table.add_row("Started", job.started_at.strftime("%Y-%m-%d %H:%M:%S"))
    if job.last_heartbeat_at:
        table.add_row("Last Heartbeat", job.last_heartbeat_at.strftime("%Y-%m-%d %H:%M:%S"))
    if job.completed_at:
        table.add_row("Completed", job.completed_at.strftime("%Y-%m-%d %H:%M:%S"))
    if job.execution_duration_seconds is not None:
        table.add_row("Duration", f"{job.execution_duration_seconds:.1f}s")
    if job.exit_code is not None:
        table.add_row("Exit Code", str(job.exit_code))
    if job.tokens_used or job.cost_usd:
        table.add_row("Usage", f"{job.tokens_used} tokens, ${job.cost_usd:.4f}")
    if job.session_summary:
        table.add_row("Summary", job.session_summary)
    if job.error_message:
        kind = f" ({job.failure_kind.value})" if job.failure_kind else ""
        table.add_row("Error", f"[red]{job.error_message}{kind}[/red]")

    console.print(table)

    if output:
        if job.output:
            console.print("\n[dim]── stdout ──[/dim]")
            console.print(job.output, markup=False, highlight=False)
        if job.error_output:
            console.print("\n[dim]── stderr ──[/dim]")
            console.print(job.error_output, markup=False, highlight=False)


# ============================================================================
# Coordinator Commands
# ============================================================================


async def _run_coordinator(config: AgentvisorConfig, db: Database, once: bool, follow: bool) -> None:
    def print_line(job_id: str, line: str, is_stderr: bool) -> None:
        console.print(f"{job_id[:8]} {'!' if is_stderr else '|'} {line}", markup=False, highlight=False)

    supervisor = ProcessSupervisor(config.supervisor)
    coordinator = JobCoordinator(db, supervisor, config.coordinator, on_output=print_line if follow else None)

    # Setup signal handlers
    def handle_signal(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}")
        coordinator.stop()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}

    try:
        if once:
            await coordinator.run_until_idle()
        else:
            await coordinator.run()
    finally:
        await coordinator.shutdown()
        await supervisor.shutdown()
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@app.command("run")
def run_coordinator(
    once: bool = typer.Option(False, "--once", help="Exit when no job is running or eligible"),
    follow: bool = typer.Option(False, "--follow", "-f", help="Print job output as it arrives"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Run the job coordinator in the foreground."""
    config, db = _load(config_path)
    setup_logging(verbose, config)

    try:
        asyncio.run(_run_coordinator(config, db, once, follow))
    except Exception as e:
        logger.error(f"Coordinator error: {e}")
        raise


@app.command("recover")
def recover_orphans(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Requeue or fail Running jobs whose worker is gone."""
    config, db = _load(config_path)
    setup_logging(False, config)

    coordinator = JobCoordinator(db, ProcessSupervisor(config.supervisor), config.coordinator)
    recovered = coordinator.recover_orphans()
    if not recovered:
        console.print("[green]✓ No orphaned jobs[/green]")
        return

    for job_id in recovered:
        job = db.get_job(job_id)
        status = _format_status(job.status) if job else "?"
        console.print(f"  {job_id}: {status}")
    console.print(f"[yellow]Recovered {len(recovered)} orphaned job(s)[/yellow]")


# ============================================================================
# Utilities
# ============================================================================


@app.command("clean")
def clean(
    path: Optional[Path] = typer.Argument(None, help="File to clean (stdin if omitted)"),
    family: Optional[str] = typer.Option(None, "--family", "-f", help="Agent family pattern set"),
) -> None:
    """Strip terminal control sequences and tool noise from agent output."""
    if path is None:
        text = sys.stdin.read()
    else:
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            console.print(f"[red]Cannot read {path}: {e}[/red]")
            raise typer.Exit(1)

    typer.echo(clean_output(text, family))


@app.command("init")
def init_config(
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
) -> None:
    """Initialize Agentvisor configuration."""
    path = config_path or DEFAULT_CONFIG_FILE
    if config_path is None:
        ensure_config_dir()

    if write_default_config(path):
        console.print(f"[green]✓ Created configuration at {path}[/green]")
    else:
        console.print(f"[yellow]Configuration already exists at {path}[/yellow]")
    if config_path is None:
        console.print(f"[dim]Config directory:[/dim] {DEFAULT_CONFIG_DIR}")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"Agentvisor v{__version__}")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
