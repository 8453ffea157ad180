"""RemoteJobs CLI - remote job-step tooling using Typer."""

import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from remotejobs import __version__, configure_logging
from remotejobs.config import Settings, get_settings, load_settings
from remotejobs.exceptions import RemoteJobsException
from remotejobs.remote_monitor import RemoteJobStatus, RemoteMonitor
from remotejobs.status_files import JobStepIdentity, RemoteTransferUtility, base_status_name
from remotejobs.status_reporter import InMemoryStatusSink
from remotejobs.transport import build_transport

console = Console()

app = typer.Typer(
    name="rjobs",
    help="RemoteJobs - remote job-step lifecycle over an SFTP task queue",
    add_completion=True,
    no_args_is_help=True,
)

STATUS_STYLE = {
    RemoteJobStatus.UNDEFINED: "red",
    RemoteJobStatus.UNSTARTED: "yellow",
    RemoteJobStatus.RUNNING: "cyan",
    RemoteJobStatus.SUCCESS: "green",
    RemoteJobStatus.FAILED: "red",
}

ConfigOption = typer.Option(None, "--config", "-c", help="Path to a settings YAML file")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
StepToolOption = typer.Option(..., "--step-tool", "-t", help="Step tool (task queue subdirectory)")
TimestampOption = typer.Option(..., "--timestamp", help="Remote timestamp, e.g. 20240117_0930")


def _load(config: Optional[Path], verbose: bool) -> Settings:
    """Load settings and configure logging, exiting on invalid configuration."""
    try:
        settings = load_settings(config) if config else get_settings()
    except (OSError, ValueError) as exc:
        console.print(f"[red]✗[/red]  Unable to load settings: {exc}")
        raise typer.Exit(1)
    configure_logging(verbose, settings.log_level)
    return settings


def _fail(exc: RemoteJobsException) -> None:
    console.print(f"[red]✗[/red]  {exc.message} [dim]({exc.code})[/dim]")
    raise typer.Exit(1)


def _print_status(identity: JobStepIdentity, status: RemoteJobStatus, monitor: RemoteMonitor) -> None:
    style = STATUS_STYLE.get(status, "white")
    console.print(f"{identity}: [{style}]{status.value}[/{style}]")
    if monitor.remote_progress:
        console.print(f"   Progress: {monitor.remote_progress:.2f}%")
    if monitor.message:
        console.print(f"   [dim]{monitor.message}[/dim]")


@app.command("version")
def version():
    """Show RemoteJobs version."""
    console.print(f"rjobs [cyan]{__version__}[/cyan]")


def _display(value: Optional[object]) -> str:
    if value is None or value == "":
        return "[dim]not set[/dim]"
    return str(value)


@app.command("info")
def info(config: Optional[Path] = ConfigOption):
    """Show RemoteJobs configuration."""
    settings = _load(config, verbose=False)

    table = Table(title="RemoteJobs Info")
    table.add_column("Property", style="cyan")
    table.add_column("Value")

    table.add_row("Version", __version__)
    table.add_row("Python", sys.version.split()[0])
    table.add_row("Manager", settings.manager_name)
    table.add_row("Remote Host", _display(settings.remote_host_name))
    table.add_row("Remote User", _display(settings.remote_host_user))
    table.add_row("Remote Task Queue", _display(settings.remote_task_queue_path))
    table.add_row("Remote Work Dir", _display(settings.remote_work_dir_path))
    table.add_row("Local Work Dir", settings.local_work_dir)
    table.add_row("Local Task Queue", _display(settings.local_task_queue_path))
    table.add_row("Step Tools", _display(", ".join(settings.enabled_step_tools())))
    table.add_row("Poll Interval", f"{settings.poll_interval_seconds}s")
    table.add_row("Notifications", ", ".join(_notification_channels(settings)))
    table.add_row("Notify On", ", ".join(settings.enabled_notification_event_types()) or "all events")

    console.print(table)

    if not settings.remote_configured:
        console.print()
        console.print("[yellow]⚠[/yellow]  Remote host is not fully configured")
        console.print("   Set [cyan]REMOTEJOBS_REMOTE_HOST_NAME[/cyan], [cyan]REMOTEJOBS_REMOTE_TASK_QUEUE_PATH[/cyan]")
        console.print("   and [cyan]REMOTEJOBS_REMOTE_WORK_DIR_PATH[/cyan], or pass [cyan]--config[/cyan]")


def _notification_channels(settings: Settings) -> list:
    channels = ["log"]
    if settings.sns_topic_arn:
        channels.append("sns")
    if settings.linear_api_key and settings.linear_team_id:
        channels.append("linear")
    return channels


@app.command("basename")
def basename(
    job: int = typer.Argument(..., help="Job number"),
    step: int = typer.Argument(..., help="Step number"),
    timestamp: str = typer.Argument(..., help="Remote timestamp"),
):
    """Print the base name shared by a job step's status files."""
    try:
        console.print(base_status_name(job, step, timestamp))
    except RemoteJobsException as exc:
        _fail(exc)


def _monitor(settings: Settings, job: int, step: int, step_tool: str, timestamp: str) -> RemoteMonitor:
    try:
        transport = build_transport(settings)
    except RemoteJobsException as exc:
        _fail(exc)
    identity = JobStepIdentity(job=job, step=step, step_tool=step_tool, timestamp=timestamp)
    return RemoteMonitor(settings, identity, transport, status_sink=InMemoryStatusSink())


@app.command("status")
def status(
    job: int = typer.Argument(..., help="Job number"),
    step: int = typer.Argument(..., help="Step number"),
    step_tool: str = StepToolOption,
    timestamp: str = TimestampOption,
    config: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Poll the remote task queue once for a job step."""
    settings = _load(config, verbose)
    monitor = _monitor(settings, job, step, step_tool, timestamp)
    try:
        result = monitor.poll()
        _print_status(monitor.identity, result, monitor)
        for notice in monitor.drain_notices():
            console.print(f"[yellow]⚠[/yellow]  {notice.message}: {notice.file_name} ({notice.age_hours} hours)")
        if monitor.last_result is not None:
            console.print(
                f"   CompCode={monitor.last_result.comp_code} CompMsg={monitor.last_result.comp_msg}"
            )
    finally:
        monitor.transfer.transport.close()

    if result is RemoteJobStatus.UNDEFINED:
        raise typer.Exit(1)


@app.command("watch")
def watch(
    job: int = typer.Argument(..., help="Job number"),
    step: int = typer.Argument(..., help="Step number"),
    step_tool: str = StepToolOption,
    timestamp: str = TimestampOption,
    config: Optional[Path] = ConfigOption,
    interval: Optional[int] = typer.Option(None, "--interval", "-i", help="Seconds between polls"),
    archive: bool = typer.Option(True, "--archive/--no-archive", help="Archive status files when finished"),
    verbose: bool = VerboseOption,
):
    """Poll a job step until it succeeds, fails or becomes undefined."""
    from remotejobs.notifications import build_notification_manager
    from remotejobs.status_reporter import LoggingStatusSink
    from remotejobs.watcher import JobStepWatcher

    settings = _load(config, verbose)
    if interval is not None:
        settings = settings.model_copy(update={"poll_interval_seconds": interval})
    try:
        transport = build_transport(settings)
    except RemoteJobsException as exc:
        _fail(exc)

    watcher = JobStepWatcher(
        settings,
        transport,
        status_sink=LoggingStatusSink(),
        notification_manager=build_notification_manager(settings),
        archive_on_completion=archive,
    )
    identity = JobStepIdentity(job=job, step=step, step_tool=step_tool, timestamp=timestamp)
    watcher.add(identity)

    console.print(f"[cyan]→[/cyan]  Watching {identity} every {settings.poll_interval_seconds}s (Ctrl+C to stop)")
    try:
        resolved = watcher.run()
    except KeyboardInterrupt:
        watcher.stop()
        console.print("[yellow]⚠[/yellow]  Stopped")
        raise typer.Exit(1)
    finally:
        transport.close()

    outcome = resolved.get(identity)
    if outcome is None:
        raise typer.Exit(1)
    style = STATUS_STYLE.get(outcome.status, "white")
    console.print(f"{identity}: [{style}]{outcome.status.value}[/{style}]")
    if outcome.result is not None:
        console.print(f"   CompCode={outcome.result.comp_code} CompMsg={outcome.result.comp_msg}")
    if outcome.status is not RemoteJobStatus.SUCCESS:
        raise typer.Exit(1)


@app.command("archive")
def archive(
    job: int = typer.Argument(..., help="Job number"),
    step: int = typer.Argument(..., help="Step number"),
    step_tool: str = StepToolOption,
    timestamp: str = TimestampOption,
    config: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Delete the remote work directory and archive a job step's status files."""
    settings = _load(config, verbose)
    monitor = _monitor(settings, job, step, step_tool, timestamp)
    try:
        archived = monitor.delete_remote_job_files()
    finally:
        monitor.transfer.transport.close()

    if not archived:
        console.print(f"[red]✗[/red]  Unable to archive status files: {monitor.message}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green]  Archived status files for {monitor.identity}")


@app.command("submit")
def submit(
    job: int = typer.Argument(..., help="Job number"),
    step: int = typer.Argument(..., help="Step number"),
    step_tool: str = StepToolOption,
    timestamp: Optional[str] = typer.Option(None, "--timestamp", help="Remote timestamp (default: now)"),
    config: Optional[Path] = ConfigOption,
    verbose: bool = VerboseOption,
):
    """Create a job step's .info file in the remote task queue."""
    from remotejobs.status_files import generate_remote_timestamp

    settings = _load(config, verbose)
    try:
        transport = build_transport(settings)
    except RemoteJobsException as exc:
        _fail(exc)

    identity = JobStepIdentity(
        job=job, step=step, step_tool=step_tool, timestamp=timestamp or generate_remote_timestamp()
    )
    transfer = RemoteTransferUtility(settings, identity, transport)
    try:
        remote_path = transfer.create_task_info_file()
    finally:
        transport.close()

    if remote_path is None:
        console.print(f"[red]✗[/red]  Unable to create the task info file: {transfer.message}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green]  Created {remote_path}")


from remotejobs.cli.worker import register_worker_commands  # noqa: E402

register_worker_commands(app)


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    raise SystemExit(main())
