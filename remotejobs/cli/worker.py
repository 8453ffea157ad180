"""Worker-side commands for RemoteJobs CLI."""

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from remotejobs.exceptions import RemoteJobsException

console = Console()


def finalize(
    info_file: Path = typer.Argument(..., help="The task's .info file"),
    failed: bool = typer.Option(False, "--failed", help="Write a .fail file instead of .success"),
    comp_code: int = typer.Option(0, "--comp-code", help="Completion code"),
    comp_msg: str = typer.Option("", "--comp-msg", help="Completion message"),
    eval_code: int = typer.Option(0, "--eval-code", help="Evaluation code"),
    eval_msg: str = typer.Option("", "--eval-msg", help="Evaluation message"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a settings YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Turn a task's .info file into its .success or .fail file."""
    from remotejobs.cli import _load
    from remotejobs.finalizer import finalize_job

    settings = _load(config, verbose)
    try:
        target = finalize_job(
            info_file,
            settings.manager_name,
            succeeded=not failed,
            comp_code=comp_code,
            comp_msg=comp_msg,
            eval_code=eval_code,
            eval_msg=eval_msg,
        )
    except RemoteJobsException as exc:
        console.print(f"[red]✗[/red]  {exc.message} [dim]({exc.code})[/dim]")
        raise typer.Exit(1)
    except OSError as exc:
        console.print(f"[red]✗[/red]  Error finalizing {info_file}: {exc}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green]  Created {target}")


def claim(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a settings YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Claim the oldest available task for this manager."""
    from remotejobs.cli import _load
    from remotejobs.task_queue import TaskQueue, offline_job_status_path

    settings = _load(config, verbose)
    try:
        task = TaskQueue(settings).request_task()
    except RemoteJobsException as exc:
        console.print(f"[red]✗[/red]  {exc.message} [dim]({exc.code})[/dim]")
        raise typer.Exit(1)

    if task is None:
        console.print("[dim]No tasks available[/dim]")
        return

    console.print(f"[green]✓[/green]  Claimed {task.identity}")
    console.print(f"   Info file: {task.info_path}")
    console.print(f"   WorkDir:   {task.descriptor.work_dir}")
    console.print(f"   Status:    {offline_job_status_path(settings, task.identity)}")


def purge(
    step_tool: Optional[str] = typer.Option(None, "--step-tool", "-t", help="Only this step tool"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to a settings YAML file"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Delete aged lock, old-info and .jobstatus files from the task queue."""
    from remotejobs.cli import _load
    from remotejobs.task_queue import TaskQueue

    settings = _load(config, verbose)
    queue = TaskQueue(settings)
    try:
        step_tools = [step_tool] if step_tool else settings.enabled_step_tools()
        root = queue.root
    except RemoteJobsException as exc:
        console.print(f"[red]✗[/red]  {exc.message} [dim]({exc.code})[/dim]")
        raise typer.Exit(1)

    if not step_tools:
        console.print("[yellow]⚠[/yellow]  No step tools enabled; use --step-tool or set step_tools_enabled")
        raise typer.Exit(1)

    total = 0
    for tool in step_tools:
        directory = root / tool
        if not directory.is_dir():
            console.print(f"[yellow]⚠[/yellow]  Not found: {directory}")
            continue
        deleted = queue.purge_aged_files(directory)
        total += len(deleted)
        for path in deleted:
            console.print(f"   [dim]deleted[/dim] {path.name}")
    console.print(f"[green]✓[/green]  Deleted {total} aged file(s)")


def register_worker_commands(app: typer.Typer) -> None:
    app.command("finalize")(finalize)
    app.command("claim")(claim)
    app.command("purge")(purge)
