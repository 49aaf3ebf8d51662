"""
Defines the command-line interface for the application using Typer.
Sources can be given as arguments or piped on stdin.
"""

import asyncio
import json
import logging
import os
import shutil
import sys
import tempfile
import time
from pathlib import Path

import aiohttp
import typer
from rich.console import Console
from rich.logging import RichHandler

from karaokify import __version__
from karaokify.core.scheduler import JobHandle, JobScheduler
from karaokify.exceptions import ErrorKind, KaraokifyError, ResourceExhaustedError
from karaokify.models.config import PipelineConfig
from karaokify.models.job import SourceRef
from karaokify.models.stats import PipelineStats
from karaokify.storage.config_manager import ConfigManager
from karaokify.storage.workspace import WorkspaceManager
from karaokify.utils.formatting import format_size

from .formatters import (
    print_config,
    print_results_table,
    print_summary_panel,
    print_validation_table,
)
from .progress_manager import ProgressManager

console = Console()

logging.basicConfig(
    level="WARNING",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[
        RichHandler(
            console=console,
            rich_tracebacks=True,
            show_path=False,
            show_level=False,
            markup=True,
        )
    ],
)
log = logging.getLogger("karaokify")
log.setLevel("INFO")

app = typer.Typer(
    name="karaokify",
    help=(
        "Turn songs into karaoke stems with an external separation engine. Use"
        " 'karaokify <command> --help' for more info."
    ),
    rich_markup_mode="rich",
    pretty_exceptions_show_locals=False,
    add_completion=False,
)


def get_config_dir() -> Path:
    if override := os.getenv("KARAOKIFY_CONFIG_DIR"):
        return Path(override).expanduser()
    if os.name == "nt":
        base_dir = Path(os.getenv("APPDATA", "~\\AppData\\Roaming"))
    else:
        base_dir = Path(os.getenv("XDG_CONFIG_HOME", "~/.config"))
    return base_dir.expanduser() / "karaokify"


def get_config_file() -> Path:
    return get_config_dir() / "config.ini"


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase logging verbosity (-vv for debug).",
    ),
    version: bool = typer.Option(
        False, "--version", help="Show version and exit.", is_eager=True
    ),
    show_config: bool = typer.Option(
        False, "--show-config", help="Display the current configuration."
    ),
):
    """karaokify: karaoke stems from any track"""
    if version:
        console.print(f"[bold]karaokify[/bold] version [cyan]{__version__}[/cyan]")
        raise typer.Exit()

    log_level = "INFO"
    if verbose >= 2:
        log_level = "DEBUG"
    log.setLevel(log_level)

    if show_config:
        config_file = get_config_file()
        if not config_file.is_file():
            console.print(
                "[red]✗ Config file not found.[/] Run [cyan]karaokify init[/cyan]"
                " first."
            )
            raise typer.Exit(code=1)
        print_config(config_file, ConfigManager(config_file).as_display_dict())
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


@app.command()
def init(
    force: bool = typer.Option(
        False, "--force", "-f", help="Overwrite an existing configuration file."
    ),
):
    """Write a configuration file with default settings."""
    config_file = get_config_file()
    if (
        config_file.exists()
        and not force
        and not typer.confirm("Configuration file already exists. Overwrite it?")
    ):
        raise typer.Abort()

    ConfigManager(config_file).save_new_config()
    console.print(f"\n[bold green]✓ Configuration saved to '{config_file}'[/bold green]")
    console.print("Ready to go! Try: [cyan]karaokify run <URL or FILE>[/cyan]")


def _read_sources_from_stdin() -> list[str]:
    """Reads sources from stdin, one per line."""
    if sys.stdin.isatty():
        console.print(
            "[yellow]⚠️  No input detected on stdin. Please pipe sources or redirect"
            " a file.[/yellow]"
        )
        raise typer.Exit(code=1)

    sources = [
        line.strip()
        for line in sys.stdin
        if line.strip() and not line.startswith("#")
    ]
    if not sources:
        console.print("[yellow]⚠️  No sources found in stdin.[/yellow]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓ Read {len(sources)} source(s) from stdin.[/green]")
    return sources


def _to_source_ref(raw: str, max_size: int) -> SourceRef:
    """
    A local file becomes an inline source; anything else must be a URL.
    Oversized files are refused before they are read into memory.
    """
    path = Path(raw).expanduser()
    if path.is_file():
        size = path.stat().st_size
        if size > max_size:
            raise ValueError(
                f"file is {format_size(size)}, the limit is {format_size(max_size)}"
            )
        return SourceRef.inline(path.read_bytes(), filename=path.name)
    return SourceRef.remote(raw)


async def _submit_with_backpressure(
    scheduler: JobScheduler, progress: ProgressManager, source: SourceRef
) -> JobHandle | None:
    """Submits a source, waiting for running jobs to finish while the queue is full."""
    while True:
        try:
            handle = scheduler.submit(source)
            progress.track(handle.job)
            return handle
        except ResourceExhaustedError as e:
            pending = [j for j in scheduler.active_jobs if not j.is_terminal]
            if e.kind != ErrorKind.QUEUE_FULL or not pending:
                log.error(f"[red]✗ {source.describe()}: {e}[/red]")
                return None
            log.debug("Queue is full; waiting for a job to finish before submitting.")
            await asyncio.sleep(0.5)


def save_session_stats(stats: PipelineStats, duration_s: float) -> None:
    """Appends the session's stats to a history file."""
    stats_file = get_config_dir() / "session_history.jsonl"
    try:
        stats_file.parent.mkdir(parents=True, exist_ok=True)
        with open(stats_file, "a", encoding="utf-8") as f:
            session_data = {
                "timestamp": int(time.time()),
                **stats.as_dict(),
                "duration_seconds": round(duration_s, 2),
            }
            json.dump(session_data, f)
            f.write("\n")
    except OSError as e:
        log.warning(f"[yellow]Could not save session stats:[/] {e}")


@app.command(name="run")
def run_command(
    sources: list[str] | None = typer.Argument(  # noqa: B008
        None, help="URLs of tracks or paths to local audio files."
    ),
    output_root: Path | None = typer.Option(  # noqa: B008
        None, "-o", "--output", help="Directory that receives finished artifacts."
    ),
    slots: int | None = typer.Option(
        None,
        "-j",
        "--slots",
        help="Number of jobs allowed to run the separation engine at once.",
    ),
    output_format: str | None = typer.Option(
        None, "-f", "--format", help="Container of the produced artifacts (e.g. mp3)."
    ),
    model: str | None = typer.Option(
        None, "-m", "--model", help="Separation model passed to the engine."
    ),
    quiet_vocals_mix: bool | None = typer.Option(
        None,
        "--mix/--no-mix",
        help="Also produce the accompaniment with quiet guide vocals.",
    ),
    include_original: bool | None = typer.Option(
        None,
        "--original/--no-original",
        help="Also deliver the source re-encoded to the output format.",
    ),
    stdin: bool = typer.Option(
        False, "--stdin", help="Read sources from standard input, one per line."
    ),
):
    """Separate one or more tracks into karaoke stems."""
    if stdin:
        if sources:
            console.print(
                "[yellow]⚠️  Both sources and --stdin provided. Using --stdin only."
                "[/yellow]"
            )
        sources = _read_sources_from_stdin()
    elif not sources:
        console.print(
            "[red]✗ No sources provided.[/red] "
            "Use: [cyan]karaokify run <URL or FILE>[/cyan] or [cyan]--stdin[/cyan]"
        )
        raise typer.Exit(code=1)

    cli_options = {
        key: value
        for key, value in {
            "output_root": str(output_root) if output_root else None,
            "max_concurrent_separation_jobs": slots,
            "output_format": output_format,
            "separation_model": model,
            "quiet_vocals_mix": quiet_vocals_mix,
            "include_original": include_original,
        }.items()
        if value is not None
    }
    config = ConfigManager(get_config_file()).load_config(cli_options)

    refs: list[SourceRef] = []
    for raw in dict.fromkeys(sources):
        try:
            refs.append(_to_source_ref(raw, config.max_source_size_bytes))
        except (ValueError, OSError) as e:
            console.print(f"[red]✗ Skipping '{raw}': {e}[/red]")
    if not refs:
        raise typer.Exit(code=1)

    async def _run_async() -> tuple[JobScheduler, list]:
        async with ProgressManager(console) as progress:
            scheduler = JobScheduler(config, deliverer=progress)
            scheduler.add_listener(progress.on_state_change)
            async with scheduler:
                console.print("[bold cyan]🎤 Starting karaoke session...[/bold cyan]")
                handles = []
                for ref in refs:
                    handle = await _submit_with_backpressure(scheduler, progress, ref)
                    if handle:
                        handles.append(handle)
                for handle in handles:
                    await scheduler.wait(handle)
        return scheduler, progress.outcomes

    start_time = time.monotonic()
    scheduler, outcomes = asyncio.run(_run_async())
    duration = time.monotonic() - start_time

    print_results_table(outcomes)
    print_summary_panel(scheduler.stats, duration)
    save_session_stats(scheduler.stats, duration)
    if scheduler.stats.jobs_completed < len(refs):
        raise typer.Exit(code=1)


@app.command()
def validate():
    """Validate the current configuration."""
    try:
        config = ConfigManager(get_config_file()).load_config()
        print_validation_table(config)
    except KaraokifyError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e


@app.command()
def clean():
    """Remove workspaces left behind by an interrupted run."""
    try:
        config = ConfigManager(get_config_file()).load_config()
    except KaraokifyError as e:
        console.print(f"[red]✗ Configuration is invalid: {e}[/red]")
        raise typer.Exit(code=1) from e

    removed = WorkspaceManager(Path(config.workspace_root)).sweep()
    if removed:
        console.print(f"[green]✓ Removed {removed} stale workspace(s).[/green]")
    else:
        console.print("[green]✓ No stale workspaces found.[/green]")


def _check_writable(label: str, directory: Path) -> bool:
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryFile(dir=directory):
            pass
    except OSError as e:
        console.print(f"[red]✗ {label} is not writable:[/red] {directory} ({e})")
        return False
    console.print(f"[green]✓[/] {label} is writable: [dim]{directory}[/dim]")
    return True


def _check_executable(label: str, command: list[str]) -> bool:
    if found := shutil.which(command[0]):
        console.print(f"[green]✓[/] {label} found: [dim]{found}[/dim]")
        return True
    console.print(f"[red]✗ {label} '{command[0]}' was not found on PATH.[/red]")
    return False


@app.command()
def diagnose():
    """Diagnose common configuration and environment issues."""
    console.print("\n[bold cyan]Running diagnostics...[/bold cyan]\n")
    config_file = get_config_file()
    if config_file.is_file():
        console.print(f"[green]✓[/] Config file exists at: [dim]{config_file}[/dim]")
    else:
        console.print(
            "[yellow]⚠ Config file not found, using defaults.[/] "
            "Run [cyan]karaokify init[/cyan] to create one."
        )
    try:
        config = ConfigManager(config_file).load_config()
        console.print("[green]✓[/] Configuration is valid and can be loaded.")
    except KaraokifyError as e:
        console.print(f"[red]✗ Configuration validation failed: {e}[/red]")
        raise typer.Exit(code=1) from e

    checks = [
        _check_executable("Separation engine", config.separation_command),
        _check_executable("Transcoder", config.transcode_command),
        _check_writable("Workspace root", Path(config.workspace_root).expanduser()),
        _check_writable("Output root", Path(config.output_root).expanduser()),
    ]
    if config.resolver_service_url:
        checks.append(asyncio.run(_check_resolver(config)))

    console.print()
    if all(checks):
        console.print(
            "[bold green]✓ All checks passed! Your setup looks good.[/bold green]\n"
        )
    else:
        console.print(
            "[bold red]✗ Some issues were found. "
            "Please review the messages above.[/bold red]\n"
        )
        raise typer.Exit(code=1)


async def _check_resolver(config: PipelineConfig) -> bool:
    console.print("\n[dim]Testing connectivity to the resolver service...[/dim]")
    try:
        timeout = aiohttp.ClientTimeout(total=10)
        async with (
            aiohttp.ClientSession(timeout=timeout) as session,
            session.get(config.resolver_service_url) as resp,
        ):
            if resp.status < 500:
                console.print("[green]✓[/] Resolver service is reachable.")
                return True
            console.print(
                f"[red]✗ Resolver service answered with status {resp.status}.[/red]"
            )
            return False
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        console.print(f"[red]✗ Resolver connection test failed: {e}[/red]")
        return False
