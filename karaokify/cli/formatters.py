"""
Functions for formatting and displaying data in the console using Rich.
"""

from pathlib import Path
from typing import Any

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from karaokify.exceptions import ErrorKind
from karaokify.models.config import PipelineConfig
from karaokify.models.job import JobOutcome
from karaokify.models.stats import PipelineStats
from karaokify.utils.formatting import format_duration, format_size, short_job_id

SUGGESTIONS_BY_KIND = {
    ErrorKind.CONFIGURATION: [
        "• Check the values in your configuration file.",
        "• Run `karaokify validate` to see which setting is rejected.",
        "• Run `karaokify init --force` to start from defaults.",
    ],
    ErrorKind.QUEUE_FULL: [
        "• Too many jobs are waiting for a slot.",
        "• Submit fewer sources at once or raise `max_queue_length`.",
    ],
    ErrorKind.SCHEDULER_CLOSED: [
        "• The pipeline was shutting down when the job was submitted.",
    ],
    ErrorKind.ENGINE_CRASH: [
        "• Run `karaokify diagnose` to check that the separation engine is installed.",
        "• Run with -vv to see the engine's output.",
    ],
    ErrorKind.OUT_OF_MEMORY: [
        "• The separation engine ran out of memory.",
        "• Lower `max_concurrent_separation_jobs` or use a smaller model.",
    ],
    ErrorKind.TIMEOUT: [
        "• A stage exceeded its deadline.",
        "• Raise the matching `*_timeout` setting for long tracks or slow hardware.",
    ],
    ErrorKind.NETWORK_ERROR: [
        "• A network connection issue occurred.",
        "• The source host might be temporarily unavailable.",
        "• Please try again in a few minutes.",
    ],
}


def format_error_with_suggestions(
    error: Exception, context: dict | None = None
) -> Panel:
    """Formats an error with actionable suggestions into a Rich Panel."""
    error_type = type(error).__name__
    error_msg = str(error)

    kind = getattr(error, "kind", None)
    suggestions = SUGGESTIONS_BY_KIND.get(
        kind, ["• Run the command with -vv for detailed logs."]
    )

    error_text = Text()
    error_text.append(f"{error_type}: ", style="bold red")
    error_text.append(error_msg)

    content = Table.grid(padding=(1, 0))
    content.add_row(error_text)
    content.add_row()
    content.add_row(Text("Suggestions", style="bold yellow"))
    content.add_row(Text("\n".join(suggestions)))

    if context:
        content.add_row()
        content.add_row(Text(f"Context: {context}", style="dim"))

    return Panel(
        content,
        title="[bold red]An Error Occurred[/bold red]",
        border_style="red",
        expand=False,
    )


def print_config(config_path: Path, config_data: dict[str, Any]):
    """Displays the raw configuration file values."""
    console = Console()
    content = "\n".join(f"{key} = {value}" for key, value in config_data.items())
    console.print(
        Panel(
            content or "[dim](empty)[/dim]",
            title=f"Configuration ([dim]{config_path}[/dim])",
            border_style="cyan",
        )
    )


def print_validation_table(config: PipelineConfig):
    """Displays a summary of the effective settings."""
    console = Console()
    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column(style="bold cyan")
    table.add_column()

    table.add_row(
        "Compute Slots:", f"[green]{config.max_concurrent_separation_jobs}[/green]"
    )
    table.add_row(
        "Download / Post Slots:",
        f"{config.max_concurrent_downloads} / {config.max_concurrent_postprocess}",
    )
    table.add_row("Queue Limit:", str(config.max_queue_length))
    table.add_row(
        "Timeouts:",
        f"download {format_duration(config.download_timeout)}, "
        f"separation {format_duration(config.separation_timeout)}, "
        f"post {format_duration(config.postprocess_timeout)}",
    )
    table.add_row(
        "Source Limits:",
        f"{format_size(config.max_source_size_bytes)}, "
        f"{format_duration(config.max_source_duration_seconds)}, "
        f"{', '.join(config.allowed_formats)}",
    )
    table.add_row("Engine:", f"[dim]{' '.join(config.separation_command)}[/dim]")
    table.add_row(
        "Output:", f"{config.output_format} @ {config.output_bitrate}"
    )
    table.add_row(
        "Quiet-Vocals Mix:", "✓ Enabled" if config.quiet_vocals_mix else "✗ Disabled"
    )
    table.add_row(
        "Include Original:", "✓ Enabled" if config.include_original else "✗ Disabled"
    )
    table.add_row("Workspace Root:", f"[dim]{config.workspace_root}[/dim]")
    table.add_row("Output Root:", f"[dim]{config.output_root}[/dim]")

    console.print(
        Panel(
            table,
            title="[bold green]✓ Validated Settings[/bold green]",
            border_style="green",
        )
    )


def print_results_table(outcomes: list[JobOutcome]):
    """Lists every job's outcome and, for completed jobs, its artifacts."""
    if not outcomes:
        return
    console = Console()
    table = Table(box=box.ROUNDED, title="[bold]Jobs[/bold]")
    table.add_column("Job", style="dim", no_wrap=True)
    table.add_column("Outcome")
    table.add_column("Details")

    for outcome in outcomes:
        if outcome.ok:
            details = "\n".join(
                f"{a.role}: {a.path} ({format_size(a.size)})" for a in outcome.artifacts
            )
            table.add_row(
                short_job_id(outcome.job_id), "[green]completed[/green]", details
            )
        else:
            style = "yellow" if outcome.kind == ErrorKind.CANCELLED else "red"
            table.add_row(
                short_job_id(outcome.job_id),
                f"[{style}]{outcome.state.value} ({outcome.kind.value})[/{style}]",
                outcome.message,
            )
    console.print(table)


def print_summary_panel(stats: PipelineStats, duration_s: float):
    """Displays the final summary of a pipeline session."""
    console = Console()

    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column(style="bold cyan", justify="right", width=20)
    stats_table.add_column(style="white", justify="left")

    stats_table.add_row(
        "✓ Completed:", f"[bold green]{stats.jobs_completed}[/bold green]"
    )
    if stats.jobs_failed > 0:
        breakdown = ", ".join(
            f"{count} {kind}" for kind, count in stats.failures_by_kind.most_common()
        )
        stats_table.add_row(
            "✗ Failed:", f"[bold red]{stats.jobs_failed}[/bold red] [dim]{breakdown}[/dim]"
        )
    if stats.jobs_cancelled > 0:
        stats_table.add_row("○ Cancelled:", f"[yellow]{stats.jobs_cancelled}[/yellow]")
    if stats.jobs_rejected > 0:
        stats_table.add_row("⚠ Rejected:", f"[yellow]{stats.jobs_rejected}[/yellow]")

    stats_table.add_row("", "")
    stats_table.add_row("Artifacts:", f"[cyan]{stats.artifacts_delivered}[/cyan]")
    stats_table.add_row(
        "Total Size:", f"[cyan]{format_size(stats.total_artifact_bytes)}[/cyan]"
    )
    stats_table.add_row("Time Elapsed:", f"[blue]{format_duration(duration_s)}[/blue]")
    stats_table.add_row(
        "Peak Separating:", f"[green]{stats.peak_separating}[/green]"
    )
    if stats.workspace_release_failures:
        stats_table.add_row(
            "Cleanup Failures:",
            f"[red]{stats.workspace_release_failures}[/red]",
        )

    all_ok = stats.jobs_completed == stats.jobs_finished and not stats.jobs_rejected
    console.print()
    console.print(
        Panel(
            stats_table,
            title="🎤 [bold]Session Complete[/bold]",
            border_style="green" if all_ok else "yellow",
            box=box.DOUBLE,
            expand=False,
            padding=(1, 2),
        )
    )
    console.print()
