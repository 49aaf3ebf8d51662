"""
Shows one Rich progress row per job and collects each job's outcome for the
final report. It is both a state listener and the CLI's result deliverer.
"""

from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from karaokify.models.job import Job, JobError, JobOutcome, JobResult, JobState
from karaokify.utils.formatting import describe_job

# Progress units reached once a job enters the state.
STATE_STEPS = {
    JobState.QUEUED: 0,
    JobState.DOWNLOADING: 0,
    JobState.SEPARATING: 1,
    JobState.POSTPROCESSING: 2,
    JobState.DELIVERING: 3,
    JobState.COMPLETED: 4,
}
TOTAL_STEPS = 4

STATE_STYLES = {
    JobState.QUEUED: "dim",
    JobState.DOWNLOADING: "cyan",
    JobState.SEPARATING: "magenta",
    JobState.POSTPROCESSING: "blue",
    JobState.DELIVERING: "blue",
    JobState.COMPLETED: "green",
    JobState.FAILED: "red",
    JobState.CANCELLED: "yellow",
}


class ProgressManager:
    """
    Usage:
        async with ProgressManager(console) as progress:
            scheduler.add_listener(progress.on_state_change)
            ...  # scheduler created with deliverer=progress
        progress.outcomes
    """

    def __init__(self, console: Console):
        self.console = console
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}", justify="left"),
            BarColumn(bar_width=20),
            TextColumn("{task.fields[state]}"),
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )
        self._tasks: dict[str, TaskID] = {}
        self.outcomes: list[JobOutcome] = []

    async def __aenter__(self) -> "ProgressManager":
        self.progress.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.progress.stop()
        return False

    def track(self, job: Job) -> None:
        """Adds a row for a newly admitted job."""
        if job.id in self._tasks:
            return
        self._tasks[job.id] = self.progress.add_task(
            describe_job(job), total=TOTAL_STEPS, state=self._label(job.state)
        )

    def on_state_change(self, job: Job, old_state: JobState, new_state: JobState):
        self.track(job)
        task_id = self._tasks[job.id]
        update = {"state": self._label(new_state)}
        if new_state in STATE_STEPS:
            update["completed"] = STATE_STEPS[new_state]
        self.progress.update(task_id, **update)
        if new_state.is_terminal:
            self.progress.stop_task(task_id)

    @staticmethod
    def _label(state: JobState) -> str:
        style = STATE_STYLES.get(state, "white")
        return f"[{style}]{state.value}[/{style}]"

    # ResultDeliverer
    async def deliver(self, result: JobResult) -> None:
        self.outcomes.append(result)

    async def deliver_error(self, error: JobError) -> None:
        self.outcomes.append(error)
        if error.state == JobState.FAILED:
            self.progress.console.print(
                f"[red]✗ Job {error.job_id} failed ({error.kind.value}):[/red] "
                f"{error.message}"
            )
