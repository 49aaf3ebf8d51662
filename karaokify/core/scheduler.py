"""
Admission control and bounded concurrency for the job pipeline.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from karaokify.core.job_runner import JobRunner, StateListener
from karaokify.core.pool import StagePool
from karaokify.delivery import LoggingDeliverer, ResultDeliverer
from karaokify.exceptions import ErrorKind, ResourceExhaustedError
from karaokify.media.downloader import Downloader, close_connection_pool
from karaokify.media.postprocessor import Postprocessor
from karaokify.media.separator import SeparationRunner
from karaokify.models.config import PipelineConfig
from karaokify.models.job import Job, JobOutcome, JobState, SourceRef, Stage
from karaokify.models.stats import PipelineStats
from karaokify.storage.artifacts import ArtifactStore
from karaokify.storage.workspace import WorkspaceManager
from karaokify.utils.structured_logger import create_structured_logger

log = logging.getLogger(__name__)


class JobHandle:
    """The caller's reference to an admitted job."""

    def __init__(self, job: Job, runner: JobRunner, task: asyncio.Task):
        self.job = job
        self.runner = runner
        self.task = task

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def state(self) -> JobState:
        return self.job.state

    def done(self) -> bool:
        return self.task.done()

    async def result(self) -> JobOutcome:
        """Waits for the job's terminal outcome without cancelling it on timeout."""
        return await asyncio.shield(self.task)

    def __repr__(self) -> str:
        return f"<JobHandle {self.job.id} {self.job.state.value}>"


class JobScheduler:
    """
    Accepts jobs, rejects them under backpressure and runs each one in its own
    task. Every stage has its own pool (a `StagePool`, which queues
    waiters in FIFO order); the separation pool is the compute slot limit.

    Usage:
        async with JobScheduler(config) as scheduler:
            handle = scheduler.submit(SourceRef.remote(url))
            outcome = await scheduler.wait(handle)
    """

    def __init__(
        self,
        config: PipelineConfig,
        deliverer: Optional[ResultDeliverer] = None,
        downloader: Optional[Downloader] = None,
        separator: Optional[SeparationRunner] = None,
        postprocessor: Optional[Postprocessor] = None,
    ):
        self.config = config
        self.deliverer = deliverer or LoggingDeliverer()
        self.stats = PipelineStats()

        log_dir = Path(config.log_dir).expanduser() if config.log_dir else None
        (
            self._structured_log,
            self.job_logger,
            self.process_logger,
            self.session_logger,
        ) = create_structured_logger(log_dir=log_dir, enable_json=log_dir is not None)

        self.workspaces = WorkspaceManager(
            Path(config.workspace_root), release_failure_callback=self._release_failed
        )
        self.artifact_store = ArtifactStore(Path(config.output_root))
        self.downloader = downloader or Downloader(config)
        self.separator = separator or SeparationRunner(config, self.process_logger)
        self.postprocessor = postprocessor or Postprocessor(config, self.process_logger)
        self.pools = {
            stage: StagePool(stage, size)
            for stage, size in (
                (Stage.DOWNLOAD, config.max_concurrent_downloads),
                (Stage.SEPARATION, config.max_concurrent_separation_jobs),
                (Stage.POSTPROCESS, config.max_concurrent_postprocess),
            )
        }

        self._handles: dict[str, JobHandle] = {}
        self._listeners: list[StateListener] = []
        self._started = False
        self._closed = False

    # ------------------------
    # Lifecycle
    # ------------------------
    async def __aenter__(self) -> "JobScheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.shutdown(drain=exc_type is None)
        return False

    async def start(self) -> None:
        """Removes workspaces left behind by a crashed process and opens admission."""
        if self._started:
            return
        self._started = True
        await asyncio.to_thread(self.workspaces.sweep)
        self.session_logger.session_started(
            self.config.max_concurrent_separation_jobs,
            self.config.max_concurrent_downloads,
            self.config.max_queue_length,
        )
        log.debug(
            f"Scheduler started: {self.config.max_concurrent_separation_jobs} compute "
            f"slot(s), queue limit {self.config.max_queue_length}"
        )

    async def shutdown(self, drain: bool = False) -> None:
        """
        Stops admitting jobs, then either waits for in-flight jobs (`drain`)
        or cancels them. Afterwards no workspace or process is left behind.
        """
        if self._closed and not self._handles:
            return
        self._closed = True

        handles = list(self._handles.values())
        if handles:
            if drain:
                log.info(f"Waiting for {len(handles)} job(s) to finish...")
            else:
                log.info(f"Cancelling {len(handles)} job(s)...")
                for handle in handles:
                    self.cancel(handle)
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)

        await close_connection_pool()
        await self.workspaces.release_all()
        self.session_logger.session_completed(**self.stats.as_dict())
        self._structured_log.close()

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------
    # Jobs
    # ------------------------
    @property
    def queue_length(self) -> int:
        """
        Number of admitted jobs that have to wait for a stage slot. Jobs
        heading for a pool that still has free slots are not counted.
        """
        return self._queued_with()

    def _queued_with(self, extra: Optional[Stage] = None) -> int:
        waiting = {stage: 0 for stage in self.pools}
        for handle in self._handles.values():
            if handle.job.waiting_for is not None:
                waiting[handle.job.waiting_for] += 1
        if extra is not None:
            waiting[extra] += 1
        return sum(
            max(0, count - self.pools[stage].free) for stage, count in waiting.items()
        )

    @property
    def active_jobs(self) -> list[Job]:
        return [h.job for h in self._handles.values()]

    def add_listener(self, listener: StateListener) -> None:
        """Registers a callback invoked as `listener(job, old_state, new_state)`."""
        self._listeners.append(listener)

    def submit(self, source: SourceRef) -> JobHandle:
        """
        Admits a job or rejects it immediately.

        Must be called from the event loop running the scheduler. The check and
        the admission happen without yielding, so concurrent submitters cannot
        overshoot `max_queue_length`.

        Raises:
            ResourceExhaustedError: QUEUE_FULL when too many jobs are waiting,
                SCHEDULER_CLOSED after shutdown has begun.
            WorkspaceError: If the job's workspace cannot be created.
        """
        loop = asyncio.get_running_loop()
        if self._closed:
            self._reject(source, "scheduler is shut down")
            raise ResourceExhaustedError(
                "The scheduler is shutting down and accepts no new jobs.",
                ErrorKind.SCHEDULER_CLOSED,
            )

        # A job that finds a free download slot never counts against the limit.
        queued = self.queue_length
        if self._queued_with(Stage.DOWNLOAD) > self.config.max_queue_length:
            self._reject(source, "queue full")
            raise ResourceExhaustedError(
                f"Too many jobs are waiting ({queued}/{self.config.max_queue_length}). "
                f"Try again later."
            )

        job = Job(source=source)
        job.workspace = self.workspaces.acquire(job.id)
        job.waiting_for = Stage.DOWNLOAD

        runner = JobRunner(
            job,
            downloader=self.downloader,
            separator=self.separator,
            postprocessor=self.postprocessor,
            workspaces=self.workspaces,
            artifact_store=self.artifact_store,
            deliverer=self.deliverer,
            pools=self.pools,
            stats=self.stats,
            job_logger=self.job_logger,
            listeners=self._listeners,
        )
        task = loop.create_task(runner.run(), name=f"karaokify-job-{job.id}")
        handle = JobHandle(job, runner, task)
        self._handles[job.id] = handle
        task.add_done_callback(lambda t: self._job_done(job.id, t))

        self.stats.jobs_submitted += 1
        self.job_logger.job_submitted(job.id, source.describe(), self.queue_length)
        log.debug(f"Admitted job {job.id} for {source.describe()}")
        return handle

    def cancel(self, handle: JobHandle) -> bool:
        """
        Requests cancellation. Returns False if the job already finished, was
        already cancelled, or its result is being delivered.
        """
        job = handle.job
        if job.is_terminal or job.cancel_requested or handle.task.done():
            return False
        if handle.runner.finishing:
            return False
        job.cancel_requested = True
        if handle.runner.interruptible:
            handle.task.cancel()
        log.debug(f"Cancellation requested for job {job.id} ({job.state.value})")
        return True

    async def wait(self, handle: JobHandle) -> JobOutcome:
        """Waits until the job is terminal and returns its outcome."""
        return await handle.result()

    # ------------------------
    # Internals
    # ------------------------
    def _reject(self, source: SourceRef, reason: str) -> None:
        self.stats.jobs_rejected += 1
        self.job_logger.job_rejected(source.describe(), reason, self.queue_length)
        log.warning(f"[yellow]Rejected {source.describe()}:[/yellow] {reason}")

    def _job_done(self, job_id: str, task: asyncio.Task) -> None:
        self._handles.pop(job_id, None)
        if task.cancelled():
            return
        if exc := task.exception():
            log.error(f"[red]Job task {job_id} crashed:[/red] {exc}")

    def _release_failed(self, job_id: str, path: Path, error: OSError) -> None:
        self.stats.workspace_release_failures += 1
        self.job_logger.workspace_release_failed(job_id, str(path), str(error))
