"""
Drives a single job through its stages. One JobRunner task exists per admitted
job and it is the only code that mutates that job.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from contextlib import asynccontextmanager

from karaokify.core.pool import StagePool
from karaokify.core.state_machine import Effect, Event, Transition, transition
from karaokify.delivery import ResultDeliverer, dispatch
from karaokify.exceptions import DeliveryError, ErrorKind, JobCancelledError, KaraokifyError
from karaokify.media.downloader import Downloader
from karaokify.media.postprocessor import Postprocessor
from karaokify.media.separator import SeparationRunner
from karaokify.models.job import Job, JobOutcome, JobState, Stage
from karaokify.models.stats import PipelineStats
from karaokify.storage.artifacts import ArtifactStore
from karaokify.storage.workspace import WorkspaceManager
from karaokify.utils.structured_logger import JobLogger

log = logging.getLogger(__name__)

StateListener = Callable[[Job, JobState, JobState], None]


class JobRunner:
    """
    Runs the dispatch loop for one job and guarantees its cleanup contract:
    whatever happens, the workspace is released before the job is observed in
    a terminal state, and the deliverer receives exactly one outcome.
    """

    def __init__(
        self,
        job: Job,
        *,
        downloader: Downloader,
        separator: SeparationRunner,
        postprocessor: Postprocessor,
        workspaces: WorkspaceManager,
        artifact_store: ArtifactStore,
        deliverer: ResultDeliverer,
        pools: dict[Stage, StagePool],
        stats: PipelineStats,
        job_logger: JobLogger | None = None,
        listeners: Iterable[StateListener] = (),
    ):
        self.job = job
        self.downloader = downloader
        self.separator = separator
        self.postprocessor = postprocessor
        self.workspaces = workspaces
        self.artifact_store = artifact_store
        self.deliverer = deliverer
        self.pools = pools
        self.stats = stats
        self.job_logger = job_logger
        self.listeners = listeners

        self.started = False
        self.finishing = False
        self._published = False
        self._delivered = False

    @property
    def interruptible(self) -> bool:
        """
        Whether the task may be cancelled right now. Before the task starts the
        cancel flag is checked at the first boundary; once the result has been
        handed to the deliverer or termination has begun, nothing may be
        interrupted.
        """
        return self.started and not self.finishing

    async def run(self) -> JobOutcome:
        """Runs the job to a terminal state and returns its outcome."""
        self.started = True
        job = self.job
        job.started_at = time.time()

        reraise = False
        try:
            event = await self._dispatch()
            kind, message = None, ""
        except JobCancelledError:
            event, kind, message = Event.CANCEL, ErrorKind.CANCELLED, "Job was cancelled."
        except asyncio.CancelledError:
            if job.cancel_requested:
                asyncio.current_task().uncancel()
            else:
                # Not a job cancellation (the loop is going away): clean up, then propagate.
                reraise = True
            event, kind, message = Event.CANCEL, ErrorKind.CANCELLED, "Job was cancelled."
        except KaraokifyError as e:
            event, kind, message = Event.FAIL, e.kind, str(e)
        except Exception as e:
            log.debug(f"Unexpected error in job {job.id}", exc_info=True)
            event, kind, message = Event.FAIL, ErrorKind.INTERNAL, f"{type(e).__name__}: {e}"

        outcome = await self._finish(event, kind, message)
        if reraise:
            raise asyncio.CancelledError()
        return outcome

    # ------------------------
    # Dispatch loop
    # ------------------------
    async def _dispatch(self) -> Event:
        """Advances the job until the state machine asks for release."""
        event = Event.START
        while True:
            self._check_cancelled()
            step = transition(self.job.state, event)
            if step.effect is Effect.RELEASE:
                return event
            event = await self._perform(step)

    async def _perform(self, step: Transition) -> Event:
        job = self.job
        if step.effect is Effect.DOWNLOAD:
            async with self._slot(Stage.DOWNLOAD, step.state):
                job.source_path = await self.downloader.download(
                    job.source, job.workspace
                )
            return Event.DOWNLOADED

        if step.effect is Effect.SEPARATE:
            async with self._slot(Stage.SEPARATION, step.state):
                self.stats.separation_started()
                try:
                    job.stems = await self.separator.run(
                        job.source_path, job.workspace, on_output=job.add_diagnostics
                    )
                finally:
                    self.stats.separation_finished()
            return Event.SEPARATED

        if step.effect is Effect.POSTPROCESS:
            async with self._slot(Stage.POSTPROCESS, step.state):
                job.artifacts = await self.postprocessor.run(
                    job.id,
                    job.stems,
                    job.workspace,
                    source_path=job.source_path,
                    on_output=job.add_diagnostics,
                )
            return Event.POSTPROCESSED

        if step.effect is Effect.DELIVER:
            self._set_state(step.state)
            await self._deliver()
            return Event.DELIVERED

        raise KaraokifyError(f"Runner cannot perform effect '{step.effect.value}'.")

    @asynccontextmanager
    async def _slot(self, stage: Stage, state: JobState):
        """
        Waits in the stage pool, then enters `state`. While waiting the job
        keeps its previous state and reports `waiting_for`.
        """
        job = self.job
        pool = self.pools[stage]
        job.waiting_for = stage
        try:
            await pool.acquire()
        finally:
            job.waiting_for = None

        started = time.monotonic()
        try:
            self._check_cancelled()
            self._set_state(state)
            yield
        finally:
            job.stage_timings[stage.value] = round(time.monotonic() - started, 3)
            pool.release()

    async def _deliver(self) -> None:
        job = self.job
        job.artifacts = await self.artifact_store.publish(job.id, job.artifacts)
        self._published = True
        self._check_cancelled()

        # From here on the deliverer owns the result; cancellation is refused.
        self.finishing = True
        self._delivered = True
        try:
            await self.deliverer.deliver(job.result())
        except KaraokifyError:
            raise
        except Exception as e:
            raise DeliveryError(f"Deliverer rejected the result: {e}") from e

    def _check_cancelled(self) -> None:
        if self.job.cancel_requested:
            raise JobCancelledError(f"Job {self.job.id} was cancelled.")

    # ------------------------
    # Termination
    # ------------------------
    async def _finish(
        self, event: Event, kind: ErrorKind | None, message: str
    ) -> JobOutcome:
        self.finishing = True
        job = self.job
        step = transition(job.state, event)
        failed_in = job.state
        job.waiting_for = None
        if step.state != JobState.COMPLETED:
            job.error_kind = kind
            job.error_message = message
            if self._published:
                await self.artifact_store.discard(job.id)

        await self.workspaces.release(job.id)
        job.ended_at = time.time()
        self._set_state(step.state)
        self.stats.record_terminal(job)
        self._log_terminal(failed_in)

        outcome = job.outcome()
        if not self._delivered:
            self._delivered = True
            try:
                await dispatch(self.deliverer, outcome)
            except Exception as e:
                log.error(f"[red]Could not deliver outcome of job {job.id}:[/red] {e}")
        return outcome

    def _log_terminal(self, failed_in: JobState) -> None:
        job = self.job
        if job.state == JobState.COMPLETED:
            log.info(
                f"[green]Job {job.id} completed[/green] with "
                f"{len(job.artifacts)} artifact(s)"
            )
            if self.job_logger:
                self.job_logger.job_completed(
                    job.id, len(job.artifacts), job.duration or 0.0
                )
        elif job.state == JobState.CANCELLED:
            log.info(f"[yellow]Job {job.id} cancelled[/yellow] while {failed_in.value}")
            if self.job_logger:
                self.job_logger.job_cancelled(job.id, failed_in.value)
        else:
            log.warning(
                f"[red]Job {job.id} failed[/red] while {failed_in.value} "
                f"({job.error_kind.value}): {job.error_message}"
            )
            if self.job_logger:
                self.job_logger.job_failed(
                    job.id, job.error_kind.value, job.error_message, failed_in.value
                )

    def _set_state(self, new_state: JobState) -> None:
        job = self.job
        old_state, job.state = job.state, new_state
        if old_state == new_state:
            return
        log.debug(f"Job {job.id}: {old_state.value} -> {new_state.value}")
        if self.job_logger:
            self.job_logger.state_changed(job.id, old_state.value, new_state.value)
        for listener in self.listeners:
            try:
                listener(job, old_state, new_state)
            except Exception as e:
                log.warning(f"[yellow]State listener failed for job {job.id}:[/yellow] {e}")
