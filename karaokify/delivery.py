"""
The hand-off point between the pipeline and whatever presents results to a
user (a chat bot, the CLI, a web hook...).
"""

import logging
from typing import Protocol, runtime_checkable

from karaokify.models.job import JobError, JobOutcome, JobResult

log = logging.getLogger(__name__)


@runtime_checkable
class ResultDeliverer(Protocol):
    """
    Receives exactly one outcome per job: `deliver` for a completed job or
    `deliver_error` for a failed or cancelled one. Raising from `deliver`
    fails the job with DELIVERY_FAILED.
    """

    async def deliver(self, result: JobResult) -> None: ...

    async def deliver_error(self, error: JobError) -> None: ...


class LoggingDeliverer:
    """Default deliverer: reports outcomes through the standard logger."""

    async def deliver(self, result: JobResult) -> None:
        roles = ", ".join(a.role for a in result.artifacts)
        log.info(
            f"[green]Job {result.job_id} delivered {len(result.artifacts)} "
            f"artifact(s):[/green] {roles}"
        )

    async def deliver_error(self, error: JobError) -> None:
        log.info(
            f"[red]Job {error.job_id} {error.state.value} "
            f"({error.kind.value}):[/red] {error.message}"
        )


async def dispatch(deliverer: ResultDeliverer, outcome: JobOutcome) -> None:
    """Routes an outcome to the matching deliverer method."""
    if outcome.ok:
        await deliverer.deliver(outcome)
    else:
        await deliverer.deliver_error(outcome)
