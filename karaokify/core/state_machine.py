"""
The job lifecycle as a pure transition function.

    QUEUED -> DOWNLOADING -> SEPARATING -> POSTPROCESSING -> DELIVERING -> COMPLETED

FAILED and CANCELLED are reachable from every non-terminal state. The runner
asks `transition` what to do next and performs the returned effect; this
module never touches a job.
"""

from enum import Enum
from typing import NamedTuple

from karaokify.exceptions import InvalidTransitionError
from karaokify.models.job import JobState


class Event(str, Enum):
    START = "start"
    DOWNLOADED = "downloaded"
    SEPARATED = "separated"
    POSTPROCESSED = "postprocessed"
    DELIVERED = "delivered"
    FAIL = "fail"
    CANCEL = "cancel"


class Effect(str, Enum):
    DOWNLOAD = "download"
    SEPARATE = "separate"
    POSTPROCESS = "postprocess"
    DELIVER = "deliver"
    # Every terminal transition releases the workspace exactly once.
    RELEASE = "release"


class Transition(NamedTuple):
    state: JobState
    effect: Effect


_FORWARD: dict[tuple[JobState, Event], Transition] = {
    (JobState.QUEUED, Event.START): Transition(JobState.DOWNLOADING, Effect.DOWNLOAD),
    (JobState.DOWNLOADING, Event.DOWNLOADED): Transition(
        JobState.SEPARATING, Effect.SEPARATE
    ),
    (JobState.SEPARATING, Event.SEPARATED): Transition(
        JobState.POSTPROCESSING, Effect.POSTPROCESS
    ),
    (JobState.POSTPROCESSING, Event.POSTPROCESSED): Transition(
        JobState.DELIVERING, Effect.DELIVER
    ),
    (JobState.DELIVERING, Event.DELIVERED): Transition(
        JobState.COMPLETED, Effect.RELEASE
    ),
}


def transition(state: JobState, event: Event) -> Transition:
    """
    Returns the next state and the effect the runner must perform.

    Raises:
        InvalidTransitionError: If `event` is not valid in `state`.
    """
    if state.is_terminal:
        raise InvalidTransitionError(
            f"Job is already {state.value}; cannot apply '{event.value}'."
        )
    if event is Event.FAIL:
        return Transition(JobState.FAILED, Effect.RELEASE)
    if event is Event.CANCEL:
        return Transition(JobState.CANCELLED, Effect.RELEASE)

    step = _FORWARD.get((state, event))
    if step is None:
        raise InvalidTransitionError(
            f"Event '{event.value}' is not valid while {state.value}."
        )
    return step
