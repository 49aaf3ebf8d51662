"""
Job orchestration: the lifecycle state machine, the per-job runner and the
scheduler that bounds concurrency.
"""

from .job_runner import JobRunner
from .pool import StagePool
from .scheduler import JobHandle, JobScheduler
from .state_machine import Effect, Event, Transition, transition

__all__ = [
    "Effect",
    "Event",
    "JobHandle",
    "JobRunner",
    "JobScheduler",
    "StagePool",
    "Transition",
    "transition",
]
