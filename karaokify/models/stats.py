"""
Dataclass for tracking pipeline session statistics.
"""

import time
from collections import Counter
from dataclasses import dataclass, field

from karaokify.models.job import Job, JobState


@dataclass
class PipelineStats:
    """Tracks statistics for a pipeline session, including compute slot usage."""

    jobs_submitted: int = 0
    jobs_rejected: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    jobs_cancelled: int = 0
    artifacts_delivered: int = 0
    total_artifact_bytes: int = 0
    workspace_release_failures: int = 0
    failures_by_kind: Counter = field(default_factory=Counter)

    # Live compute slot gauges
    separating_now: int = 0
    peak_separating: int = 0
    started_at: float = field(default_factory=time.monotonic, repr=False)

    def separation_started(self) -> None:
        self.separating_now += 1
        self.peak_separating = max(self.peak_separating, self.separating_now)

    def separation_finished(self) -> None:
        self.separating_now -= 1

    def record_terminal(self, job: Job) -> None:
        """Folds a job that reached a terminal state into the counters."""
        if job.state == JobState.COMPLETED:
            self.jobs_completed += 1
            self.artifacts_delivered += len(job.artifacts)
            self.total_artifact_bytes += sum(a.size for a in job.artifacts)
        elif job.state == JobState.CANCELLED:
            self.jobs_cancelled += 1
        elif job.state == JobState.FAILED:
            self.jobs_failed += 1
            if job.error_kind is not None:
                self.failures_by_kind[job.error_kind.value] += 1

    @property
    def jobs_finished(self) -> int:
        return self.jobs_completed + self.jobs_failed + self.jobs_cancelled

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def as_dict(self) -> dict:
        return {
            "jobs_submitted": self.jobs_submitted,
            "jobs_rejected": self.jobs_rejected,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "jobs_cancelled": self.jobs_cancelled,
            "artifacts_delivered": self.artifacts_delivered,
            "total_artifact_bytes": self.total_artifact_bytes,
            "workspace_release_failures": self.workspace_release_failures,
            "peak_separating": self.peak_separating,
            "failures_by_kind": dict(self.failures_by_kind),
            "duration_seconds": round(self.elapsed, 2),
        }
