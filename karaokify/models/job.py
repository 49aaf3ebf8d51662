"""
Core data structures describing a job and the outcomes it can produce.
"""

import itertools
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlparse

from karaokify.exceptions import ErrorKind

_job_counter = itertools.count(1)


def new_job_id() -> str:
    """Builds a job identifier that is unique within and across processes."""
    return f"{time.time_ns():x}-{os.getpid()}-{next(_job_counter)}"


class JobState(str, Enum):
    """Lifecycle states of a job."""

    QUEUED = "queued"
    DOWNLOADING = "downloading"
    SEPARATING = "separating"
    POSTPROCESSING = "postprocessing"
    DELIVERING = "delivering"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class Stage(str, Enum):
    """Stage pools a job can wait on."""

    DOWNLOAD = "download"
    SEPARATION = "separation"
    POSTPROCESS = "postprocess"


@dataclass(frozen=True)
class SourceRef:
    """A reference to the track to process: a remote locator or inline bytes."""

    url: Optional[str] = None
    data: Optional[bytes] = field(default=None, repr=False)
    filename: Optional[str] = None

    def __post_init__(self):
        if (self.url is None) == (self.data is None):
            raise ValueError("A source needs exactly one of 'url' or 'data'.")

    @classmethod
    def remote(cls, url: str) -> "SourceRef":
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"Not an http(s) URL: {url}")
        return cls(url=url)

    @classmethod
    def inline(cls, data: bytes, filename: Optional[str] = None) -> "SourceRef":
        return cls(data=data, filename=filename)

    @property
    def is_inline(self) -> bool:
        return self.data is not None

    def describe(self) -> str:
        if self.url:
            return self.url
        name = self.filename or "inline"
        return f"{name} ({len(self.data)} bytes)"


@dataclass(frozen=True)
class Stem:
    """An isolated component written by the separation engine."""

    role: str
    path: Path


@dataclass(frozen=True)
class Artifact:
    """A deliverable output file."""

    role: str
    path: Path
    format: str
    size: int


@dataclass
class JobResult:
    """Successful terminal outcome handed to the deliverer."""

    job_id: str
    artifacts: list[Artifact]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return True


@dataclass
class JobError:
    """Failed or cancelled terminal outcome handed to the deliverer."""

    job_id: str
    kind: ErrorKind
    message: str
    state: JobState = JobState.FAILED

    @property
    def ok(self) -> bool:
        return False


JobOutcome = Union[JobResult, JobError]


@dataclass
class Job:
    """
    A unit of work. Mutated only by the runner task that owns it; the scheduler
    only ever sets `cancel_requested`.
    """

    source: SourceRef
    id: str = field(default_factory=new_job_id)
    state: JobState = JobState.QUEUED
    workspace: Optional[Path] = None
    source_path: Optional[Path] = None
    stems: list[Stem] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    error_kind: Optional[ErrorKind] = None
    error_message: str = ""
    waiting_for: Optional[Stage] = None
    cancel_requested: bool = False
    diagnostics: list[str] = field(default_factory=list, repr=False)
    stage_timings: dict[str, float] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ended_at: Optional[float] = None

    MAX_DIAGNOSTIC_LINES = 500

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def duration(self) -> Optional[float]:
        if self.started_at is None:
            return None
        return (self.ended_at or time.time()) - self.started_at

    def add_diagnostics(self, lines: list[str]) -> None:
        self.diagnostics.extend(lines)
        overflow = len(self.diagnostics) - self.MAX_DIAGNOSTIC_LINES
        if overflow > 0:
            del self.diagnostics[:overflow]

    def result(self) -> JobResult:
        return JobResult(
            job_id=self.id,
            artifacts=list(self.artifacts),
            metadata={
                "source": self.source.describe(),
                "stage_timings": dict(self.stage_timings),
                **self.metadata,
            },
        )

    def outcome(self) -> JobOutcome:
        """Builds the terminal outcome for a job that has finished."""
        if self.state == JobState.COMPLETED:
            return self.result()
        return JobError(
            job_id=self.id,
            kind=self.error_kind or ErrorKind.INTERNAL,
            message=self.error_message,
            state=self.state,
        )
