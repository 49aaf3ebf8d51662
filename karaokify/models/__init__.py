"""
Data Models Layer.

This package contains the Pydantic configuration model and the dataclasses
that describe jobs, their artifacts, outcomes and session statistics.
"""

from .config import PipelineConfig
from .job import (
    Artifact,
    Job,
    JobError,
    JobOutcome,
    JobResult,
    JobState,
    SourceRef,
    Stage,
    Stem,
)
from .stats import PipelineStats

__all__ = [
    "Artifact",
    "Job",
    "JobError",
    "JobOutcome",
    "JobResult",
    "JobState",
    "PipelineConfig",
    "PipelineStats",
    "SourceRef",
    "Stage",
    "Stem",
]
