from pathlib import Path

import pytest

from karaokify.exceptions import (
    DownloadError,
    ErrorKind,
    PostProcessError,
    ResourceExhaustedError,
    SeparationError,
    StageTimeoutError,
)
from karaokify.models.job import Artifact, Job, JobState, SourceRef, new_job_id
from karaokify.models.stats import PipelineStats
from karaokify.utils.formatting import describe_job, format_duration, format_size


def test_source_ref_needs_exactly_one_origin():
    with pytest.raises(ValueError):
        SourceRef()
    with pytest.raises(ValueError):
        SourceRef(url="https://example.com/a.mp3", data=b"x")


def test_remote_source_requires_http_url():
    assert SourceRef.remote("https://example.com/a.mp3").url
    for bad in ("ftp://example.com/a.mp3", "not a url", "file:///etc/passwd"):
        with pytest.raises(ValueError):
            SourceRef.remote(bad)


def test_inline_source_description():
    source = SourceRef.inline(b"abc", "song.wav")
    assert source.is_inline
    assert source.describe() == "song.wav (3 bytes)"


def test_job_ids_are_unique():
    assert len({new_job_id() for _ in range(1000)}) == 1000


def test_job_outcome_for_each_terminal_state():
    job = Job(source=SourceRef.remote("https://example.com/a.mp3"))
    job.state = JobState.COMPLETED
    job.artifacts = [Artifact("vocals", Path("/x/v.wav"), "wav", 10)]
    result = job.outcome()
    assert result.ok
    assert result.metadata["source"] == "https://example.com/a.mp3"

    job.state = JobState.FAILED
    job.error_kind = ErrorKind.TIMEOUT
    job.error_message = "too slow"
    error = job.outcome()
    assert not error.ok
    assert (error.kind, error.message, error.state) == (
        ErrorKind.TIMEOUT,
        "too slow",
        JobState.FAILED,
    )


def test_diagnostics_are_bounded():
    job = Job(source=SourceRef.inline(b"x"))
    job.add_diagnostics([str(i) for i in range(Job.MAX_DIAGNOSTIC_LINES + 10)])
    assert len(job.diagnostics) == Job.MAX_DIAGNOSTIC_LINES
    assert job.diagnostics[0] == "10"


def test_error_kinds_are_checked_per_stage():
    assert DownloadError("x", ErrorKind.TOO_LARGE).kind == ErrorKind.TOO_LARGE
    assert SeparationError("x").kind == ErrorKind.ENGINE_CRASH
    assert PostProcessError("x").kind == ErrorKind.TRANSCODE_FAILED
    with pytest.raises(ValueError):
        DownloadError("x", ErrorKind.ENGINE_CRASH)
    with pytest.raises(ValueError):
        SeparationError("x", ErrorKind.EMPTY_OUTPUT)
    with pytest.raises(ValueError):
        PostProcessError("x", ErrorKind.NOT_FOUND)


def test_transient_download_errors():
    assert DownloadError("x", ErrorKind.NETWORK_ERROR).is_transient
    assert DownloadError("x", ErrorKind.NOT_FOUND).is_transient
    assert not DownloadError("x", ErrorKind.TOO_LARGE).is_transient


def test_class_level_kinds():
    assert StageTimeoutError("postprocess", 3).kind == ErrorKind.TIMEOUT
    assert ResourceExhaustedError("full").kind == ErrorKind.QUEUE_FULL
    closed = ResourceExhaustedError("closed", ErrorKind.SCHEDULER_CLOSED)
    assert closed.kind == ErrorKind.SCHEDULER_CLOSED


def test_stats_record_terminal_jobs():
    stats = PipelineStats()
    done = Job(source=SourceRef.inline(b"x"), state=JobState.COMPLETED)
    done.artifacts = [Artifact("vocals", Path("v.wav"), "wav", 100)]
    failed = Job(
        source=SourceRef.inline(b"x"),
        state=JobState.FAILED,
        error_kind=ErrorKind.OUT_OF_MEMORY,
    )
    cancelled = Job(source=SourceRef.inline(b"x"), state=JobState.CANCELLED)
    for job in (done, failed, cancelled):
        stats.record_terminal(job)

    stats.separation_started()
    stats.separation_started()
    stats.separation_finished()

    summary = stats.as_dict()
    assert summary["jobs_completed"] == 1
    assert summary["jobs_failed"] == 1
    assert summary["jobs_cancelled"] == 1
    assert summary["total_artifact_bytes"] == 100
    assert summary["failures_by_kind"] == {"out_of_memory": 1}
    assert summary["peak_separating"] == 2
    assert stats.separating_now == 1
    assert stats.jobs_finished == 3


def test_formatting_helpers():
    assert format_size(0) == "0 B"
    assert format_size(1536) == "1.5 KB"
    assert format_duration(3725) == "1h 2m 5s"
    assert format_duration(0) == "0s"
    job = Job(source=SourceRef.remote("https://example.com/" + "a" * 100), id="ff-12-3")
    label = describe_job(job, width=20)
    assert label.startswith("12-3 …")
    assert len(label.split(" ", 1)[1]) == 20
