import json

from karaokify.utils.structured_logger import StructuredLogger, create_structured_logger


def test_events_are_written_as_json_lines(tmp_path):
    base, job_log, process_log, session_log = create_structured_logger(
        log_dir=tmp_path, enable_json=True
    )
    try:
        session_log.session_started(1, 4, 16)
        job_log.job_submitted("job1", "song.wav", 1)
        process_log.process_killed("separation", 123, "SIGKILL", "cancelled")
        job_log.job_failed("job1", "timeout", "too slow", "separating")
    finally:
        base.close()

    (log_file,) = tmp_path.glob("karaokify_*.jsonl")
    entries = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert [e["event"] for e in entries] == [
        "session_started",
        "job_submitted",
        "process_killed",
        "job_failed",
    ]
    assert entries[2]["signal"] == "SIGKILL"
    assert entries[3]["level"] == "ERROR"
    assert len({e["session_id"] for e in entries}) == 1


def test_events_after_close_are_dropped(tmp_path):
    base, job_log, _, _ = create_structured_logger(log_dir=tmp_path, enable_json=True)
    job_log.job_submitted("job1", "song.wav", 1)
    base.close()
    base.close()
    job_log.job_cancelled("job1", "queued")

    (log_file,) = tmp_path.glob("karaokify_*.jsonl")
    assert len(log_file.read_text().splitlines()) == 1
    assert not hasattr(StructuredLogger, "set_session_context")


def test_json_disabled_without_log_dir():
    base, job_log, _, _ = create_structured_logger()
    assert base.enable_json is False
    job_log.job_cancelled("job1", "queued")
    base.close()
