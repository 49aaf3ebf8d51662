"""
Structured logging system for job lifecycle analysis and debugging.
Provides JSON-formatted logs with context and metadata.
"""

import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.markup import escape


class StructuredLogger:
    """
    Logger that outputs both human-readable and machine-parseable events.

    Usage:
        logger = StructuredLogger("karaokify", log_dir=Path("logs"))
        logger.info("job_completed", job_id="abc", artifacts=3, duration_s=41.2)
    """

    def __init__(
        self,
        name: str,
        log_dir: Path | None = None,
        enable_json: bool = True,
        enable_console: bool = True,
    ):
        """
        Initialize structured logger.

        Args:
            name: Logger name
            log_dir: Directory for JSON log files (None = disabled)
            enable_json: Enable JSON file logging
            enable_console: Enable console output through the standard logger
        """
        self.name = name
        self.log_dir = log_dir
        self.enable_json = enable_json and log_dir is not None
        self.enable_console = enable_console

        self._logger = logging.getLogger(name)

        self._json_file = None
        if self.enable_json:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            json_log_path = log_dir / f"karaokify_{timestamp}.jsonl"
            self._json_file = open(json_log_path, "a", encoding="utf-8")  # noqa: SIM115

        # Session context (added to all log entries)
        self._session_context: dict[str, Any] = {
            "session_id": f"{int(time.time())}_{id(self)}",
        }

    def _format_message(self, event: str, **context) -> str:
        parts = [escape(f"[{event}]")]
        for key, value in context.items():
            parts.append(f"{key}={value}")
        return " ".join(parts)

    def _write_json(self, level: str, event: str, **context) -> None:
        if not self._json_file or self._json_file.closed:
            return

        entry = {
            "timestamp": datetime.now().isoformat(),
            "level": level,
            "event": event,
            **self._session_context,
            **context,
        }

        try:
            self._json_file.write(json.dumps(entry, default=str) + "\n")
            self._json_file.flush()
        except (OSError, ValueError) as e:
            print(f"JSON logging failed: {e}", file=sys.stderr)

    def _log(self, level: int, event: str, **context) -> None:
        if self.enable_console:
            self._logger.log(level, self._format_message(event, **context))
        if self.enable_json:
            self._write_json(logging.getLevelName(level), event, **context)

    def debug(self, event: str, **context) -> None:
        self._log(logging.DEBUG, event, **context)

    def info(self, event: str, **context) -> None:
        self._log(logging.INFO, event, **context)

    def warning(self, event: str, **context) -> None:
        self._log(logging.WARNING, event, **context)

    def error(self, event: str, **context) -> None:
        self._log(logging.ERROR, event, **context)

    def close(self) -> None:
        """Close JSON log file."""
        if self._json_file and not self._json_file.closed:
            self._json_file.close()


class JobLogger:
    """Specialized logger for job lifecycle events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def job_submitted(self, job_id: str, source: str, queued: int):
        self.logger.info("job_submitted", job_id=job_id, source=source, queued=queued)

    def job_rejected(self, source: str, reason: str, queued: int):
        self.logger.warning(
            "job_rejected", source=source, reason=reason, queued=queued
        )

    def state_changed(self, job_id: str, old_state: str, new_state: str):
        self.logger.debug(
            "job_state_changed",
            job_id=job_id,
            old_state=old_state,
            new_state=new_state,
        )

    def job_completed(self, job_id: str, artifacts: int, duration_s: float):
        self.logger.info(
            "job_completed",
            job_id=job_id,
            artifacts=artifacts,
            duration_s=round(duration_s, 2),
        )

    def job_failed(self, job_id: str, kind: str, error: str, state: str):
        self.logger.error(
            "job_failed", job_id=job_id, kind=kind, error=error, failed_in=state
        )

    def job_cancelled(self, job_id: str, state: str):
        self.logger.info("job_cancelled", job_id=job_id, cancelled_in=state)

    def workspace_release_failed(self, job_id: str, path: str, error: str):
        self.logger.warning(
            "workspace_release_failed", job_id=job_id, path=path, error=error
        )


class ProcessLogger:
    """Specialized logger for external process events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def process_spawned(self, name: str, pid: int, argv: list[str]):
        self.logger.debug("process_spawned", name=name, pid=pid, argv=" ".join(argv))

    def process_exited(self, name: str, pid: int, returncode: int, duration_s: float):
        self.logger.debug(
            "process_exited",
            name=name,
            pid=pid,
            returncode=returncode,
            duration_s=round(duration_s, 2),
        )

    def process_killed(self, name: str, pid: int, signal_name: str, reason: str):
        self.logger.warning(
            "process_killed",
            name=name,
            pid=pid,
            signal=signal_name,
            reason=reason,
        )


class SessionLogger:
    """Specialized logger for session events."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def session_started(
        self,
        separation_slots: int,
        download_slots: int,
        max_queue_length: int,
    ):
        self.logger.info(
            "session_started",
            separation_slots=separation_slots,
            download_slots=download_slots,
            max_queue_length=max_queue_length,
        )

    def session_completed(self, **stats: Any):
        self.logger.info("session_completed", **stats)


def create_structured_logger(
    log_dir: Path | None = None,
    enable_json: bool = False,
    enable_console: bool = False,
) -> tuple[StructuredLogger, JobLogger, ProcessLogger, SessionLogger]:
    """
    Create all structured loggers.

    Returns:
        Tuple of (base_logger, job_logger, process_logger, session_logger)
    """
    base = StructuredLogger(
        "karaokify.events",
        log_dir=log_dir,
        enable_json=enable_json,
        enable_console=enable_console,
    )
    return base, JobLogger(base), ProcessLogger(base), SessionLogger(base)
