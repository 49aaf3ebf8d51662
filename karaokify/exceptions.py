"""
Defines custom exceptions for the pipeline so that every failure can be mapped
to a well-typed terminal outcome.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable failure classes recorded on a failed job."""

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    UNSUPPORTED_FORMAT = "unsupported_format"
    TOO_LARGE = "too_large"
    NETWORK_ERROR = "network_error"
    ENGINE_CRASH = "engine_crash"
    OUT_OF_MEMORY = "out_of_memory"
    NO_OUTPUT_PRODUCED = "no_output_produced"
    TRANSCODE_FAILED = "transcode_failed"
    EMPTY_OUTPUT = "empty_output"
    INVALID_FORMAT = "invalid_format"
    CANCELLED = "cancelled"
    QUEUE_FULL = "queue_full"
    SCHEDULER_CLOSED = "scheduler_closed"
    DELIVERY_FAILED = "delivery_failed"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class KaraokifyError(Exception):
    """Base exception for all application-specific errors."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str = "", kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class DownloadError(KaraokifyError):
    """Raised when the source audio cannot be fetched or fails validation."""

    KINDS = frozenset(
        {
            ErrorKind.NOT_FOUND,
            ErrorKind.TIMEOUT,
            ErrorKind.UNSUPPORTED_FORMAT,
            ErrorKind.TOO_LARGE,
            ErrorKind.NETWORK_ERROR,
        }
    )

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.NETWORK_ERROR):
        if kind not in self.KINDS:
            raise ValueError(f"Invalid download error kind: {kind}")
        super().__init__(message, kind)

    @property
    def is_transient(self) -> bool:
        """Whether another attempt (or another handler) might succeed."""
        return self.kind in (ErrorKind.NETWORK_ERROR, ErrorKind.NOT_FOUND)


class SeparationError(KaraokifyError):
    """Raised when the external separation engine fails."""

    KINDS = frozenset(
        {
            ErrorKind.ENGINE_CRASH,
            ErrorKind.TIMEOUT,
            ErrorKind.OUT_OF_MEMORY,
            ErrorKind.NO_OUTPUT_PRODUCED,
        }
    )

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.ENGINE_CRASH,
        exit_code: int | None = None,
    ):
        if kind not in self.KINDS:
            raise ValueError(f"Invalid separation error kind: {kind}")
        super().__init__(message, kind)
        self.exit_code = exit_code


class PostProcessError(KaraokifyError):
    """Raised when a stem cannot be turned into a deliverable artifact."""

    KINDS = frozenset(
        {
            ErrorKind.TRANSCODE_FAILED,
            ErrorKind.EMPTY_OUTPUT,
            ErrorKind.INVALID_FORMAT,
        }
    )

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSCODE_FAILED):
        if kind not in self.KINDS:
            raise ValueError(f"Invalid post-processing error kind: {kind}")
        super().__init__(message, kind)


class StageTimeoutError(KaraokifyError):
    """Raised when a stage without its own timeout class exceeds its deadline."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, stage: str, timeout: float):
        super().__init__(f"Stage '{stage}' exceeded its {timeout:g}s deadline.")
        self.stage = stage
        self.timeout = timeout


class JobCancelledError(KaraokifyError):
    """Raised at a stage boundary when the job has been cancelled."""

    kind = ErrorKind.CANCELLED


class ResourceExhaustedError(KaraokifyError):
    """Raised at admission time when the scheduler cannot accept more work."""

    kind = ErrorKind.QUEUE_FULL


class ConfigurationError(KaraokifyError):
    """Raised for issues related to configuration loading or validation."""

    kind = ErrorKind.CONFIGURATION


class WorkspaceError(KaraokifyError):
    """Raised when a job workspace cannot be created."""


class DeliveryError(KaraokifyError):
    """Raised when finished artifacts cannot be published or handed off."""

    kind = ErrorKind.DELIVERY_FAILED


class InvalidTransitionError(KaraokifyError):
    """Raised when the job state machine receives an event it cannot accept."""
