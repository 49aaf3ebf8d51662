"""
Pydantic model for pipeline configuration.
Provides robust validation for all settings.
"""

import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_SEPARATION_COMMAND = [
    "demucs",
    "--name",
    "{model}",
    "--two-stems",
    "vocals",
    "--filename",
    "{stem}.{ext}",
    "--out",
    "{output_dir}",
    "{input}",
]

DEFAULT_TRANSCODE_COMMAND = [
    "ffmpeg",
    "-hide_banner",
    "-loglevel",
    "error",
    "-nostdin",
    "-y",
    "-i",
    "{input}",
    "-b:a",
    "{bitrate}",
    "{output}",
]

DEFAULT_MIX_COMMAND = [
    "ffmpeg",
    "-hide_banner",
    "-loglevel",
    "error",
    "-nostdin",
    "-y",
    "-i",
    "{vocals}",
    "-i",
    "{music}",
    "-filter_complex",
    "[0:a]volume={gain_db}dB[voc];[voc][1:a]amix=inputs=2:duration=longest:"
    "dropout_transition=0:normalize=0",
    "-b:a",
    "{bitrate}",
    "{output}",
]

# Container formats the pipeline knows how to probe, keyed by file extension.
SUPPORTED_FORMATS = ("mp3", "flac", "wav", "ogg", "opus", "m4a", "aiff")

SEPARATION_PLACEHOLDERS = ("{input}", "{output_dir}")
TRANSCODE_PLACEHOLDERS = ("{input}", "{output}")
MIX_PLACEHOLDERS = ("{vocals}", "{music}", "{output}")


def default_workspace_root() -> str:
    return str(Path(tempfile.gettempdir()) / "karaokify" / "workspaces")


def default_output_root() -> str:
    return str(Path.cwd() / "karaokify-output")


class PipelineConfig(BaseModel):
    """A validated configuration model for the job pipeline."""

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    # Storage
    workspace_root: str = Field(default_factory=default_workspace_root)
    output_root: str = Field(default_factory=default_output_root)

    # Scheduling
    max_concurrent_separation_jobs: int = 1
    max_concurrent_downloads: int = 4
    max_concurrent_postprocess: int = 2
    max_queue_length: int = 16

    # Stage deadlines (seconds)
    download_timeout: float = 300.0
    separation_timeout: float = 1800.0
    postprocess_timeout: float = 300.0
    termination_grace_period: float = 5.0

    # Source limits
    max_source_duration_seconds: float = 900.0
    max_source_size_bytes: int = 100 * 1024 * 1024
    allowed_formats: list[str] = Field(default_factory=lambda: list(SUPPORTED_FORMATS))

    # Download behaviour
    download_retries: int = 3
    retry_base_delay: float = 1.5
    resolver_service_url: str = ""

    # Separation engine
    separation_command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SEPARATION_COMMAND)
    )
    separation_model: str = "htdemucs"
    expected_stems: list[str] = Field(default_factory=list)
    stem_aliases: dict[str, str] = Field(
        default_factory=lambda: {"no_vocals": "music"}
    )

    # Post-processing
    transcode_command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRANSCODE_COMMAND)
    )
    mix_command: list[str] = Field(default_factory=lambda: list(DEFAULT_MIX_COMMAND))
    output_format: str = "mp3"
    output_bitrate: str = "256k"
    quiet_vocals_mix: bool = True
    quiet_vocals_gain_db: float = -20.0
    include_original: bool = False

    # Observability
    log_dir: str = ""

    # Internal fields not loaded from INI file
    config_path: str = Field("", repr=False)

    @field_validator(
        "max_concurrent_separation_jobs",
        "max_concurrent_downloads",
        "max_concurrent_postprocess",
    )
    @classmethod
    def validate_pool_size(cls, v: int) -> int:
        """Ensures a reasonable number of workers per stage pool."""
        if v < 1 or v > 64:
            raise ValueError("Pool sizes must be between 1 and 64.")
        return v

    @field_validator("max_queue_length", "download_retries")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("Value cannot be negative.")
        return v

    @field_validator(
        "download_timeout",
        "separation_timeout",
        "postprocess_timeout",
        "termination_grace_period",
        "max_source_duration_seconds",
    )
    @classmethod
    def validate_positive_duration(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Durations must be positive.")
        return v

    @field_validator("max_source_size_bytes")
    @classmethod
    def validate_size_limit(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Maximum source size must be positive.")
        return v

    @field_validator("allowed_formats")
    @classmethod
    def validate_formats(cls, v: list[str]) -> list[str]:
        """Normalizes format names and rejects ones the pipeline cannot probe."""
        formats = [f.lower().lstrip(".") for f in v if f.strip()]
        if not formats:
            raise ValueError("At least one allowed format is required.")
        unknown = sorted(set(formats) - set(SUPPORTED_FORMATS))
        if unknown:
            raise ValueError(
                f"Unsupported formats {unknown}. "
                f"Choose from: {', '.join(SUPPORTED_FORMATS)}."
            )
        return formats

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        v = v.lower().lstrip(".")
        if v not in SUPPORTED_FORMATS:
            raise ValueError(
                f"Output format must be one of: {', '.join(SUPPORTED_FORMATS)}."
            )
        return v

    @field_validator("expected_stems")
    @classmethod
    def validate_expected_stems(cls, v: list[str]) -> list[str]:
        return [s.strip() for s in v if s.strip()]

    @model_validator(mode="after")
    def validate_command_templates(self) -> "PipelineConfig":
        """Checks that external command templates reference their inputs."""
        templates = (
            ("separation_command", self.separation_command, SEPARATION_PLACEHOLDERS),
            ("transcode_command", self.transcode_command, TRANSCODE_PLACEHOLDERS),
            ("mix_command", self.mix_command, MIX_PLACEHOLDERS),
        )
        for name, command, placeholders in templates:
            if not command:
                raise ValueError(f"'{name}' cannot be empty.")
            joined = " ".join(command)
            missing = [p for p in placeholders if p not in joined]
            if missing:
                raise ValueError(f"'{name}' must contain {', '.join(missing)}.")
        return self

    @model_validator(mode="after")
    def validate_roots(self) -> "PipelineConfig":
        """The workspace root is wiped per job, so it must not contain the output."""
        workspace = Path(self.workspace_root).expanduser().resolve()
        output = Path(self.output_root).expanduser().resolve()
        if workspace == output or workspace in output.parents:
            raise ValueError("'output_root' cannot live inside 'workspace_root'.")
        return self

    @classmethod
    def get_ini_keys(cls) -> set[str]:
        """Returns a set of all keys that are expected in the INI file."""
        internal_fields = {"config_path"}
        return {key for key in cls.model_fields if key not in internal_fields}
