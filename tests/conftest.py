"""
Shared fixtures: small WAV files, a pipeline config rooted in tmp_path, and
argv templates that run the fake engine and transcoder from tests/fixtures.
"""

import math
import os
import struct
import sys
import wave
from pathlib import Path

import pytest

from karaokify.models.config import PipelineConfig

FIXTURES = Path(__file__).parent / "fixtures"


def write_wav(path: Path, seconds: float = 0.5, rate: int = 8000) -> Path:
    """Writes a mono 16-bit sine wave."""
    frames = int(seconds * rate)
    with wave.open(str(path), "wb") as f:
        f.setnchannels(1)
        f.setsampwidth(2)
        f.setframerate(rate)
        f.writeframes(
            b"".join(
                struct.pack("<h", int(8000 * math.sin(2 * math.pi * 440 * i / rate)))
                for i in range(frames)
            )
        )
    return path


def wav_bytes(tmp_path: Path, seconds: float = 0.5) -> bytes:
    return write_wav(tmp_path / "input.wav", seconds).read_bytes()


def engine_command(mode: str = "ok", *extra: str) -> list[str]:
    return [
        sys.executable,
        str(FIXTURES / "fake_engine.py"),
        mode,
        "{input}",
        "{output_dir}",
        *extra,
    ]


def transcoder_command(mode: str = "ok") -> list[str]:
    return [
        sys.executable,
        str(FIXTURES / "fake_transcoder.py"),
        mode,
        "{input}",
        "{output}",
    ]


def mix_command(mode: str = "ok") -> list[str]:
    # The fake transcoder copies its first input; {music} is only passed along.
    return [
        sys.executable,
        str(FIXTURES / "fake_transcoder.py"),
        mode,
        "{vocals}",
        "{output}",
        "{music}",
    ]


def pid_running(pid: int) -> bool:
    """True while `pid` exists and is not a zombie awaiting its parent."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    try:
        with open(f"/proc/{pid}/stat") as f:
            return f.read().rsplit(")", 1)[1].split()[0] != "Z"
    except OSError:
        return True


@pytest.fixture
def make_config(tmp_path):
    """Factory for configs whose external commands are the fake scripts."""

    def _make(**overrides) -> PipelineConfig:
        settings = {
            "workspace_root": str(tmp_path / "workspaces"),
            "output_root": str(tmp_path / "output"),
            "separation_command": engine_command("ok"),
            "transcode_command": transcoder_command("ok"),
            "mix_command": mix_command("ok"),
            "output_format": "wav",
            "quiet_vocals_mix": False,
            "download_timeout": 10,
            "separation_timeout": 20,
            "postprocess_timeout": 20,
            "termination_grace_period": 0.5,
            "download_retries": 0,
            "retry_base_delay": 0.01,
        }
        settings.update(overrides)
        return PipelineConfig(**settings)

    return _make
