"""
Provides methods for probing and validating audio files: container format,
duration, and a basic integrity check of produced artifacts.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import mutagen
from mutagen.aiff import AIFF
from mutagen.flac import FLAC
from mutagen.mp3 import MP3
from mutagen.mp4 import MP4
from mutagen.oggopus import OggOpus
from mutagen.oggvorbis import OggVorbis
from mutagen.wave import WAVE

log = logging.getLogger(__name__)

# mutagen file type -> the extension used throughout the pipeline
FORMAT_BY_TYPE = {
    MP3: "mp3",
    FLAC: "flac",
    WAVE: "wav",
    OggVorbis: "ogg",
    OggOpus: "opus",
    MP4: "m4a",
    AIFF: "aiff",
}


@dataclass(frozen=True)
class AudioProbe:
    """What could be learned about an audio file without decoding it."""

    format: str
    duration: float
    size: int


class FileIntegrityChecker:
    """A collection of static methods for validating audio files."""

    @staticmethod
    def probe(filepath: Path) -> Optional[AudioProbe]:
        """
        Identifies an audio container and reads its duration.

        Args:
            filepath: Path to the audio file.

        Returns:
            An AudioProbe, or None if the file is not a recognizable audio container.
        """
        try:
            audio = mutagen.File(str(filepath))
        except mutagen.MutagenError as e:
            log.debug(f"Probe failed for '{filepath}': {e}")
            return None
        except OSError as e:
            log.debug(f"Could not read '{filepath}': {e}")
            return None

        if audio is None:
            return None

        fmt = next(
            (ext for kind, ext in FORMAT_BY_TYPE.items() if isinstance(audio, kind)),
            None,
        )
        if fmt is None:
            log.debug(f"'{filepath}' is a {type(audio).__name__}, not a known format.")
            return None

        duration = float(getattr(audio.info, "length", 0.0) or 0.0)
        return AudioProbe(format=fmt, duration=duration, size=filepath.stat().st_size)

    @staticmethod
    def check(filepath: Path, expected_format: str | None = None) -> bool:
        """
        Performs a basic integrity check on a produced audio file.

        Checks that the file can be opened by mutagen, matches the expected
        container (if given) and has a positive duration.

        Args:
            filepath: Path to the audio file.
            expected_format: Extension of the container the file should be.

        Returns:
            True if the file appears to be a valid audio file, False otherwise.
        """
        probe = FileIntegrityChecker.probe(filepath)
        if probe is None:
            log.warning(f"Integrity check failed for '{filepath}': Unrecognized header.")
            return False
        if expected_format and probe.format != expected_format:
            log.warning(
                f"Integrity check failed for '{filepath}': expected "
                f"{expected_format}, found {probe.format}."
            )
            return False
        if probe.duration <= 0:
            log.warning(
                f"Integrity check failed for '{filepath}': No valid stream info."
            )
            return False
        return True
