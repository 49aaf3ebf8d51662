"""
Media handling: downloading sources, running external processes and
validating audio files.
"""

from .downloader import Downloader, HttpFetcher, close_connection_pool
from .integrity import AudioProbe, FileIntegrityChecker
from .postprocessor import Postprocessor
from .process import ManagedProcess, render_command
from .separator import SeparationRunner

__all__ = [
    "AudioProbe",
    "Downloader",
    "FileIntegrityChecker",
    "HttpFetcher",
    "ManagedProcess",
    "Postprocessor",
    "SeparationRunner",
    "close_connection_pool",
    "render_command",
]
