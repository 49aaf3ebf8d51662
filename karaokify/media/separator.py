"""
Drives the external source separation engine for one job.
"""

import asyncio
import logging
import os
import shutil
from collections.abc import Callable
from pathlib import Path

from karaokify.exceptions import ErrorKind, SeparationError
from karaokify.media.process import ManagedProcess, render_command
from karaokify.models.config import SUPPORTED_FORMATS, PipelineConfig
from karaokify.models.job import Stem
from karaokify.utils.structured_logger import ProcessLogger

log = logging.getLogger(__name__)

ENGINE_OUTPUT_DIR = "engine-output"
STEMS_DIR = "stems"

# Exit codes of a process killed by SIGKILL, which on Linux usually means the
# kernel OOM killer.
OOM_EXIT_CODES = frozenset({-9, 137})
OOM_MARKERS = (
    "out of memory",
    "memoryerror",
    "cannot allocate memory",
    "std::bad_alloc",
)


class SeparationRunner:
    """
    Spawns the separation engine, enforces the stage deadline and collects the
    stems it wrote into `<workspace>/stems/<role>.<ext>`.

    The number and names of stems depend on the engine's model, so they are
    discovered from the output directory; `expected_stems` can make specific
    roles mandatory and `stem_aliases` renames engine names to delivery roles.
    """

    def __init__(
        self, config: PipelineConfig, process_logger: ProcessLogger | None = None
    ):
        self.config = config
        self.process_logger = process_logger

    def build_command(self, input_path: Path, output_dir: Path) -> list[str]:
        return render_command(
            self.config.separation_command,
            input=input_path,
            output_dir=output_dir,
            model=self.config.separation_model,
        )

    async def run(
        self,
        input_path: Path,
        workspace: Path,
        on_output: Callable[[list[str]], None] | None = None,
    ) -> list[Stem]:
        """
        Separates `input_path` into stems.

        Args:
            input_path: The downloaded source audio.
            workspace: The job's workspace directory.
            on_output: Receives the captured engine output once the process is
                gone, whatever the outcome.

        Raises:
            SeparationError: ENGINE_CRASH, TIMEOUT, OUT_OF_MEMORY or NO_OUTPUT_PRODUCED.
        """
        engine_dir = workspace / ENGINE_OUTPUT_DIR
        engine_dir.mkdir(exist_ok=True)

        proc = ManagedProcess(
            self.build_command(input_path, engine_dir),
            name="separation",
            grace_period=self.config.termination_grace_period,
            process_logger=self.process_logger,
        )
        deadline = asyncio.timeout(self.config.separation_timeout)
        try:
            async with deadline:
                async with proc:
                    returncode = await proc.wait()
        except TimeoutError as e:
            if deadline.expired():
                raise SeparationError(
                    f"Separation did not finish within "
                    f"{self.config.separation_timeout:g}s.",
                    ErrorKind.TIMEOUT,
                ) from e
            raise
        except OSError as e:
            raise SeparationError(
                f"Could not start separation engine '{proc.argv[0]}': {e}",
                ErrorKind.ENGINE_CRASH,
            ) from e
        finally:
            if on_output:
                on_output(proc.output_lines)

        if returncode != 0:
            tail = proc.output_tail(20)
            if self._looks_like_oom(returncode, tail):
                raise SeparationError(
                    "Separation engine ran out of memory.",
                    ErrorKind.OUT_OF_MEMORY,
                    exit_code=returncode,
                )
            detail = f": {tail[-1]}" if tail else ""
            raise SeparationError(
                f"Separation engine exited with code {returncode}{detail}",
                ErrorKind.ENGINE_CRASH,
                exit_code=returncode,
            )

        stems = await asyncio.to_thread(
            self._collect_stems, engine_dir, workspace / STEMS_DIR
        )
        log.debug(
            f"Separation produced {len(stems)} stem(s): "
            f"{', '.join(s.role for s in stems)}"
        )
        return stems

    @staticmethod
    def _looks_like_oom(returncode: int, tail: list[str]) -> bool:
        if returncode in OOM_EXIT_CODES:
            return True
        text = "\n".join(tail).lower()
        return any(marker in text for marker in OOM_MARKERS)

    def _collect_stems(self, engine_dir: Path, stems_dir: Path) -> list[Stem]:
        """Moves every non-empty audio file the engine wrote into `stems_dir`."""
        candidates = sorted(
            p
            for p in engine_dir.rglob("*")
            if p.is_file()
            and p.suffix.lower().lstrip(".") in SUPPORTED_FORMATS
            and p.stat().st_size > 0
        )
        if not candidates:
            raise SeparationError(
                "Separation engine exited successfully but wrote no stems.",
                ErrorKind.NO_OUTPUT_PRODUCED,
            )

        stems_dir.mkdir(exist_ok=True)
        stems: dict[str, Stem] = {}
        for path in candidates:
            role = self.config.stem_aliases.get(path.stem, path.stem)
            if role in stems:
                log.warning(
                    f"[yellow]Ignoring duplicate '{role}' stem at {path.name}.[/yellow]"
                )
                continue
            target = stems_dir / f"{role}{path.suffix.lower()}"
            os.replace(path, target)
            stems[role] = Stem(role=role, path=target)

        missing = [
            name
            for name in self.config.expected_stems
            if name not in stems
            and self.config.stem_aliases.get(name, name) not in stems
        ]
        if missing:
            raise SeparationError(
                f"Separation engine did not produce stem(s): {', '.join(missing)}.",
                ErrorKind.NO_OUTPUT_PRODUCED,
            )

        shutil.rmtree(engine_dir, ignore_errors=True)
        return list(stems.values())
