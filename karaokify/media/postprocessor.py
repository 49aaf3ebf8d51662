"""
Turns separated stems into deliverable artifacts with the external transcoder
and validates every file it produces.
"""

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path

from karaokify.exceptions import (
    ErrorKind,
    KaraokifyError,
    PostProcessError,
    StageTimeoutError,
)
from karaokify.media.integrity import FileIntegrityChecker
from karaokify.media.process import ManagedProcess, render_command
from karaokify.models.config import PipelineConfig
from karaokify.models.job import Artifact, Stem
from karaokify.utils.structured_logger import ProcessLogger

log = logging.getLogger(__name__)

ARTIFACTS_DIR = "artifacts"
QUIET_VOCALS_ROLE = "music-with-quiet-vocals"
ORIGINAL_ROLE = "original"


class Postprocessor:
    """
    Transcodes each stem to `<workspace>/artifacts/<job_id>.<role>.<ext>`.

    Stem artifacts are mandatory: any failure fails the job. The quiet-vocals
    mix and the re-encoded original are extras and are skipped with a warning
    when they cannot be produced.
    """

    def __init__(
        self, config: PipelineConfig, process_logger: ProcessLogger | None = None
    ):
        self.config = config
        self.process_logger = process_logger

    async def run(
        self,
        job_id: str,
        stems: list[Stem],
        workspace: Path,
        source_path: Path | None = None,
        on_output: Callable[[list[str]], None] | None = None,
    ) -> list[Artifact]:
        """
        Produces the job's artifacts.

        Raises:
            PostProcessError: TRANSCODE_FAILED, EMPTY_OUTPUT or INVALID_FORMAT.
            StageTimeoutError: If the whole stage exceeds `postprocess_timeout`.
        """
        if not stems:
            raise PostProcessError("There are no stems to post-process.")

        artifact_dir = workspace / ARTIFACTS_DIR
        artifact_dir.mkdir(exist_ok=True)

        deadline = asyncio.timeout(self.config.postprocess_timeout)
        try:
            async with deadline:
                artifacts = []
                for stem in stems:
                    artifacts.append(
                        await self._transcode(job_id, stem, artifact_dir, on_output)
                    )
                artifacts.extend(
                    await self._extras(job_id, stems, artifact_dir, source_path, on_output)
                )
        except TimeoutError as e:
            if deadline.expired():
                raise StageTimeoutError(
                    "postprocess", self.config.postprocess_timeout
                ) from e
            raise

        log.debug(f"Post-processing produced {len(artifacts)} artifact(s) for {job_id}")
        return artifacts

    def artifact_path(self, artifact_dir: Path, job_id: str, role: str) -> Path:
        return artifact_dir / f"{job_id}.{role}.{self.config.output_format}"

    async def _transcode(
        self,
        job_id: str,
        stem: Stem,
        artifact_dir: Path,
        on_output: Callable[[list[str]], None] | None,
    ) -> Artifact:
        output = self.artifact_path(artifact_dir, job_id, stem.role)
        argv = render_command(
            self.config.transcode_command,
            input=stem.path,
            output=output,
            bitrate=self.config.output_bitrate,
            format=self.config.output_format,
        )
        await self._execute(argv, f"transcode:{stem.role}", on_output)
        return await self._validate(stem.role, output)

    async def _execute(
        self,
        argv: list[str],
        name: str,
        on_output: Callable[[list[str]], None] | None,
    ) -> None:
        proc = ManagedProcess(
            argv,
            name=name,
            grace_period=self.config.termination_grace_period,
            process_logger=self.process_logger,
        )
        try:
            async with proc:
                returncode = await proc.wait()
        except OSError as e:
            raise PostProcessError(
                f"Could not start transcoder '{proc.argv[0]}': {e}"
            ) from e
        finally:
            if on_output:
                on_output(proc.output_lines)

        if returncode != 0:
            tail = proc.output_tail(5)
            detail = f": {tail[-1]}" if tail else ""
            raise PostProcessError(
                f"{name} exited with code {returncode}{detail}",
                ErrorKind.TRANSCODE_FAILED,
            )

    async def _validate(self, role: str, output: Path) -> Artifact:
        """Checks that the transcoder wrote a non-empty, recognizable container."""
        try:
            size = (await asyncio.to_thread(output.stat)).st_size
        except FileNotFoundError:
            size = 0
        if size == 0:
            raise PostProcessError(
                f"Transcoder produced no output for '{role}'.", ErrorKind.EMPTY_OUTPUT
            )

        valid = await asyncio.to_thread(
            FileIntegrityChecker.check, output, self.config.output_format
        )
        if not valid:
            raise PostProcessError(
                f"Output for '{role}' is not a valid {self.config.output_format} file.",
                ErrorKind.INVALID_FORMAT,
            )
        return Artifact(
            role=role, path=output, format=self.config.output_format, size=size
        )

    async def _extras(
        self,
        job_id: str,
        stems: list[Stem],
        artifact_dir: Path,
        source_path: Path | None,
        on_output: Callable[[list[str]], None] | None,
    ) -> list[Artifact]:
        extras: list[Artifact] = []
        by_role = {stem.role: stem for stem in stems}

        if self.config.quiet_vocals_mix:
            vocals, music = by_role.get("vocals"), by_role.get("music")
            if vocals and music:
                output = self.artifact_path(artifact_dir, job_id, QUIET_VOCALS_ROLE)
                argv = render_command(
                    self.config.mix_command,
                    vocals=vocals.path,
                    music=music.path,
                    output=output,
                    gain_db=f"{self.config.quiet_vocals_gain_db:g}",
                    bitrate=self.config.output_bitrate,
                    format=self.config.output_format,
                )
                artifact = await self._best_effort(
                    QUIET_VOCALS_ROLE, output, argv, on_output
                )
                if artifact:
                    extras.append(artifact)
            else:
                log.debug("Skipping quiet-vocals mix: needs 'vocals' and 'music' stems.")

        if self.config.include_original and source_path is not None:
            output = self.artifact_path(artifact_dir, job_id, ORIGINAL_ROLE)
            argv = render_command(
                self.config.transcode_command,
                input=source_path,
                output=output,
                bitrate=self.config.output_bitrate,
                format=self.config.output_format,
            )
            artifact = await self._best_effort(ORIGINAL_ROLE, output, argv, on_output)
            if artifact:
                extras.append(artifact)

        return extras

    async def _best_effort(
        self,
        role: str,
        output: Path,
        argv: list[str],
        on_output: Callable[[list[str]], None] | None,
    ) -> Artifact | None:
        try:
            await self._execute(argv, role, on_output)
            return await self._validate(role, output)
        except KaraokifyError as e:
            log.warning(f"[yellow]Skipping optional '{role}' artifact:[/yellow] {e}")
            output.unlink(missing_ok=True)
            return None
