"""
Moves finished artifacts out of a job's workspace into durable output storage.
"""

import asyncio
import logging
import shutil
from pathlib import Path

from karaokify.exceptions import DeliveryError
from karaokify.models.job import Artifact

log = logging.getLogger(__name__)


class ArtifactStore:
    """Publishes artifacts to `<output_root>/<job_id>/`."""

    def __init__(self, output_root: Path):
        self.output_root = Path(output_root).expanduser()

    def job_dir(self, job_id: str) -> Path:
        return self.output_root / job_id

    async def publish(self, job_id: str, artifacts: list[Artifact]) -> list[Artifact]:
        """
        Copies artifacts to the job's output directory and returns them with
        their published paths. A partial publish is rolled back.
        """
        if not artifacts:
            raise DeliveryError(f"Job {job_id} has no artifacts to publish.")

        target_dir = self.job_dir(job_id)
        published: list[Artifact] = []
        try:
            await asyncio.to_thread(target_dir.mkdir, parents=True, exist_ok=True)
            for artifact in artifacts:
                destination = target_dir / artifact.path.name
                await asyncio.to_thread(shutil.copy2, artifact.path, destination)
                size = (await asyncio.to_thread(destination.stat)).st_size
                if size != artifact.size:
                    raise DeliveryError(
                        f"Published copy of '{artifact.path.name}' is {size} bytes, "
                        f"expected {artifact.size}."
                    )
                published.append(
                    Artifact(
                        role=artifact.role,
                        path=destination,
                        format=artifact.format,
                        size=size,
                    )
                )
        except OSError as e:
            await self.discard(job_id)
            raise DeliveryError(f"Could not publish artifacts for {job_id}: {e}") from e
        except (DeliveryError, asyncio.CancelledError):
            await asyncio.shield(self.discard(job_id))
            raise

        log.debug(f"Published {len(published)} artifact(s) to [dim]{target_dir}[/dim]")
        return published

    async def discard(self, job_id: str) -> None:
        """Removes anything published for a job (used when hand-off fails)."""
        target_dir = self.job_dir(job_id)
        try:
            await asyncio.to_thread(shutil.rmtree, target_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(f"[yellow]Could not remove published artifacts {target_dir}:[/] {e}")
