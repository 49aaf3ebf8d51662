"""
Allocates and reclaims the per-job exclusive temporary directories.
"""

import asyncio
import logging
import os
import shutil
from pathlib import Path

from pathvalidate import sanitize_filename

from karaokify.exceptions import WorkspaceError

log = logging.getLogger(__name__)

# Marker written into every workspace so that `sweep` never deletes
# directories it did not create.
OWNER_MARKER = ".karaokify-workspace"


class WorkspaceManager:
    """
    Hands out one fresh directory per job under a common root and guarantees
    that releasing it is idempotent and never raises.
    """

    def __init__(self, root: Path, release_failure_callback=None):
        self.root = Path(root).expanduser()
        self._held: dict[str, Path] = {}
        self._release_failure_callback = release_failure_callback

    def acquire(self, job_id: str) -> Path:
        """
        Creates a fresh, empty workspace for a job.

        Raises:
            WorkspaceError: If the job already holds a workspace or the
            directory cannot be created.
        """
        if job_id in self._held:
            raise WorkspaceError(f"Job '{job_id}' already holds a workspace.")

        dirname = sanitize_filename(f"job-{job_id}", replacement_text="_")
        path = self.root / dirname
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            # exist_ok=False: a leftover directory with the same name is never reused.
            path.mkdir()
            (path / OWNER_MARKER).write_text(f"{job_id}\n{os.getpid()}\n")
        except OSError as e:
            raise WorkspaceError(f"Could not create workspace '{path}': {e}") from e

        self._held[job_id] = path
        log.debug(f"Acquired workspace [dim]{path}[/dim] for job {job_id}")
        return path

    def path_for(self, job_id: str) -> Path | None:
        return self._held.get(job_id)

    def active(self) -> dict[str, Path]:
        """Returns a snapshot of the currently held workspaces."""
        return dict(self._held)

    async def release(self, job_id: str) -> bool:
        """
        Recursively deletes a job's workspace. Safe to call more than once.

        Returns:
            True if the workspace is gone afterwards, False if deletion failed.
        """
        path = self._held.pop(job_id, None)
        if path is None:
            return True

        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(
                f"[yellow]Could not remove workspace {path} for job {job_id}:[/] {e}"
            )
            if self._release_failure_callback:
                self._release_failure_callback(job_id, path, e)
            return False

        log.debug(f"Released workspace [dim]{path}[/dim]")
        return True

    async def release_all(self) -> int:
        """Releases every workspace still held. Returns how many were released."""
        job_ids = list(self._held)
        for job_id in job_ids:
            await self.release(job_id)
        return len(job_ids)

    def sweep(self) -> int:
        """
        Removes stale workspaces left behind by a previous process that died
        without cleaning up. Workspaces held by this manager are kept.
        """
        if not self.root.is_dir():
            return 0

        held = set(self._held.values())
        removed = 0
        for entry in self.root.iterdir():
            if entry in held or not entry.is_dir():
                continue
            if not (entry / OWNER_MARKER).is_file():
                continue
            try:
                shutil.rmtree(entry)
                removed += 1
            except OSError as e:
                log.warning(f"[yellow]Could not remove stale workspace {entry}:[/] {e}")
        if removed:
            log.info(f"Removed {removed} stale workspace(s) from {self.root}")
        return removed
