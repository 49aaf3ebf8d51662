"""
An explicit handle around an external process that owns spawn, wait, signal
and forced kill, so that no process outlives the `async with` block that
started it.
"""

import asyncio
import logging
import os
import re
import signal
import time
from collections import deque
from typing import Optional

from karaokify.utils.structured_logger import ProcessLogger

log = logging.getLogger(__name__)

_IS_POSIX = os.name == "posix"
_LINE_SPLIT = re.compile(rb"[\r\n]")


def render_command(template: list[str], **values) -> list[str]:
    """
    Fills `{name}` placeholders in an argv template. Placeholders without a
    value (such as an engine's own `{stem}`) are left untouched.
    """
    argv = []
    for arg in template:
        for key, value in values.items():
            arg = arg.replace("{" + key + "}", str(value))
        argv.append(arg)
    return argv


class ManagedProcess:
    """
    Runs one external command in its own process group.

    On leaving the context (normal return, exception, timeout or task
    cancellation) the process is sent SIGTERM, then SIGKILL once the grace
    period has elapsed, and any remaining members of its process group are
    killed and waited for.

    Usage:
        async with ManagedProcess(["demucs", "song.wav"], name="demucs") as proc:
            returncode = await proc.wait()
        tail = proc.output_tail(20)
    """

    def __init__(
        self,
        argv: list[str],
        name: str | None = None,
        grace_period: float = 5.0,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        max_output_lines: int = 200,
        process_logger: ProcessLogger | None = None,
    ):
        if not argv:
            raise ValueError("Cannot run an empty command.")
        self.argv = [str(a) for a in argv]
        self.name = name or os.path.basename(self.argv[0])
        self.grace_period = grace_period
        self.cwd = cwd
        self.env = env
        self.process_logger = process_logger

        self._process: Optional[asyncio.subprocess.Process] = None
        self._output: deque[str] = deque(maxlen=max_output_lines)
        self._reader: Optional[asyncio.Task] = None
        self._started_at = 0.0
        self._closed = False
        self.killed = False

    # ------------------------
    # Introspection
    # ------------------------
    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def output_lines(self) -> list[str]:
        return list(self._output)

    def output_tail(self, count: int = 20) -> list[str]:
        return list(self._output)[-count:]

    # ------------------------
    # Lifecycle
    # ------------------------
    async def __aenter__(self) -> "ManagedProcess":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            reason = "exit"
        elif issubclass(exc_type, asyncio.CancelledError):
            reason = "cancelled"
        else:
            reason = exc_type.__name__
        await self.close(reason)
        return False

    async def start(self) -> None:
        """
        Spawns the process.

        Raises:
            OSError: If the executable cannot be found or started.
        """
        if self._process is not None:
            raise RuntimeError(f"Process '{self.name}' was already started.")

        self._process = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self.cwd,
            env=self.env,
            start_new_session=_IS_POSIX,
        )
        self._started_at = time.monotonic()
        self._reader = asyncio.create_task(self._pump_output())
        log.debug(f"Spawned {self.name} (pid {self._process.pid})")
        if self.process_logger:
            self.process_logger.process_spawned(self.name, self._process.pid, self.argv)

    async def wait(self) -> int:
        """Waits for the process to exit and returns its exit code."""
        if self._process is None:
            raise RuntimeError(f"Process '{self.name}' was never started.")
        returncode = await self._process.wait()
        if self.process_logger:
            self.process_logger.process_exited(
                self.name,
                self._process.pid,
                returncode,
                time.monotonic() - self._started_at,
            )
        return returncode

    async def close(self, reason: str = "exit") -> None:
        """
        Ensures the process and every member of its group have exited.
        Safe to call more than once.
        """
        if self._process is None or self._closed:
            return
        self._closed = True

        try:
            if self._process.returncode is None:
                await self._terminate(reason)
            await self._sweep_group()
            await self._drain_output()
        except asyncio.CancelledError:
            # Cancelled again while cleaning up: do not leave the group behind.
            self._signal(force=True)
            raise

    # ------------------------
    # Signalling
    # ------------------------
    def _signal(self, force: bool = False) -> bool:
        """
        Sends SIGTERM (or SIGKILL when `force`) to the whole process group.
        Without process groups only the process itself is terminated or killed.
        Returns False if it is gone.
        """
        if self._process is None:
            return False
        try:
            if _IS_POSIX:
                os.killpg(self._process.pid, signal.SIGKILL if force else signal.SIGTERM)
            elif force:
                self._process.kill()
            else:
                self._process.terminate()
        except (ProcessLookupError, PermissionError):
            return False
        return True

    async def _terminate(self, reason: str) -> None:
        """SIGTERM, wait up to the grace period, then SIGKILL."""
        self.killed = True
        log.debug(f"Terminating {self.name} (pid {self._process.pid}): {reason}")
        if self.process_logger:
            self.process_logger.process_killed(
                self.name, self._process.pid, "SIGTERM", reason
            )
        self._signal()
        try:
            await asyncio.wait_for(self._process.wait(), self.grace_period)
            return
        except asyncio.TimeoutError:
            pass

        log.warning(
            f"[yellow]{self.name} (pid {self._process.pid}) ignored SIGTERM for "
            f"{self.grace_period:g}s, sending SIGKILL.[/yellow]"
        )
        if self.process_logger:
            self.process_logger.process_killed(
                self.name, self._process.pid, "SIGKILL", reason
            )
        self._signal(force=True)
        await self._process.wait()

    async def _sweep_group(self) -> None:
        """Kills children that outlived the group leader and confirms they are gone."""
        if not _IS_POSIX:
            return
        if not self._signal(force=True):
            return

        deadline = time.monotonic() + self.grace_period
        while time.monotonic() < deadline:
            try:
                os.killpg(self._process.pid, 0)
            except (ProcessLookupError, PermissionError):
                return
            await asyncio.sleep(0.05)
        log.warning(
            f"[yellow]Process group of {self.name} (pid {self._process.pid}) still "
            f"reported after SIGKILL; remaining members are unreaped zombies.[/yellow]"
        )

    # ------------------------
    # Output capture
    # ------------------------
    async def _pump_output(self) -> None:
        stream = self._process.stdout
        buffer = b""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            buffer += chunk
            *lines, buffer = _LINE_SPLIT.split(buffer)
            for line in lines:
                self._record(line)
        if buffer:
            self._record(buffer)

    def _record(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        self._output.append(line)
        log.debug(f"[dim]{self.name}:[/dim] {line}")

    async def _drain_output(self) -> None:
        if self._reader is None:
            return
        try:
            await asyncio.wait_for(self._reader, timeout=1.0)
        except asyncio.TimeoutError:
            self._reader.cancel()
            log.debug(f"Output pipe of {self.name} did not close; stopped reading.")
