import asyncio
import sys
import time

import pytest
from conftest import FIXTURES, pid_running

from karaokify.media.process import ManagedProcess, render_command


def test_render_command_fills_known_placeholders_only():
    argv = render_command(
        ["engine", "--out", "{output_dir}", "--filename", "{stem}.{ext}", "{input}"],
        input="/tmp/a.wav",
        output_dir="/tmp/out",
    )
    assert argv == [
        "engine",
        "--out",
        "/tmp/out",
        "--filename",
        "{stem}.{ext}",
        "/tmp/a.wav",
    ]


def test_empty_command_is_rejected():
    with pytest.raises(ValueError):
        ManagedProcess([])


@pytest.mark.asyncio
async def test_captures_output_and_exit_code():
    argv = [sys.executable, "-c", "print('one'); print('two\\rthree'); raise SystemExit(4)"]
    async with ManagedProcess(argv, name="printer") as proc:
        returncode = await proc.wait()

    assert returncode == 4
    assert proc.output_lines == ["one", "two", "three"]
    assert proc.output_tail(1) == ["three"]
    assert proc.killed is False


@pytest.mark.asyncio
async def test_missing_executable_raises_oserror():
    with pytest.raises(OSError):
        async with ManagedProcess(["/definitely/not/a/binary"]):
            pass


@pytest.mark.asyncio
async def test_cancellation_kills_process_group_within_grace(tmp_path):
    pid_file = tmp_path / "engine.pid"
    argv = [
        sys.executable,
        str(FIXTURES / "fake_engine.py"),
        "hang",
        "in",
        str(tmp_path),
        "--pid-file",
        str(pid_file),
    ]
    proc = ManagedProcess(argv, name="engine", grace_period=0.5)

    async def run():
        async with proc:
            await proc.wait()

    task = asyncio.create_task(run())
    child_file = tmp_path / "engine.pid.child"
    for _ in range(100):
        if child_file.exists() and child_file.read_text():
            break
        await asyncio.sleep(0.05)
    child_pid = int(child_file.read_text())

    started = time.monotonic()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    elapsed = time.monotonic() - started

    assert proc.killed is True
    assert not pid_running(proc.pid)
    assert not pid_running(child_pid)
    # SIGTERM ignored: grace period, then SIGKILL and the group sweep.
    assert elapsed < 0.5 + 2.0


@pytest.mark.asyncio
async def test_close_is_idempotent():
    proc = ManagedProcess([sys.executable, "-c", "pass"])
    await proc.start()
    await proc.wait()
    await proc.close()
    await proc.close()
    assert proc.returncode == 0


@pytest.mark.asyncio
async def test_without_process_groups_falls_back_to_kill(monkeypatch):
    def no_groups(pid, sig):
        raise AssertionError("process groups are unavailable")

    monkeypatch.setattr("karaokify.media.process._IS_POSIX", False)
    monkeypatch.setattr("karaokify.media.process.os.killpg", no_groups)
    argv = [
        sys.executable,
        "-c",
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); time.sleep(30)",
    ]
    proc = ManagedProcess(argv, name="stubborn", grace_period=0.3)
    await proc.start()
    for _ in range(100):
        if proc.output_lines:
            break
        await asyncio.sleep(0.05)

    await proc.close("cancelled")

    assert proc.killed is True
    assert proc.returncode is not None
    assert not pid_running(proc.pid)
