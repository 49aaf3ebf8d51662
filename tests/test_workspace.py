import shutil

import pytest

from karaokify.exceptions import WorkspaceError
from karaokify.storage.workspace import OWNER_MARKER, WorkspaceManager


def test_acquire_creates_fresh_directory(tmp_path):
    manager = WorkspaceManager(tmp_path / "ws")
    path = manager.acquire("job1")

    assert path.is_dir()
    assert path.parent == tmp_path / "ws"
    assert (path / OWNER_MARKER).is_file()
    assert manager.path_for("job1") == path
    assert manager.active() == {"job1": path}


def test_acquire_twice_for_same_job_fails(tmp_path):
    manager = WorkspaceManager(tmp_path)
    manager.acquire("job1")
    with pytest.raises(WorkspaceError):
        manager.acquire("job1")


def test_leftover_directory_is_never_reused(tmp_path):
    manager = WorkspaceManager(tmp_path)
    path = manager.acquire("job1")
    # Forget about it without deleting, as a crashed process would.
    manager._held.clear()
    assert path.exists()
    with pytest.raises(WorkspaceError):
        manager.acquire("job1")


@pytest.mark.asyncio
async def test_release_is_recursive_and_idempotent(tmp_path):
    manager = WorkspaceManager(tmp_path)
    path = manager.acquire("job1")
    (path / "nested" / "deeper").mkdir(parents=True)
    (path / "nested" / "deeper" / "file.wav").write_bytes(b"x" * 100)

    assert await manager.release("job1") is True
    assert not path.exists()
    assert await manager.release("job1") is True
    assert manager.active() == {}


@pytest.mark.asyncio
async def test_release_of_vanished_directory_succeeds(tmp_path):
    manager = WorkspaceManager(tmp_path)
    path = manager.acquire("job1")
    shutil.rmtree(path)
    assert await manager.release("job1") is True


@pytest.mark.asyncio
async def test_release_failure_is_reported_not_raised(tmp_path, monkeypatch):
    failures = []
    manager = WorkspaceManager(
        tmp_path, release_failure_callback=lambda *args: failures.append(args)
    )
    manager.acquire("job1")

    def refuse(path):
        raise PermissionError("read-only")

    monkeypatch.setattr("karaokify.storage.workspace.shutil.rmtree", refuse)
    assert await manager.release("job1") is False
    assert len(failures) == 1
    assert failures[0][0] == "job1"


@pytest.mark.asyncio
async def test_release_all(tmp_path):
    manager = WorkspaceManager(tmp_path)
    paths = [manager.acquire(f"job{i}") for i in range(3)]
    assert await manager.release_all() == 3
    assert not any(p.exists() for p in paths)


def test_sweep_removes_only_marked_unheld_directories(tmp_path):
    stale = WorkspaceManager(tmp_path)
    stale_path = stale.acquire("old")

    unrelated = tmp_path / "not-ours"
    unrelated.mkdir()

    manager = WorkspaceManager(tmp_path)
    held = manager.acquire("current")

    assert manager.sweep() == 1
    assert not stale_path.exists()
    assert unrelated.exists()
    assert held.exists()


def test_sweep_without_root(tmp_path):
    assert WorkspaceManager(tmp_path / "missing").sweep() == 0
