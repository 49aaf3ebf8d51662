import pytest

from karaokify.exceptions import DeliveryError
from karaokify.models.job import Artifact
from karaokify.storage.artifacts import ArtifactStore


def make_artifact(path, role, content=b"audio-bytes"):
    path.write_bytes(content)
    return Artifact(role=role, path=path, format="wav", size=len(content))


@pytest.mark.asyncio
async def test_publish_copies_into_job_directory(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    artifacts = [
        make_artifact(workspace / "job1.vocals.wav", "vocals"),
        make_artifact(workspace / "job1.music.wav", "music", b"other"),
    ]
    store = ArtifactStore(tmp_path / "out")

    published = await store.publish("job1", artifacts)

    assert [a.role for a in published] == ["vocals", "music"]
    for original, copy in zip(artifacts, published):
        assert copy.path == tmp_path / "out" / "job1" / original.path.name
        assert copy.path.read_bytes() == original.path.read_bytes()
        assert copy.size == original.size


@pytest.mark.asyncio
async def test_publish_rolls_back_on_failure(tmp_path):
    workspace = tmp_path / "ws"
    workspace.mkdir()
    good = make_artifact(workspace / "a.wav", "vocals")
    missing = Artifact(role="music", path=workspace / "gone.wav", format="wav", size=5)
    store = ArtifactStore(tmp_path / "out")

    with pytest.raises(DeliveryError):
        await store.publish("job1", [good, missing])
    assert not store.job_dir("job1").exists()


@pytest.mark.asyncio
async def test_publish_rejects_size_mismatch(tmp_path):
    path = tmp_path / "a.wav"
    path.write_bytes(b"12345")
    wrong = Artifact(role="vocals", path=path, format="wav", size=99)
    store = ArtifactStore(tmp_path / "out")

    with pytest.raises(DeliveryError):
        await store.publish("job1", [wrong])
    assert not store.job_dir("job1").exists()


@pytest.mark.asyncio
async def test_publish_nothing_is_an_error(tmp_path):
    with pytest.raises(DeliveryError):
        await ArtifactStore(tmp_path).publish("job1", [])


@pytest.mark.asyncio
async def test_discard_missing_directory_is_quiet(tmp_path):
    await ArtifactStore(tmp_path).discard("never-published")
