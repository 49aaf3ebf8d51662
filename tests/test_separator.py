import pytest
from conftest import engine_command, write_wav

from karaokify.exceptions import ErrorKind, SeparationError
from karaokify.media.separator import ENGINE_OUTPUT_DIR, STEMS_DIR, SeparationRunner


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "job"
    path.mkdir()
    return path


@pytest.fixture
def source(workspace):
    return write_wav(workspace / "source.wav")


@pytest.mark.asyncio
async def test_collects_stems_and_applies_aliases(workspace, source, make_config):
    captured = []
    runner = SeparationRunner(make_config())
    stems = await runner.run(source, workspace, on_output=captured.extend)

    assert sorted(s.role for s in stems) == ["music", "vocals"]
    for stem in stems:
        assert stem.path.parent == workspace / STEMS_DIR
        assert stem.path.suffix == ".wav"
        assert stem.path.stat().st_size > 0
    assert not (workspace / ENGINE_OUTPUT_DIR).exists()
    assert "fake engine: mode=ok" in captured


@pytest.mark.asyncio
async def test_expected_stems_are_enforced(workspace, source, make_config):
    runner = SeparationRunner(make_config(expected_stems=["vocals", "drums"]))
    with pytest.raises(SeparationError) as exc:
        await runner.run(source, workspace)
    assert exc.value.kind == ErrorKind.NO_OUTPUT_PRODUCED
    assert "drums" in str(exc.value)


@pytest.mark.asyncio
async def test_expected_stems_accept_engine_names(workspace, source, make_config):
    runner = SeparationRunner(make_config(expected_stems=["vocals", "no_vocals"]))
    stems = await runner.run(source, workspace)
    assert len(stems) == 2


@pytest.mark.asyncio
async def test_engine_crash(workspace, source, make_config):
    runner = SeparationRunner(make_config(separation_command=engine_command("crash")))
    with pytest.raises(SeparationError) as exc:
        await runner.run(source, workspace)
    assert exc.value.kind == ErrorKind.ENGINE_CRASH
    assert exc.value.exit_code == 3
    assert "model weights are corrupt" in str(exc.value)


@pytest.mark.asyncio
async def test_out_of_memory_is_recognized(workspace, source, make_config):
    runner = SeparationRunner(make_config(separation_command=engine_command("oom")))
    with pytest.raises(SeparationError) as exc:
        await runner.run(source, workspace)
    assert exc.value.kind == ErrorKind.OUT_OF_MEMORY


@pytest.mark.asyncio
async def test_no_output_produced(workspace, source, make_config):
    runner = SeparationRunner(make_config(separation_command=engine_command("empty")))
    with pytest.raises(SeparationError) as exc:
        await runner.run(source, workspace)
    assert exc.value.kind == ErrorKind.NO_OUTPUT_PRODUCED


@pytest.mark.asyncio
async def test_missing_engine_is_engine_crash(workspace, source, make_config):
    runner = SeparationRunner(
        make_config(separation_command=["/no/such/engine", "{input}", "{output_dir}"])
    )
    with pytest.raises(SeparationError) as exc:
        await runner.run(source, workspace)
    assert exc.value.kind == ErrorKind.ENGINE_CRASH


@pytest.mark.asyncio
async def test_timeout_kills_engine(workspace, source, make_config):
    runner = SeparationRunner(
        make_config(
            separation_command=engine_command("hang"),
            separation_timeout=0.5,
            termination_grace_period=0.2,
        )
    )
    with pytest.raises(SeparationError) as exc:
        await runner.run(source, workspace)
    assert exc.value.kind == ErrorKind.TIMEOUT


def test_oom_heuristics():
    assert SeparationRunner._looks_like_oom(137, [])
    assert SeparationRunner._looks_like_oom(-9, [])
    assert SeparationRunner._looks_like_oom(1, ["torch: CUDA out of memory"])
    assert SeparationRunner._looks_like_oom(1, ["MemoryError"])
    assert not SeparationRunner._looks_like_oom(1, ["zoom room"])
