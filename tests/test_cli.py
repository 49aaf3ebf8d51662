import configparser

import pytest
from typer.testing import CliRunner

from karaokify import __version__
from karaokify.cli.app import app
from karaokify.storage.workspace import OWNER_MARKER

runner = CliRunner()


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    path = tmp_path / "config"
    monkeypatch.setenv("KARAOKIFY_CONFIG_DIR", str(path))
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_writes_defaults(config_dir):
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0, result.output

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(config_dir / "config.ini")
    assert parser["DEFAULT"]["max_concurrent_separation_jobs"] == "1"


def test_init_refuses_to_overwrite_without_confirmation(config_dir):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["init"], input="n\n")
    assert result.exit_code != 0


def test_validate_reports_invalid_config(config_dir):
    config_dir.mkdir()
    (config_dir / "config.ini").write_text(
        "[DEFAULT]\nmax_concurrent_separation_jobs = 0\n"
    )
    result = runner.invoke(app, ["validate"])
    assert result.exit_code == 1
    assert "invalid" in result.output


def test_validate_accepts_defaults(config_dir):
    runner.invoke(app, ["init"])
    result = runner.invoke(app, ["validate"])
    assert result.exit_code == 0, result.output
    assert "Validated Settings" in result.output


def test_show_config_requires_file(config_dir):
    result = runner.invoke(app, ["--show-config"])
    assert result.exit_code == 1


def test_clean_removes_stale_workspaces(config_dir, tmp_path):
    workspace_root = tmp_path / "workspaces"
    stale = workspace_root / "job-old"
    stale.mkdir(parents=True)
    (stale / OWNER_MARKER).write_text("old\n")
    config_dir.mkdir()
    (config_dir / "config.ini").write_text(
        f"[DEFAULT]\nworkspace_root = {workspace_root}\n"
        f"output_root = {tmp_path / 'output'}\n"
    )

    result = runner.invoke(app, ["clean"])
    assert result.exit_code == 0, result.output
    assert not stale.exists()


def test_run_without_sources_fails(config_dir):
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 1


def test_oversized_local_file_is_never_read(tmp_path, monkeypatch):
    from pathlib import Path

    from karaokify.cli.app import _to_source_ref

    song = tmp_path / "song.wav"
    song.write_bytes(b"x" * 2048)

    def fail_read(self):
        raise AssertionError("file was read")

    monkeypatch.setattr(Path, "read_bytes", fail_read)
    with pytest.raises(ValueError, match="limit"):
        _to_source_ref(str(song), max_size=1024)


def test_small_local_file_becomes_inline_source(tmp_path):
    from karaokify.cli.app import _to_source_ref

    song = tmp_path / "song.wav"
    song.write_bytes(b"abc")
    source = _to_source_ref(str(song), max_size=1024)
    assert source.is_inline
    assert source.data == b"abc"


def test_run_skips_oversized_local_file(config_dir, tmp_path):
    song = tmp_path / "song.wav"
    song.write_bytes(b"x" * 4096)
    config_dir.mkdir()
    (config_dir / "config.ini").write_text(
        "[DEFAULT]\n"
        f"workspace_root = {tmp_path / 'workspaces'}\n"
        f"output_root = {tmp_path / 'output'}\n"
        "max_source_size_bytes = 1024\n"
    )

    result = runner.invoke(app, ["run", str(song)])
    assert result.exit_code == 1
    assert "Skipping" in result.output
