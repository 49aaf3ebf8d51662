import configparser

import pytest
from pydantic import ValidationError

from karaokify.exceptions import ConfigurationError
from karaokify.models.config import DEFAULT_SEPARATION_COMMAND, PipelineConfig
from karaokify.storage.config_manager import ConfigManager


def test_defaults_are_valid():
    config = PipelineConfig()
    assert config.max_concurrent_separation_jobs == 1
    assert config.separation_command == DEFAULT_SEPARATION_COMMAND
    assert config.stem_aliases == {"no_vocals": "music"}
    assert "config_path" not in PipelineConfig.get_ini_keys()


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_concurrent_separation_jobs": 0},
        {"max_queue_length": -1},
        {"separation_timeout": 0},
        {"max_source_size_bytes": 0},
        {"allowed_formats": ["mp3", "exe"]},
        {"allowed_formats": []},
        {"output_format": "avi"},
        {"separation_command": ["demucs", "{input}"]},
        {"transcode_command": []},
    ],
)
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ValidationError):
        PipelineConfig(**overrides)


def test_formats_are_normalized():
    config = PipelineConfig(allowed_formats=[".MP3", "Flac"], output_format=".OGG")
    assert config.allowed_formats == ["mp3", "flac"]
    assert config.output_format == "ogg"


def test_output_root_inside_workspace_root_is_rejected(tmp_path):
    with pytest.raises(ValidationError):
        PipelineConfig(
            workspace_root=str(tmp_path), output_root=str(tmp_path / "out")
        )


def test_missing_file_means_defaults(tmp_path):
    config = ConfigManager(tmp_path / "config.ini").load_config()
    assert config.max_queue_length == PipelineConfig().max_queue_length
    assert config.config_path == str(tmp_path)


def test_save_and_load_round_trip(tmp_path):
    path = tmp_path / "config.ini"
    manager = ConfigManager(path)
    saved = manager.save_new_config(
        {
            "max_concurrent_separation_jobs": 2,
            "separation_command": ["my engine", "--out", "{output_dir}", "{input}"],
            "stem_aliases": {"no_vocals": "music", "accompaniment": "music"},
            "expected_stems": ["vocals", "music"],
            "include_original": True,
            "quiet_vocals_gain_db": -12.5,
        }
    )

    loaded = ConfigManager(path).load_config()
    assert loaded.max_concurrent_separation_jobs == 2
    assert loaded.separation_command == saved.separation_command
    assert loaded.separation_command[0] == "my engine"
    assert loaded.stem_aliases == {"no_vocals": "music", "accompaniment": "music"}
    assert loaded.expected_stems == ["vocals", "music"]
    assert loaded.include_original is True
    assert loaded.quiet_vocals_gain_db == -12.5


def test_cli_options_override_file(tmp_path):
    path = tmp_path / "config.ini"
    ConfigManager(path).save_new_config({"max_queue_length": 3})
    config = ConfigManager(path).load_config({"max_queue_length": 7})
    assert config.max_queue_length == 7


def test_missing_keys_are_migrated(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nmax_queue_length = 5\n")

    config = ConfigManager(path).load_config()
    assert config.max_queue_length == 5

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)
    assert set(parser["DEFAULT"]) == PipelineConfig.get_ini_keys()
    assert parser["DEFAULT"]["max_queue_length"] == "5"


def test_invalid_value_raises_configuration_error(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nmax_queue_length = lots\n")
    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()


def test_validation_failure_raises_configuration_error(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nmax_concurrent_separation_jobs = 0\n")
    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()


def test_bad_mapping_raises_configuration_error(tmp_path):
    path = tmp_path / "config.ini"
    path.write_text("[DEFAULT]\nstem_aliases = no_vocals=music\n")
    with pytest.raises(ConfigurationError):
        ConfigManager(path).load_config()
