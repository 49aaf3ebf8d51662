"""
Manages loading, validation, and migration of the INI configuration file.
"""

import configparser
import logging
import shlex
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from karaokify.exceptions import ConfigurationError
from karaokify.models.config import PipelineConfig

log = logging.getLogger(__name__)

LIST_KEYS = {"allowed_formats", "expected_stems"}
COMMAND_KEYS = {"separation_command", "transcode_command", "mix_command"}
MAPPING_KEYS = {"stem_aliases"}
BOOL_KEYS = {"quiet_vocals_mix", "include_original"}
INT_KEYS = {
    "max_concurrent_separation_jobs",
    "max_concurrent_downloads",
    "max_concurrent_postprocess",
    "max_queue_length",
    "max_source_size_bytes",
    "download_retries",
}
FLOAT_KEYS = {
    "download_timeout",
    "separation_timeout",
    "postprocess_timeout",
    "termination_grace_period",
    "max_source_duration_seconds",
    "retry_base_delay",
    "quiet_vocals_gain_db",
}


def _encode_value(key: str, value: Any) -> str:
    """Renders a config value the way it is stored in the INI file."""
    if key in COMMAND_KEYS:
        return shlex.join(value)
    if key in MAPPING_KEYS:
        return ",".join(f"{k}:{v}" for k, v in value.items())
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(map(str, value))
    return str(value)


def _parse_mapping(raw: str) -> dict[str, str]:
    mapping = {}
    for pair in raw.split(","):
        if not pair.strip():
            continue
        if ":" not in pair:
            raise ConfigurationError(f"Invalid mapping entry '{pair}', expected 'a:b'.")
        source, target = pair.split(":", 1)
        mapping[source.strip()] = target.strip()
    return mapping


class ConfigManager:
    """Handles all operations related to the application's INI config file."""

    def __init__(self, config_file_path: Path):
        self.config_file_path = config_file_path
        self._parser = configparser.ConfigParser(interpolation=None)

    def load_config(self, cli_options: dict[str, Any] | None = None) -> PipelineConfig:
        """
        Loads configuration from the INI file, applies CLI overrides, and validates it.

        A missing file is not an error: defaults are used.

        Args:
            cli_options: A dictionary of options provided via the command line.

        Returns:
            A validated PipelineConfig object.

        Raises:
            ConfigurationError: If the config file is invalid or validation fails.
        """
        config_from_file: dict[str, Any] = {}
        if self.config_file_path.is_file():
            try:
                self._parser.read(self.config_file_path, encoding="utf-8")
            except configparser.Error as e:
                raise ConfigurationError(f"Error parsing configuration file: {e}") from e

            if self._migrate_if_needed():
                log.info(
                    "[yellow]Configuration file was updated with new default values."
                    "[/yellow]"
                )
            config_from_file = self._get_config_as_dict()

        if cli_options:
            config_from_file.update(cli_options)

        try:
            config_dir = self.config_file_path.parent
            return PipelineConfig(**config_from_file, config_path=str(config_dir))
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

    def save_new_config(self, settings: dict[str, Any] | None = None) -> PipelineConfig:
        """
        Creates and saves a new configuration file from defaults plus `settings`.
        """
        settings = settings or {}
        try:
            config = PipelineConfig(**settings)
        except ValidationError as e:
            raise ConfigurationError(f"Configuration validation failed:\n{e}") from e

        parser = configparser.ConfigParser(interpolation=None)
        parser["DEFAULT"] = {
            key: _encode_value(key, getattr(config, key))
            for key in sorted(PipelineConfig.get_ini_keys())
        }

        try:
            self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file_path, "w", encoding="utf-8") as configfile:
                parser.write(configfile)
        except OSError as e:
            raise ConfigurationError(f"Failed to save configuration file: {e}") from e
        return config

    def _get_config_as_dict(self) -> dict[str, Any]:
        """Reads the 'DEFAULT' section of the INI file into a dictionary."""
        section = self._parser["DEFAULT"]
        known = PipelineConfig.get_ini_keys()
        result: dict[str, Any] = {}

        for key, raw in section.items():
            if key not in known:
                log.warning(f"[yellow]Ignoring unknown config key '{key}'.[/yellow]")
                continue
            try:
                if key in COMMAND_KEYS:
                    result[key] = shlex.split(raw)
                elif key in MAPPING_KEYS:
                    result[key] = _parse_mapping(raw)
                elif key in LIST_KEYS:
                    result[key] = [s.strip() for s in raw.split(",") if s.strip()]
                elif key in BOOL_KEYS:
                    result[key] = section.getboolean(key)
                elif key in INT_KEYS:
                    result[key] = section.getint(key)
                elif key in FLOAT_KEYS:
                    result[key] = section.getfloat(key)
                else:
                    result[key] = raw
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for '{key}': {e}") from e
        return result

    def _migrate_if_needed(self) -> bool:
        """Adds missing default values to an existing config file."""
        defaults = PipelineConfig()
        config_section = self._parser["DEFAULT"]
        needs_saving = False

        for key in sorted(PipelineConfig.get_ini_keys()):
            if key not in config_section:
                config_section[key] = _encode_value(key, getattr(defaults, key))
                needs_saving = True
                log.debug(
                    f"Migrating config: added missing key '{key}' with "
                    f"value '{config_section[key]}'."
                )

        if needs_saving:
            try:
                with open(self.config_file_path, "w", encoding="utf-8") as f:
                    self._parser.write(f)
            except OSError as e:
                log.error(f"Could not save migrated configuration file: {e}")
                return False

        return needs_saving

    def as_display_dict(self) -> dict[str, str]:
        """Reads the raw INI values for display."""
        if not self.config_file_path.is_file():
            return {}
        self._parser.read(self.config_file_path, encoding="utf-8")
        return dict(self._parser["DEFAULT"].items())
