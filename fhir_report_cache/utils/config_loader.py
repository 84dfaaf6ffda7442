"""Layered YAML configuration for the FHIR report cache."""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import ValidationError

from fhir_report_cache.models.config import AppConfig
from fhir_report_cache.utils.errors import ConfigurationError

log = structlog.stdlib.get_logger()

CONFIG_DIR = Path(__file__).parent.parent.parent / "config"
BASE_CONFIG = "default.yaml"

# ${NAME} or ${NAME:-fallback}
ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Merge ``overlay`` into a copy of ``base``; nested sections merge key by key."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def expand_env(value: Any) -> Any:
    """
    Replace ``${NAME}`` references in every string of a parsed document.

    Raises:
        ConfigurationError: If a referenced variable is unset and has no fallback
    """
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if not isinstance(value, str):
        return value

    def substitute(match: re.Match) -> str:
        name, fallback = match.group(1), match.group(2)
        resolved = os.getenv(name, fallback)
        if resolved is None:
            raise ConfigurationError(
                f"Required environment variable not set: {name}. "
                f"Set {name} or give a fallback with ${{{name}:-value}}."
            )
        return resolved

    return ENV_REFERENCE.sub(substitute, value)


class ConfigLoader:
    """Builds an AppConfig from YAML files and the environment.

    Without an explicit path, ``config/default.yaml`` is read and the file
    named by ``APP_ENV`` (e.g. ``config/production.yaml``) is merged on top.
    """

    def __init__(self, config_dir: Path = CONFIG_DIR) -> None:
        self._config_dir = Path(config_dir)

    def load_config(self, config_path: Optional[str] = None) -> AppConfig:
        """
        Load and validate the configuration.

        Args:
            config_path: Read only this file instead of the layered defaults

        Raises:
            ConfigurationError: If a file is missing or invalid, a variable is
                unset or validation fails
        """
        if config_path is not None:
            sources = [Path(config_path)]
            document = self._read(sources[0])
        else:
            sources, document = self._read_layers()

        log.info("loading_configuration", sources=[str(source) for source in sources])
        document = expand_env(document)

        try:
            config = AppConfig(**document)
        except ValidationError as e:
            log.error("configuration_validation_failed", error=str(e))
            raise ConfigurationError(f"Configuration validation failed: {e}") from e

        log.info("configuration_loaded")
        return config

    def _read_layers(self) -> tuple[list[Path], dict[str, Any]]:
        base = self._config_dir / BASE_CONFIG
        if not base.exists():
            raise ConfigurationError(f"Configuration file not found: {base}")
        sources = [base]
        document = self._read(base)

        environment = os.getenv("APP_ENV")
        if environment and environment != Path(BASE_CONFIG).stem:
            overlay = self._config_dir / f"{environment}.yaml"
            if overlay.exists():
                sources.append(overlay)
                document = deep_merge(document, self._read(overlay))
            else:
                log.warning("environment_config_missing", app_env=environment, path=str(overlay))
        return sources, document

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        try:
            with open(path, "r") as f:
                document = yaml.safe_load(f)
        except FileNotFoundError as e:
            raise ConfigurationError(f"Configuration file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse YAML file {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file {path}: {e}") from e

        if document is None:
            raise ConfigurationError(f"Configuration file is empty: {path}")
        if not isinstance(document, dict):
            raise ConfigurationError(f"Configuration file {path} must hold a mapping of sections")
        return document

    def validate_config(self, config: AppConfig) -> list[str]:
        """Return warnings for settings that are valid but probably not what was meant."""
        warnings = []
        sync = config.sync

        if sync.reset and sync.since:
            warnings.append(f"sync.since ({sync.since}) is ignored because sync.reset is enabled")

        if sync.since:
            try:
                datetime.fromisoformat(sync.since)
            except ValueError:
                warnings.append(f"sync.since '{sync.since}' is not an ISO timestamp")

        rate = config.elasticsearch.max_compilation_rate
        if rate and "/" not in rate:
            warnings.append(
                f"elasticsearch.max_compilation_rate '{rate}' should look like <count>/<window>, e.g. 10000/1m"
            )

        if warnings:
            log.warning("configuration_validation_warnings", warnings=warnings)
        return warnings
