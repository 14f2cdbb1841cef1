import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel
from pydantic import ValidationError

from imbue.flocker.config.data_types import DEFAULT_ROOT_DIR
from imbue.flocker.config.data_types import FlockerConfig
from imbue.flocker.config.data_types import LoggingConfig
from imbue.flocker.config.data_types import SETTINGS_FILENAME
from imbue.flocker.errors import ConfigParseError

ENV_ROOT_DIR = "FLOCKER_ROOT_DIR"
ENV_DOCKER_HOST = "FLOCKER_DOCKER_HOST"
ENV_STOP_TIMEOUT = "FLOCKER_STOP_TIMEOUT"


def load_config(
    root_dir: Path | None = None,
    docker_host: str | None = None,
    environ: Mapping[str, str] | None = None,
) -> FlockerConfig:
    """Load and merge configuration from all sources.

    Precedence (lowest to highest):
    1. Built-in defaults
    2. Settings file (<root_dir>/settings.toml)
    3. Environment variables (FLOCKER_ROOT_DIR, FLOCKER_DOCKER_HOST, FLOCKER_STOP_TIMEOUT)
    4. CLI arguments (passed in as root_dir and docker_host)

    The root directory decides where the settings file lives, so it is resolved
    from the CLI and environment before the file is read.
    """
    env = os.environ if environ is None else environ

    if root_dir is not None:
        resolved_root_dir = root_dir
    elif env.get(ENV_ROOT_DIR):
        resolved_root_dir = Path(env[ENV_ROOT_DIR])
    else:
        resolved_root_dir = DEFAULT_ROOT_DIR

    settings_path = resolved_root_dir.expanduser() / SETTINGS_FILENAME
    raw = _load_toml(settings_path) if settings_path.exists() else {}
    if raw:
        logger.debug("Loaded settings from {}", settings_path)

    # The settings file cannot relocate the root directory it was found in
    raw["root_dir"] = resolved_root_dir

    if env.get(ENV_DOCKER_HOST):
        raw["docker_host"] = env[ENV_DOCKER_HOST]
    if env.get(ENV_STOP_TIMEOUT):
        raw["stop_timeout_seconds"] = _parse_int_env(ENV_STOP_TIMEOUT, env[ENV_STOP_TIMEOUT])
    if docker_host is not None:
        raw["docker_host"] = docker_host

    return _parse_config(raw, settings_path)


# =============================================================================
# Config Loading
# =============================================================================


def _load_toml(path: Path) -> dict[str, Any]:
    """Load and parse a TOML file."""
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigParseError(path, str(e)) from e
    except OSError as e:
        raise ConfigParseError(path, f"cannot read file: {e}") from e


def _check_unknown_fields(
    raw_config: Mapping[str, Any],
    model_class: type[BaseModel],
    context: str,
    path: Path,
) -> None:
    """Raise ConfigParseError if raw_config contains fields not defined on model_class."""
    known_fields = set(model_class.model_fields.keys())
    unknown = set(raw_config.keys()) - known_fields
    if unknown:
        raise ConfigParseError(
            path, f"Unknown fields in {context}: {sorted(unknown)}. Valid fields: {sorted(known_fields)}"
        )


def _parse_config(raw: dict[str, Any], path: Path) -> FlockerConfig:
    _check_unknown_fields(raw, FlockerConfig, "settings", path)
    raw_logging = raw.get("logging")
    if raw_logging is not None:
        if not isinstance(raw_logging, dict):
            raise ConfigParseError(path, "[logging] must be a table")
        _check_unknown_fields(raw_logging, LoggingConfig, "logging", path)
    try:
        return FlockerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigParseError(path, _summarize_validation_error(e)) from e


def _summarize_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def _parse_int_env(name: str, value: str) -> int:
    try:
        return int(value)
    except ValueError as e:
        raise ConfigParseError(Path(f"${name}"), f"expected an integer, got {value!r}") from e
