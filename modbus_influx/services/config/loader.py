"""
Configuration Loader

Reads the configuration document from disk (TOML or YAML, chosen by file
extension) and validates its shape.
"""

import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from modbus_influx.common.config import AppConfig
from modbus_influx.common.exceptions import ConfigError
from modbus_influx.common.logging_setup import get_service_logger
from .document import ConfigDocument
from .registry import build_app_config
from .settings import EnvSettings

logger = get_service_logger("config.loader")

TOML_SUFFIXES = (".toml",)
YAML_SUFFIXES = (".yaml", ".yml")


def load_document(path: str | Path) -> dict[str, Any]:
    """
    Read a configuration file into a plain dictionary.

    Raises:
        ConfigError: File missing, unreadable, unsupported or malformed
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix not in TOML_SUFFIXES + YAML_SUFFIXES:
        raise ConfigError(
            f"Unsupported config format '{suffix}' for {path} (expected .toml, .yaml or .yml)"
        )

    try:
        if suffix in TOML_SUFFIXES:
            with open(path, "rb") as f:
                raw = tomllib.load(f)
        else:
            with open(path, encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}") from None
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config document {path} must be a mapping at the top level")

    logger.debug(f"Loaded config document from {path}")
    return raw


def format_validation_error(error: dict[str, Any]) -> str:
    location = ".".join(str(part) for part in error["loc"]) or "<document>"
    return f"{location}: {error['msg']}"


def parse_document(raw: dict[str, Any]) -> ConfigDocument:
    """
    Validate the shape of a raw document.

    Raises:
        ConfigError: Listing every shape violation
    """
    try:
        return ConfigDocument.model_validate(raw)
    except ValidationError as e:
        errors = [format_validation_error(err) for err in e.errors()]
        raise ConfigError(f"{len(errors)} invalid setting(s)", errors=errors) from None


def load_config(path: str | Path, env: EnvSettings | None = None) -> AppConfig:
    """Load, validate and resolve a configuration file into an AppConfig."""
    document = parse_document(load_document(path))
    config = build_app_config(document, env)
    logger.info(
        f"Config loaded: {len(config.templates)} templates, {len(config.targets)} poll targets",
        extra={"path": str(path)},
    )
    return config
