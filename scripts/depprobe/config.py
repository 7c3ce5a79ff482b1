"""Configuration loading and validation for the dependency probe."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigError(Exception):
    """Error in probe configuration."""

    def __init__(
        self,
        message: str,
        file: Optional[str] = None,
        line: Optional[int] = None,
        error_type: str = "config_invalid",
    ):
        super().__init__(message)
        self.message = message
        self.file = file
        self.line = line
        self.error_type = error_type

    def to_json(self) -> dict[str, Any]:
        """Serialize error to JSON format for machine parsing."""
        result: dict[str, Any] = {
            "error": self.error_type,
            "message": self.message,
        }
        if self.file:
            result["file"] = self.file
        if self.line:
            result["line"] = self.line
        return result

    def __str__(self) -> str:
        parts = [self.message]
        if self.file:
            parts.append(f"file: {self.file}")
        if self.line:
            parts.append(f"line: {self.line}")
        return " | ".join(parts)


# Default paths and values
DEFAULT_CONFIG_PATH = "depprobe.yaml"
DEFAULT_CACHE_PATH = "cached_results.json"
DEFAULT_PROFILE = "arduino:avr:uno"
DEFAULT_BUILDER = "arduino-builder"
DEFAULT_PROBE_TIMEOUT = 300.0

ACCUMULATION_PER_LIBRARY = "per-library"
ACCUMULATION_SESSION = "session"
ACCUMULATION_MODES = (ACCUMULATION_PER_LIBRARY, ACCUMULATION_SESSION)


@dataclass
class ProbeConfig:
    """Complete probe configuration."""

    catalog: Optional[str] = None
    cache: str = DEFAULT_CACHE_PATH
    hardware: list[str] = field(default_factory=list)
    tools: list[str] = field(default_factory=list)
    built_in_libraries: list[str] = field(default_factory=list)
    libraries: list[str] = field(default_factory=list)
    build_path: Optional[str] = None
    builder: str = DEFAULT_BUILDER
    default_profile: str = DEFAULT_PROFILE
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT
    accumulation: str = ACCUMULATION_PER_LIBRARY
    example_extensions: list[str] = field(default_factory=lambda: [".ino", ".pde"])
    force: bool = False
    examples: bool = False
    record_local_dependencies: bool = False
    verbose: bool = False


def get_default_config() -> ProbeConfig:
    """Return the default probe configuration."""
    return ProbeConfig()


def split_folders(value: Any) -> list[str]:
    """Normalize a folder setting into a list of paths.

    Accepts a list, or a single string holding several paths separated by
    ``os.pathsep`` (or by commas when no path separator is present).
    Surrounding quotes and whitespace are stripped from every entry.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        raw = [str(v) for v in value]
    else:
        text = str(value)
        if os.pathsep in text:
            raw = text.split(os.pathsep)
        else:
            raw = text.split(",")

    folders = []
    for item in raw:
        item = item.strip().strip('"').strip("'").strip()
        if item:
            folders.append(item)
    return folders


def _expect_type(data: dict[str, Any], key: str, types: tuple, config_file: Optional[str]) -> None:
    if key in data and data[key] is not None and not isinstance(data[key], types):
        raise ConfigError(
            f"'{key}' has invalid type {type(data[key]).__name__}",
            file=config_file,
            error_type="config_invalid",
        )


def validate_config(config: ProbeConfig, config_file: Optional[str] = None) -> None:
    """Validate configuration values.

    Raises:
        ConfigError: If configuration is invalid or a mandatory folder is missing.
    """
    if not config.catalog:
        raise ConfigError(
            "You need to pass the path of a library catalog (library_index.json)",
            file=config_file,
            error_type="missing_parameter",
        )
    if not config.hardware:
        raise ConfigError(
            "Parameter 'hardware' is mandatory",
            file=config_file,
            error_type="missing_parameter",
        )
    if not config.tools:
        raise ConfigError(
            "Parameter 'tools' is mandatory",
            file=config_file,
            error_type="missing_parameter",
        )
    if config.accumulation not in ACCUMULATION_MODES:
        raise ConfigError(
            f"Unknown accumulation mode: {config.accumulation}. "
            f"Must be one of: {', '.join(ACCUMULATION_MODES)}",
            file=config_file,
            error_type="config_invalid",
        )
    if config.probe_timeout <= 0:
        raise ConfigError(
            f"probe_timeout must be positive, got {config.probe_timeout}",
            file=config_file,
            error_type="config_invalid",
        )
    if config.build_path and not Path(config.build_path).is_dir():
        raise ConfigError(
            f"Build path does not exist: {config.build_path}",
            file=config_file,
            error_type="missing_parameter",
        )


def load_config(config_path: Path | str) -> ProbeConfig:
    """Load configuration from a YAML file.

    Values are not validated here: command-line overrides are applied first
    and ``validate_config`` runs on the merged result.

    Args:
        config_path: Path to the depprobe.yaml file.

    Returns:
        ProbeConfig with loaded values merged with defaults.

    Raises:
        ConfigError: If the file exists but contains invalid configuration.
    """
    config_path = Path(config_path)
    config_file = str(config_path)

    defaults = get_default_config()

    if not config_path.exists():
        return defaults

    try:
        content = config_path.read_text()
        if not content.strip():
            return defaults

        data = yaml.safe_load(content)
        if not data:
            return defaults
        if not isinstance(data, dict):
            raise ConfigError(
                "Top-level probe config must be a mapping",
                file=config_file,
                error_type="config_invalid",
            )

    except yaml.YAMLError as e:
        line = None
        mark = getattr(e, "problem_mark", None)
        if mark is not None:
            line = mark.line + 1
        raise ConfigError(
            f"Invalid YAML: {e}",
            file=config_file,
            line=line,
            error_type="config_invalid",
        )

    for key in ("catalog", "cache", "build_path", "builder", "default_profile", "accumulation"):
        _expect_type(data, key, (str,), config_file)
    for key in ("force", "examples", "record_local_dependencies", "verbose"):
        _expect_type(data, key, (bool,), config_file)
    _expect_type(data, "probe_timeout", (int, float), config_file)
    _expect_type(data, "example_extensions", (list,), config_file)

    return ProbeConfig(
        catalog=data.get("catalog", defaults.catalog),
        cache=data.get("cache", defaults.cache),
        hardware=split_folders(data.get("hardware")),
        tools=split_folders(data.get("tools")),
        built_in_libraries=split_folders(data.get("built_in_libraries")),
        libraries=split_folders(data.get("libraries")),
        build_path=data.get("build_path", defaults.build_path),
        builder=data.get("builder", defaults.builder),
        default_profile=data.get("default_profile", defaults.default_profile),
        probe_timeout=float(data.get("probe_timeout", defaults.probe_timeout)),
        accumulation=data.get("accumulation", defaults.accumulation),
        example_extensions=[
            ext.lower() if ext.startswith(".") else f".{ext.lower()}"
            for ext in data.get("example_extensions", defaults.example_extensions)
        ],
        force=data.get("force", defaults.force),
        examples=data.get("examples", defaults.examples),
        record_local_dependencies=data.get(
            "record_local_dependencies", defaults.record_local_dependencies
        ),
        verbose=data.get("verbose", defaults.verbose),
    )
