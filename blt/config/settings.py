"""Centralized configuration for the BLT transfer service.

Configuration is loaded from a YAML file and validated at startup. Every
value has a documented default so the service runs against a local Orthanc
without any file at all.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from blt.utils.result import ConfigError, Err, Ok, Result

DEFAULT_CONFIG_PATH = Path("./blt.yaml")

ENV_CONFIG_PATH = "BLT_CONFIG"
ENV_ARCHIVE_URL = "BLT_ARCHIVE_URL"

LOG_LEVELS = ("debug", "info", "warn", "warning", "error")


@dataclass
class ArchiveConfig:
    """Connection to the Orthanc archive server."""

    url: str = "http://localhost:8042"
    timeout: float = 30.0

    # None means "first entry of /modalities" and "first entry of /peers"
    source_modality: Optional[str] = None
    destination_peer: Optional[str] = None
    compress_push: bool = True


@dataclass
class PollerConfig:
    """Job polling settings."""

    interval_seconds: float = 5.0
    parallelism: int = 8


@dataclass
class RegistryConfig:
    """Registry persistence and retention."""

    state_file: Optional[Path] = None
    # Terminal entries older than this are pruned; 0 keeps everything
    retention_hours: float = 168.0


@dataclass
class AnonymizationConfig:
    """What the anonymization stage keeps and drops."""

    keep_tags: list[str] = field(
        default_factory=lambda: ["StudyDescription", "SeriesDescription"]
    )
    # Series with these modalities are deleted before anonymization
    excluded_modalities: list[str] = field(default_factory=lambda: ["US"])


@dataclass
class ServerConfig:
    """HTTP server binding."""

    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class LoggingConfig:
    """Log level and renderer (json for collectors, text for a terminal)."""

    level: str = "info"
    format: str = "json"



class _SectionError(Exception):
    def __init__(self, section: str, message: str) -> None:
        super().__init__(message)
        self.section = section


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise _SectionError(name, f"Must be a mapping, got {type(value).__name__}")
    return value


def _parse_archive(data: dict[str, Any]) -> ArchiveConfig:
    defaults = ArchiveConfig()
    return ArchiveConfig(
        url=str(data.get("url", defaults.url)).rstrip("/"),
        timeout=float(data.get("timeout", defaults.timeout)),
        source_modality=data.get("source_modality"),
        destination_peer=data.get("destination_peer"),
        compress_push=bool(data.get("compress_push", defaults.compress_push)),
    )


def _parse_poller(data: dict[str, Any]) -> PollerConfig:
    defaults = PollerConfig()
    return PollerConfig(
        interval_seconds=float(data.get("interval_seconds", defaults.interval_seconds)),
        parallelism=int(data.get("parallelism", defaults.parallelism)),
    )


def _parse_registry(data: dict[str, Any]) -> RegistryConfig:
    state_file = data.get("state_file")
    return RegistryConfig(
        state_file=Path(state_file) if state_file else None,
        retention_hours=float(
            data.get("retention_hours", RegistryConfig().retention_hours)
        ),
    )


def _parse_anonymization(data: dict[str, Any]) -> AnonymizationConfig:
    defaults = AnonymizationConfig()
    return AnonymizationConfig(
        keep_tags=[str(tag) for tag in data.get("keep_tags", defaults.keep_tags)],
        excluded_modalities=[
            str(modality).upper()
            for modality in data.get("excluded_modalities", defaults.excluded_modalities)
        ],
    )


def _parse_server(data: dict[str, Any]) -> ServerConfig:
    defaults = ServerConfig()
    return ServerConfig(
        host=str(data.get("host", defaults.host)),
        port=int(data.get("port", defaults.port)),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    defaults = LoggingConfig()
    return LoggingConfig(
        level=str(data.get("level", defaults.level)).lower(),
        format=str(data.get("format", defaults.format)).lower(),
    )


_PARSERS = {
    "archive": _parse_archive,
    "poller": _parse_poller,
    "registry": _parse_registry,
    "anonymization": _parse_anonymization,
    "server": _parse_server,
    "logging": _parse_logging,
}


@dataclass
class ServiceConfig:
    """Complete service configuration; every section has working defaults."""

    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    poller: PollerConfig = field(default_factory=PollerConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    anonymization: AnonymizationConfig = field(default_factory=AnonymizationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> Result["ServiceConfig", ConfigError]:
        """Parse a YAML file; the file must exist."""
        path = Path(path)
        if not path.exists():
            return Err(ConfigError("path", f"No configuration file at {path}"))

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            return Err(ConfigError("yaml", f"Invalid YAML in {path}: {e}"))
        except OSError as e:
            return Err(ConfigError("path", f"Cannot read {path}: {e}"))

        if data is None:
            data = {}
        if not isinstance(data, dict):
            return Err(ConfigError("yaml", "Top level of the configuration must be a mapping"))

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result["ServiceConfig", ConfigError]:
        """
        Build a configuration from already-decoded data.

        Unknown sections are ignored; a section that is not a mapping or holds
        a value of the wrong type is reported under the section's name.
        """
        sections: dict[str, Any] = {}
        for name, parse in _PARSERS.items():
            try:
                sections[name] = parse(_section(data, name))
            except _SectionError as e:
                return Err(ConfigError(e.section, str(e)))
            except (TypeError, ValueError) as e:
                return Err(ConfigError(name, f"Invalid value: {e}"))
        return Ok(cls(**sections))

    def validate(self) -> Result[None, ConfigError]:
        """Check value ranges; the first failing rule is reported."""
        rules = [
            (
                "archive.url",
                self.archive.url.startswith(("http://", "https://")),
                f"Must be an http(s) URL, got {self.archive.url!r}",
            ),
            (
                "archive.timeout",
                self.archive.timeout > 0,
                f"Must be positive, got {self.archive.timeout}",
            ),
            (
                "poller.interval_seconds",
                self.poller.interval_seconds > 0,
                f"Must be positive, got {self.poller.interval_seconds}",
            ),
            (
                "poller.parallelism",
                self.poller.parallelism >= 1,
                f"Must be at least 1, got {self.poller.parallelism}",
            ),
            (
                "registry.retention_hours",
                self.registry.retention_hours >= 0,
                f"Must not be negative, got {self.registry.retention_hours}",
            ),
            (
                "server.port",
                0 < self.server.port < 65536,
                f"Must be a TCP port, got {self.server.port}",
            ),
            (
                "logging.level",
                self.logging.level in LOG_LEVELS,
                f"Must be one of {', '.join(LOG_LEVELS)}, got {self.logging.level!r}",
            ),
            (
                "logging.format",
                self.logging.format in ("json", "text"),
                f"Must be 'json' or 'text', got {self.logging.format!r}",
            ),
        ]
        for field_name, ok, message in rules:
            if not ok:
                return Err(ConfigError(field_name, message))
        return Ok(None)


def load_config(path: Optional[Path] = None) -> Result[ServiceConfig, ConfigError]:
    """
    Load and validate the service configuration.

    The file is ``path``, else ``$BLT_CONFIG``, else ``./blt.yaml``. A missing
    default file means built-in defaults. ``$BLT_ARCHIVE_URL`` overrides
    ``archive.url``.
    """
    if path is None and os.environ.get(ENV_CONFIG_PATH):
        path = Path(os.environ[ENV_CONFIG_PATH])
    if path is None and DEFAULT_CONFIG_PATH.exists():
        path = DEFAULT_CONFIG_PATH

    if path is None:
        config = ServiceConfig()
    else:
        loaded = ServiceConfig.from_yaml(path)
        if loaded.is_err():
            return loaded
        config = loaded.unwrap()

    archive_url = os.environ.get(ENV_ARCHIVE_URL)
    if archive_url:
        config.archive.url = archive_url.rstrip("/")

    checked = config.validate()
    if checked.is_err():
        return Err(checked.unwrap_err())
    return Ok(config)
