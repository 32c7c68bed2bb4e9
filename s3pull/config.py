from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .retry import (
    DEFAULT_BASE_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_PATH = "./files"
DEFAULT_CONCURRENCY = 30
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 60.0

FILE_DEFAULTS: dict[str, object] = {
    "download_path": DEFAULT_DOWNLOAD_PATH,
    "concurrency": DEFAULT_CONCURRENCY,
    "max_attempts": DEFAULT_MAX_ATTEMPTS,
    "base_delay": DEFAULT_BASE_DELAY,
    "max_delay": DEFAULT_MAX_DELAY,
    "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
    "read_timeout": DEFAULT_READ_TIMEOUT,
}


class ConfigError(Exception):
    """The run configuration is incomplete or invalid."""


@dataclass(frozen=True)
class EndpointConfig:
    bucket: str
    prefix: str = ""
    profile: Optional[str] = None
    region: Optional[str] = None


@dataclass(frozen=True)
class RunConfig:
    source: EndpointConfig
    download_path: Path
    destination: Optional[EndpointConfig] = None
    concurrency: int = DEFAULT_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    dry_run: bool = False
    failures_file: Optional[Path] = None

    def __post_init__(self) -> None:
        if not self.source.bucket:
            raise ConfigError("a source bucket is required")
        if self.destination is not None and not self.destination.bucket:
            raise ConfigError("the upload bucket name is empty")
        if self.concurrency < 1:
            raise ConfigError("concurrency must be at least 1")
        if self.max_attempts < 1:
            raise ConfigError("max attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("retry delays cannot be negative")
        if self.connect_timeout <= 0 or self.read_timeout <= 0:
            raise ConfigError("timeouts must be positive")

    @property
    def sync_enabled(self) -> bool:
        return self.destination is not None

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )


def config_base_dir() -> Path:
    config_home = os.environ.get("XDG_CONFIG_HOME")
    if config_home:
        base = Path(config_home).expanduser()
    else:
        base = Path.home() / ".config"
    return base / "s3pull"


def default_config_path() -> Path:
    return config_base_dir() / "config.json"


def load_file_defaults(path: Optional[Path] = None) -> dict[str, object]:
    """Built-in defaults overlaid with whatever the config file provides.

    A missing or unreadable file is not an error; a value of the wrong type
    is ignored with a warning.
    """
    path = path or default_config_path()
    defaults = dict(FILE_DEFAULTS)
    try:
        payload = json.loads(path.read_text())
    except FileNotFoundError:
        return defaults
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring config file %s: %s", path, exc)
        return defaults
    if not isinstance(payload, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return defaults
    for name, default in FILE_DEFAULTS.items():
        if name not in payload:
            continue
        value = payload[name]
        if isinstance(default, str):
            valid = isinstance(value, str) and bool(value.strip())
        elif isinstance(default, int) and not isinstance(default, bool):
            valid = isinstance(value, int) and not isinstance(value, bool)
        else:
            valid = isinstance(value, (int, float)) and not isinstance(value, bool)
        if not valid:
            logger.warning("Ignoring %s=%r from %s", name, value, path)
            continue
        defaults[name] = value
    return defaults
