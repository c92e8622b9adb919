# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Configuration loading for Slurry.

Reads ``$SLURRY_CONFIG`` or ``~/.slurry/config.yaml``. A missing default
file yields built-in defaults (one local host); an explicitly named file
must exist.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

DEFAULT_CONFIG_PATH = "~/.slurry/config.yaml"
MISSING_FALLBACKS = ("unknown", "failed")


class ConfigError(Exception):
    """Raised when the configuration file has invalid content."""
    pass


@dataclass
class HostConfig:
    name: str
    hostname: Optional[str] = None
    port: int = 22
    username: Optional[str] = None
    client_keys: List[str] = field(default_factory=list)
    known_hosts: Optional[str] = None
    check_host_keys: bool = True
    local: bool = False


@dataclass
class PollerConfig:
    """Polling cadence, missing-job policy and backoff."""
    interval_s: float = 30.0
    missing_cycles: int = 3
    command_timeout_s: float = 30.0
    backoff_base_s: float = 5.0
    backoff_max_s: float = 300.0
    health_threshold: int = 3
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 4)
    # What to do when sacct cannot explain a job that left the queue
    missing_fallback: str = "unknown"
    missing_fallback_cycles: int = 10


@dataclass
class SlurryConfig:
    hosts: Dict[str, HostConfig] = field(
        default_factory=lambda: {"default": HostConfig(name="default", local=True)}
    )
    poller: PollerConfig = field(default_factory=PollerConfig)
    journal_path: Optional[str] = "~/.slurry/events.jsonl"
    state_dir: Optional[str] = "~/.slurry/state"
    remote_script_dir: str = "~/.slurry/scripts"


def config_path(path: Optional[str] = None) -> Path:
    """Resolve which config file to read."""
    if path:
        return Path(path).expanduser()
    return Path(os.environ.get("SLURRY_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()


def _positive(section: str, name: str, value: Any, allow_zero: bool = False) -> None:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        raise ConfigError(f"{section}.{name} must be a number, got: {value!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{section}.{name} must be positive, got: {value!r}")


def _build_poller(data: Dict[str, Any]) -> PollerConfig:
    known = {f.name for f in fields(PollerConfig)}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown poller settings: {', '.join(sorted(unknown))}")
    poller = PollerConfig(**data)
    for name in ("interval_s", "command_timeout_s", "backoff_base_s", "backoff_max_s"):
        _positive("poller", name, getattr(poller, name))
    for name in ("missing_cycles", "health_threshold", "max_workers", "missing_fallback_cycles"):
        value = getattr(poller, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigError(f"poller.{name} must be a positive integer, got: {value!r}")
    if poller.backoff_max_s < poller.backoff_base_s:
        raise ConfigError("poller.backoff_max_s must not be smaller than poller.backoff_base_s")
    if poller.missing_fallback not in MISSING_FALLBACKS:
        raise ConfigError(
            f"poller.missing_fallback must be one of {', '.join(MISSING_FALLBACKS)}, "
            f"got: {poller.missing_fallback!r}"
        )
    return poller


def _build_host(name: str, data: Any) -> HostConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"hosts.{name} must be a mapping")
    known = {f.name for f in fields(HostConfig)} - {"name"}
    unknown = set(data) - known
    if unknown:
        raise ConfigError(f"Unknown settings for host {name}: {', '.join(sorted(unknown))}")
    host = HostConfig(name=name, **data)
    if not host.local and not host.hostname:
        raise ConfigError(f"hosts.{name} needs a hostname (or local: true)")
    if isinstance(host.client_keys, str):
        host.client_keys = [host.client_keys]
    return host


def parse_config(data: Dict[str, Any]) -> SlurryConfig:
    """Build a SlurryConfig from a parsed YAML mapping.

    Raises:
        ConfigError: On unknown keys or invalid values.
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")
    config = SlurryConfig()
    if "hosts" in data:
        hosts = data["hosts"] or {}
        if not isinstance(hosts, dict) or not hosts:
            raise ConfigError("hosts must be a non-empty mapping")
        config.hosts = {name: _build_host(name, h) for name, h in hosts.items()}
    if "poller" in data:
        config.poller = _build_poller(data["poller"] or {})
    for key in ("journal_path", "state_dir", "remote_script_dir"):
        if key in data:
            setattr(config, key, data[key])
    unknown = set(data) - {"hosts", "poller", "journal_path", "state_dir", "remote_script_dir"}
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    return config


def load_config(path: Optional[str] = None) -> SlurryConfig:
    """
    Load configuration from YAML.

    Args:
        path: Explicit config file; defaults to $SLURRY_CONFIG or ~/.slurry/config.yaml

    Returns:
        SlurryConfig

    Raises:
        FileNotFoundError: If an explicitly given file does not exist
        ConfigError: If the file content is invalid
    """
    resolved = config_path(path)
    if not resolved.exists():
        if path or os.environ.get("SLURRY_CONFIG"):
            raise FileNotFoundError(f"Config file not found: {resolved}")
        return SlurryConfig()
    try:
        data = yaml.safe_load(resolved.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {resolved}: {e}")
    try:
        return parse_config(data)
    except TypeError as e:
        raise ConfigError(str(e))
