"""
config.py — Runtime configuration for intel-relay.

All tunables live in :class:`RelayConfig`.  Values come from, in order of
precedence: command-line flags, a JSON config file, the defaults below.

Two JSON layouts are accepted::

    {"server": {"url": "...", "apiKey": "..."}, "pilotName": "...",
     "eveLogsPath": "..."}

    {"serverUrl": "...", "apiKey": "...", "pilotName": "...",
     "eveLogsPath": "...", "freshnessWindow": 60, ...}

Engine timings may be given in either layout using the camelCase names in
``_TUNABLES``.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from intelrelay.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAMES = ("client-config-workers.json", "simple-intel-config.json")

# JSON key -> RelayConfig field for numeric tunables.
_TUNABLES = {
    "pollInterval": "poll_interval",
    "debounce": "debounce",
    "inactivityThreshold": "inactivity_threshold",
    "freshnessWindow": "freshness_window",
    "switchCooldown": "switch_cooldown",
    "newerMargin": "newer_margin",
    "dedupRetention": "dedup_retention",
    "retentionHours": "retention_hours",
    "sinkTimeout": "sink_timeout",
    "maxInflight": "max_inflight",
    "statsInterval": "stats_interval",
}


@dataclass(frozen=True)
class RelayConfig:
    """Every knob of the relay, with the values used when unset.

    Times are in seconds unless the name says otherwise.
    """

    logs_dir: str | None = None
    server_url: str = "http://localhost:8080"
    api_key: str = ""
    pilot_name: str = ""

    poll_interval: float = 1.0
    debounce: float = 0.15
    inactivity_threshold: float = 300.0
    freshness_window: float = 60.0
    switch_cooldown: float = 5.0
    newer_margin: float = 10.0
    dedup_retention: float = 3600.0
    retention_hours: float = 24.0
    sink_timeout: float = 10.0
    max_inflight: int = 4
    stats_interval: float = 300.0
    assume_utc: bool = True

    def with_overrides(self, **overrides: Any) -> "RelayConfig":
        """Return a copy with every non-``None`` override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ConfigError(f"Unknown config fields: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in overrides.items() if v is not None}
        config = replace(self, **changes)
        config.validate()
        return config

    def validate(self) -> None:
        """Raise :class:`ConfigError` on values the engine cannot run with."""
        for name in _TUNABLES.values():
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"{name} must be a number, got {value!r}")
            if value < 0:
                raise ConfigError(f"{name} must not be negative, got {value!r}")
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.max_inflight < 1:
            raise ConfigError("max_inflight must be at least 1")
        if not isinstance(self.server_url, str) or not self.server_url.startswith(
            ("http://", "https://")
        ):
            raise ConfigError(f"server_url must be an http(s) URL, got {self.server_url!r}")


def find_config_file(directory: str | Path | None = None) -> Path | None:
    """Return the first default-named config file in *directory* (cwd)."""
    base = Path(directory) if directory is not None else Path.cwd()
    for name in DEFAULT_CONFIG_NAMES:
        candidate = base / name
        if candidate.is_file():
            return candidate
    return None


def _from_mapping(data: dict[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}

    server = data.get("server")
    if server is not None:
        if not isinstance(server, dict):
            raise ConfigError("'server' must be an object")
        if "url" in server:
            values["server_url"] = server["url"]
        if server.get("apiKey"):
            values["api_key"] = server["apiKey"]
    elif "serverUrl" in data:
        values["server_url"] = data["serverUrl"]

    if data.get("apiKey"):
        values["api_key"] = data["apiKey"]
    if data.get("pilotName"):
        values["pilot_name"] = data["pilotName"]
    if data.get("eveLogsPath"):
        values["logs_dir"] = os.path.expanduser(data["eveLogsPath"])
    if "assumeUtc" in data:
        values["assume_utc"] = bool(data["assumeUtc"])

    for key, name in _TUNABLES.items():
        if key in data:
            values[name] = data[key]
    return values


def load_config(path: str | Path | None = None) -> RelayConfig:
    """Load configuration from *path*, or from a default file if any.

    With no path and no default file present, the defaults are returned.

    Raises:
        ConfigError: Missing explicit file, invalid JSON, or bad values.
    """
    if path is None:
        path = find_config_file()
        if path is None:
            logger.info("No config file found; using defaults")
            return RelayConfig()
    path = Path(path)

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Top level of {path} must be an object")

    config = RelayConfig().with_overrides(**_from_mapping(data))
    logger.info("Configuration loaded from %s", path)
    return config
