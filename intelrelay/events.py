"""
events.py — Shared data model for intel-relay.

Defines the dataclasses passed between the monitor, the tailing pipeline
and the dispatcher: raw change notifications, tracked log files, channel
assignments, parsed chat records and primary-switch events.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class FileEvent:
    """Represents a single change notification captured by the monitor.

    Attributes:
        timestamp:  Unix epoch time when the event was observed.
        event_type: One of "modify", "rename", "create", "delete".
        file_path:  Absolute path of the affected file.
    """

    timestamp: float
    event_type: str
    file_path: str


@dataclass(frozen=True)
class DirEntry:
    """One row of a directory listing: ``(name, size, modified_at)``."""

    name: str
    size: int
    modified_at: float


@dataclass
class LogFile:
    """A chat log file tracked by the liveness registry.

    Attributes:
        path:                    Absolute path on disk.
        channel_key:             Logical channel derived from the filename.
        size:                    Size seen by the most recent scan.
        size_at_last_read:       Byte offset the tail reader has consumed.
        last_modified_at:        mtime from the most recent scan.
        last_observed_growth_at: When a scan last saw the size increase.
        first_seen_at:           When the file entered the registry.
    """

    path: str
    channel_key: str
    size: int = 0
    size_at_last_read: int = 0
    last_modified_at: float = 0.0
    last_observed_growth_at: float = 0.0
    first_seen_at: float = 0.0


@dataclass
class ChannelState:
    """Primary/standby assignment for one logical channel."""

    channel_key: str
    primary_path: str | None = None
    standby_paths: set[str] = field(default_factory=set)
    last_switch_at: float | None = None

    @property
    def has_primary(self) -> bool:
        return self.primary_path is not None


@dataclass(frozen=True)
class Record:
    """A parsed chat line.

    ``timestamp`` is always timezone-aware UTC.
    """

    timestamp: datetime
    author: str
    message: str
    channel_key: str
    source_path: str

    @property
    def fingerprint(self) -> str:
        """Deterministic identity used for duplicate suppression.

        The source path is deliberately left out so the same line recorded
        by two sessions of one channel yields the same fingerprint.
        """
        key = "|".join(
            (
                self.channel_key,
                self.author,
                self.message,
                self.timestamp.isoformat(),
            )
        )
        return hashlib.sha1(key.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SwitchEvent:
    """Emitted whenever a channel's primary file changes.

    Attributes:
        reason: "initial", "inactive", "newer", "vanished" or "empty".
    """

    channel_key: str
    previous_path: str | None
    current_path: str | None
    reason: str
    at: float
