"""
liveness.py — Per-file growth tracking.

The tracker owns the registry of known chat log files.  Every directory
scan is fed through :meth:`LivenessTracker.observe`; a file counts as
*active* while its last observed growth is younger than the inactivity
threshold.
"""

from __future__ import annotations

import enum
import logging
import os

from intelrelay.channels import channel_key
from intelrelay.events import DirEntry, LogFile

logger = logging.getLogger(__name__)


class Observation(enum.Enum):
    NEW = "new"
    GREW = "grew"
    UNCHANGED = "unchanged"
    SHRANK = "shrank"


class LivenessTracker:
    """Registry of tracked log files and their recency.

    Parameters:
        directory:            Directory the scanned names are relative to.
        inactivity_threshold: Seconds without growth after which a file is
                              considered inactive.
        retention_hours:      Files whose mtime is older than this are not
                              tracked at all.
    """

    def __init__(
        self,
        directory: str,
        inactivity_threshold: float = 300.0,
        retention_hours: float = 24.0,
    ) -> None:
        self.directory = directory
        self.inactivity_threshold = inactivity_threshold
        self.retention_hours = retention_hours
        self._files: dict[str, LogFile] = {}

    # ------------------------------------------------------------------
    # Registry access
    # ------------------------------------------------------------------

    def __contains__(self, path: str) -> bool:
        return path in self._files

    def __len__(self) -> int:
        return len(self._files)

    def get(self, path: str) -> LogFile | None:
        return self._files.get(path)

    def files(self) -> list[LogFile]:
        return list(self._files.values())

    def by_channel(self) -> dict[str, list[LogFile]]:
        """Group tracked files by channel key."""
        groups: dict[str, list[LogFile]] = {}
        for log_file in self._files.values():
            groups.setdefault(log_file.channel_key, []).append(log_file)
        return groups

    # ------------------------------------------------------------------
    # Scan updates
    # ------------------------------------------------------------------

    def is_recent(self, entry: DirEntry, now: float) -> bool:
        return now - entry.modified_at <= self.retention_hours * 3600.0

    def observe(self, entry: DirEntry, now: float) -> Observation | None:
        """Record one scan row.

        Returns ``None`` for names that are not chat logs.  A file seen for
        the first time gets its growth time seeded from its mtime, so an
        old session does not look active just because we started.
        """
        key = channel_key(entry.name)
        if key is None:
            return None

        path = os.path.join(self.directory, entry.name)
        log_file = self._files.get(path)
        if log_file is None:
            self._files[path] = LogFile(
                path=path,
                channel_key=key,
                size=entry.size,
                last_modified_at=entry.modified_at,
                last_observed_growth_at=min(entry.modified_at, now),
                first_seen_at=now,
            )
            logger.debug("Tracking %s (channel=%s)", path, key)
            return Observation.NEW

        previous = log_file.size
        log_file.size = entry.size
        log_file.last_modified_at = entry.modified_at

        if entry.size > previous:
            log_file.last_observed_growth_at = now
            return Observation.GREW
        if entry.size < previous:
            # Truncated or replaced: offsets into the old content are void.
            log_file.size_at_last_read = 0
            log_file.last_observed_growth_at = now
            logger.info("%s shrank (%d -> %d bytes)", path, previous, entry.size)
            return Observation.SHRANK
        return Observation.UNCHANGED

    def forget(self, path: str) -> LogFile | None:
        return self._files.pop(path, None)

    def prune(self, present: set[str]) -> list[LogFile]:
        """Drop every tracked path not in *present*; return what was dropped."""
        gone = [path for path in self._files if path not in present]
        return [self._files.pop(path) for path in gone]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_active(self, path: str, now: float) -> bool:
        log_file = self._files.get(path)
        if log_file is None:
            return False
        return now - log_file.last_observed_growth_at < self.inactivity_threshold

    def mark_read(self, path: str, offset: int) -> None:
        """Record the tail reader's new offset for *path*."""
        log_file = self._files.get(path)
        if log_file is not None:
            log_file.size_at_last_read = offset

    def clear(self) -> None:
        self._files.clear()
