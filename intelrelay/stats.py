"""
stats.py — Running counters for the relay.

``messages_processed`` counts every parsed chat line, including history
that the freshness window kept from being delivered.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import asdict, dataclass, field

import psutil

logger = logging.getLogger(__name__)


@dataclass
class RelayStats:
    files_tracked: int = 0
    channels: int = 0
    messages_processed: int = 0
    history_skipped: int = 0
    intel_detected: int = 0
    intel_sent: int = 0
    duplicates_suppressed: int = 0
    sink_failures: int = 0
    decode_errors: int = 0
    errors: int = 0
    switches: int = 0
    start_time: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

    def uptime(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.start_time

    def report(
        self,
        now: float | None = None,
        dedup_stats: dict[str, int] | None = None,
    ) -> None:
        """Log a one-block summary of the counters.

        *dedup_stats* is :attr:`DedupFilter.stats`; when given, the state
        of the fingerprint window is logged too.
        """
        uptime = int(self.uptime(now))
        hours, rest = divmod(uptime, 3600)
        minutes = rest // 60
        rss_mb = _rss_megabytes()

        logger.info("=== Intel relay stats ===")
        logger.info("Uptime              : %dh %dm", hours, minutes)
        logger.info("Files / channels    : %d / %d", self.files_tracked, self.channels)
        logger.info(
            "Messages processed  : %d (%d history skipped)",
            self.messages_processed, self.history_skipped,
        )
        logger.info(
            "Intel detected/sent : %d / %d (%d duplicates suppressed)",
            self.intel_detected, self.intel_sent, self.duplicates_suppressed,
        )
        logger.info(
            "Failures            : %d sink, %d decode, %d other",
            self.sink_failures, self.decode_errors, self.errors,
        )
        logger.info("Primary switches    : %d", self.switches)
        if dedup_stats is not None:
            logger.info(
                "Dedup window        : %d tracked (%d pending, %d failed)",
                dedup_stats["tracked"], dedup_stats["pending"], dedup_stats["failed"],
            )
        if rss_mb is not None:
            logger.info("Memory (RSS)        : %.1f MB", rss_mb)


def _rss_megabytes() -> float | None:
    try:
        return psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
    except (psutil.NoSuchProcess, psutil.AccessDenied) as exc:
        logger.debug("Cannot read process memory: %s", exc)
        return None
