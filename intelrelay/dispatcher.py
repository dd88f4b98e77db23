"""
dispatcher.py — The relay engine loop.

Every tick runs the whole pipeline::

    scan directory → liveness → primary selection per channel
        → tail the primaries that grew → decode → parse
        → freshness window (history only) → intel predicate
        → dedup → sink.deliver()

Ticks are triggered by a watchdog notification (debounced, so a burst of
writes becomes one tick) or by the poll interval, whichever comes first.
Reads and deliveries for one file run in a single drain task, so records
of a channel reach the sink in file order; different files drain
concurrently, with at most ``max_inflight`` deliveries in flight.

Nothing that goes wrong with a single file or a single delivery stops the
loop.  Only a missing watch directory at startup is fatal.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from typing import Callable

from intelrelay.classifier import IntelClassifier
from intelrelay.config import RelayConfig
from intelrelay.dedup import DedupFilter, Verdict
from intelrelay.errors import ConfigError, DecodeError, FileVanished, WatchPathError
from intelrelay.events import DirEntry, FileEvent, Record, SwitchEvent
from intelrelay.liveness import LivenessTracker, Observation
from intelrelay.monitor import DirectoryMonitor
from intelrelay.parser import parse_lines
from intelrelay.selector import PrimarySelector
from intelrelay.sink import Sink
from intelrelay.stats import RelayStats
from intelrelay.tailer import TailReader

logger = logging.getLogger(__name__)

RelevancePredicate = Callable[[str, str], bool]


def scan_directory(directory: str) -> list[DirEntry]:
    """List the regular files in *directory* with their size and mtime.

    Files that vanish while listing are skipped.  A missing directory
    raises ``OSError``.
    """
    entries: list[DirEntry] = []
    with os.scandir(directory) as it:
        for entry in it:
            try:
                if not entry.is_file():
                    continue
                st = entry.stat()
            except FileNotFoundError:
                continue
            entries.append(DirEntry(entry.name, st.st_size, st.st_mtime))
    return entries


class Dispatcher:
    """Owns all engine state for one watched directory.

    Parameters:
        config:      Engine settings; ``config.logs_dir`` is required.
        sink:        Receives each distinct relevant record once.
        is_relevant: ``(message, channel_key) -> bool`` intel predicate.
                     Defaults to :class:`IntelClassifier`.
        clock:       Wall-clock source (epoch seconds).
        on_switch:   Called with every :class:`SwitchEvent`.
        watch:       Start a watchdog observer in :meth:`run`; with
                     ``False`` the loop only polls.
    """

    def __init__(
        self,
        config: RelayConfig,
        sink: Sink,
        is_relevant: RelevancePredicate | None = None,
        clock: Callable[[], float] = time.time,
        on_switch: Callable[[SwitchEvent], None] | None = None,
        watch: bool = True,
    ) -> None:
        if not config.logs_dir:
            raise ConfigError("No chat log directory configured")
        self.config = config
        self.directory = os.path.abspath(config.logs_dir)
        self.sink = sink
        self.is_relevant = is_relevant or IntelClassifier()
        self._clock = clock
        self._on_switch = on_switch
        self._watch = watch

        self.liveness = LivenessTracker(
            self.directory,
            inactivity_threshold=config.inactivity_threshold,
            retention_hours=config.retention_hours,
        )
        self.selector = PrimarySelector(
            switch_cooldown=config.switch_cooldown,
            newer_margin=config.newer_margin,
        )
        self.reader = TailReader()
        self.dedup = DedupFilter(retention=config.dedup_retention, clock=clock)
        self.stats = RelayStats(start_time=clock())

        self._delivery_slots = asyncio.Semaphore(config.max_inflight)
        self._drains: dict[str, asyncio.Task] = {}
        self._dirty: set[str] = set()
        self._monitor: DirectoryMonitor | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._notifications: asyncio.Queue[FileEvent | None] | None = None
        self._stopping = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def check_directory(self) -> None:
        if not os.path.isdir(self.directory):
            raise WatchPathError(f"Chat log directory not found: {self.directory}")

    async def run(self) -> None:
        """Tick until :meth:`stop` is called.

        Raises:
            WatchPathError: The watched directory does not exist.
        """
        self.check_directory()
        self._loop = asyncio.get_running_loop()
        self._notifications = asyncio.Queue()

        if self._watch:
            self._monitor = DirectoryMonitor(self.directory, self._notify)
            self._monitor.start()
        logger.info("Monitoring chat logs in: %s", self.directory)

        next_report = self._clock() + self.config.stats_interval
        try:
            await self._guarded_tick()
            while not self._stopping:
                await self._wait_for_trigger()
                if self._stopping:
                    break
                await self._guarded_tick()

                now = self._clock()
                evicted = self.dedup.sweep(now)
                if evicted:
                    logger.debug("Evicted %d fingerprints", evicted)
                if self.config.stats_interval and now >= next_report:
                    self.stats.report(now, self.dedup.stats)
                    next_report = now + self.config.stats_interval
        finally:
            await self._shutdown()

    def stop(self) -> None:
        """Ask the loop to finish.  Safe to call from the loop thread only."""
        if self._stopping:
            return
        logger.info("Stopping relay ...")
        self._stopping = True
        self.reader.close()
        if self._notifications is not None:
            self._notifications.put_nowait(None)

    async def _shutdown(self) -> None:
        if self._monitor is not None:
            await asyncio.to_thread(self._monitor.stop)
            self._monitor = None
        self.reader.close()
        await self.wait_idle()
        self.stats.report(self._clock(), self.dedup.stats)
        self.liveness.clear()
        self.selector.clear()
        self.dedup.clear()

    async def wait_idle(self) -> None:
        """Wait until every drain task, including reruns, has finished."""
        while self._drains:
            await asyncio.gather(*list(self._drains.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def _notify(self, event: FileEvent) -> None:
        # Runs on the watchdog thread.
        if self._loop is None or self._notifications is None:
            return
        self._loop.call_soon_threadsafe(self._notifications.put_nowait, event)

    async def _wait_for_trigger(self) -> None:
        assert self._notifications is not None
        try:
            event = await asyncio.wait_for(
                self._notifications.get(), self.config.poll_interval
            )
        except asyncio.TimeoutError:
            return
        if event is None:
            return

        # Let the burst settle, then fold it into this one tick.
        await asyncio.sleep(self.config.debounce)
        coalesced = 1
        while not self._notifications.empty():
            if self._notifications.get_nowait() is None:
                self._stopping = True
            coalesced += 1
        logger.debug("Tick after %d notification(s), first: %s", coalesced, event.file_path)

    # ------------------------------------------------------------------
    # One tick
    # ------------------------------------------------------------------

    async def _guarded_tick(self) -> None:
        try:
            await self.tick()
        except Exception:
            logger.exception("Tick failed")
            self.stats.errors += 1

    async def tick(self) -> None:
        """Rescan, reselect primaries and start reads of grown primaries."""
        now = self._clock()
        try:
            entries = await asyncio.to_thread(scan_directory, self.directory)
        except OSError:
            logger.exception("Cannot list %s", self.directory)
            self.stats.errors += 1
            return
        self.apply_scan(entries, now)
        self._schedule_reads()

    def apply_scan(self, entries: list[DirEntry], now: float) -> list[SwitchEvent]:
        """Feed one directory listing through liveness and selection."""
        present: set[str] = set()
        for entry in entries:
            if not self.liveness.is_recent(entry, now):
                continue
            observation = self.liveness.observe(entry, now)
            if observation is None:
                continue
            path = os.path.join(self.directory, entry.name)
            present.add(path)
            if observation is Observation.SHRANK:
                self.reader.reset(path)

        for log_file in self.liveness.prune(present):
            logger.info("No longer tracking %s", log_file.path)
            self.reader.forget(log_file.path)

        events = self._reselect(now)
        self.stats.files_tracked = len(self.liveness)
        self.stats.channels = len(self.selector.states())
        return events

    def _reselect(self, now: float, only: str | None = None) -> list[SwitchEvent]:
        groups = self.liveness.by_channel()
        keys = set(groups) | {s.channel_key for s in self.selector.states()}
        if only is not None:
            keys &= {only}

        events = []
        for key in sorted(keys):
            event = self.selector.update(
                key,
                groups.get(key, []),
                now,
                is_active=lambda path: self.liveness.is_active(path, now),
            )
            if event is not None:
                self._apply_switch(event)
                events.append(event)
        return events

    def _apply_switch(self, event: SwitchEvent) -> None:
        self.stats.switches += 1
        path = event.current_path
        if path is not None and self.reader.has_tailed(path):
            # A former primary coming back resumes at its current end.
            log_file = self.liveness.get(path)
            if log_file is not None:
                self.reader.seek_to_end(path, log_file.size)
                self.liveness.mark_read(path, self.reader.offset(path))
        if self._on_switch is not None:
            try:
                self._on_switch(event)
            except Exception:
                logger.exception("Switch callback raised for %s", event)

    def _schedule_reads(self) -> None:
        for state in self.selector.states():
            if not state.has_primary:
                continue
            path = state.primary_path
            log_file = self.liveness.get(path)
            if log_file is None:
                continue
            if self.reader.has_tailed(path) and log_file.size == self.reader.offset(path):
                continue
            self._spawn_drain(state.channel_key, path)

    def _spawn_drain(self, channel_key: str, path: str) -> None:
        if self.reader.closed:
            return
        if path in self._drains:
            self._dirty.add(path)
            return
        task = asyncio.get_running_loop().create_task(self._drain(channel_key, path))
        self._drains[path] = task

    # ------------------------------------------------------------------
    # Draining one file
    # ------------------------------------------------------------------

    async def _drain(self, channel_key: str, path: str) -> None:
        try:
            while True:
                self._dirty.discard(path)
                await self._drain_once(channel_key, path)
                if self.reader.closed:
                    break
                rerun = self.reader.take_rerun(path)
                if path not in self._dirty and not rerun:
                    break
        except Exception:
            logger.exception("Unexpected error while draining %s", path)
            self.stats.errors += 1
        finally:
            self._drains.pop(path, None)

    async def _drain_once(self, channel_key: str, path: str) -> None:
        try:
            chunk = await self.reader.read(path)
        except FileVanished:
            logger.warning("%s vanished before it could be read", path)
            self._drop_file(channel_key, path)
            return
        except DecodeError as exc:
            logger.warning("%s; retrying next tick", exc)
            self.stats.decode_errors += 1
            return
        if chunk is None:
            return

        self.liveness.mark_read(path, chunk.end)
        records = parse_lines(chunk.lines, channel_key, path, self.config.assume_utc)
        self.stats.messages_processed += len(records)

        if chunk.initial:
            fresh = self.fresh_records(records, self._clock())
            skipped = len(records) - len(fresh)
            self.stats.history_skipped += skipped
            if records:
                logger.info(
                    "Read %d history lines from %s, %d fresh",
                    len(records), os.path.basename(path), len(fresh),
                )
            records = fresh

        for record in records:
            await self.process_record(record)

    def fresh_records(self, records: list[Record], now: float) -> list[Record]:
        """Keep only records inside the freshness window ending at *now*."""
        cutoff = now - self.config.freshness_window
        return [r for r in records if r.timestamp.timestamp() >= cutoff]

    def _drop_file(self, channel_key: str, path: str) -> None:
        self.liveness.forget(path)
        self.reader.forget(path)
        self._reselect(self._clock(), only=channel_key)
        self.stats.files_tracked = len(self.liveness)
        self.stats.channels = len(self.selector.states())

    # ------------------------------------------------------------------
    # One record
    # ------------------------------------------------------------------

    async def process_record(self, record: Record) -> bool:
        """Filter, dedup and deliver one record.  Returns True if delivered."""
        try:
            relevant = self.is_relevant(record.message, record.channel_key)
        except Exception:
            logger.exception("Intel predicate failed on %r", record.message)
            self.stats.errors += 1
            return False
        if not relevant:
            return False
        self.stats.intel_detected += 1

        fingerprint = record.fingerprint
        if self.dedup.should_deliver(fingerprint) is Verdict.DUPLICATE:
            self.stats.duplicates_suppressed += 1
            logger.debug("Duplicate suppressed: %s %s", record.channel_key, record.message)
            return False

        timeout = self.config.sink_timeout or None
        async with self._delivery_slots:
            try:
                delivered = await asyncio.wait_for(self.sink.deliver(record), timeout)
            except asyncio.TimeoutError:
                logger.warning("Delivery to sink timed out after %.1fs", timeout)
                delivered = False
            except Exception:
                logger.exception("Sink raised while delivering %s", fingerprint)
                delivered = False

        if delivered:
            self.dedup.mark_delivered(fingerprint)
            self.stats.intel_sent += 1
        else:
            self.dedup.mark_failed(fingerprint)
            self.stats.sink_failures += 1
        return delivered
