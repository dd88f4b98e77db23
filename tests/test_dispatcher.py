"""End-to-end tests for intelrelay.dispatcher against real files."""

import asyncio
import time

import pytest

from intelrelay.config import RelayConfig
from intelrelay.dedup import DeliveryState
from intelrelay.dispatcher import Dispatcher, scan_directory
from intelrelay.errors import ConfigError, WatchPathError
from intelrelay.events import DirEntry, FileEvent

from conftest import RecordingSink, append_log, eve_line, make_dispatcher, write_log

FILE_A = "Intel_20250101_000000_111.txt"
FILE_B = "Intel_20250101_000000_222.txt"


async def step(dispatcher):
    await dispatcher.tick()
    await dispatcher.wait_idle()


def run_steps(dispatcher, count=1):
    async def scenario():
        for _ in range(count):
            await step(dispatcher)

    asyncio.run(scenario())


# ---------------------------------------------------------------------------
# Directory listing
# ---------------------------------------------------------------------------

def test_scan_directory_lists_files_only(tmp_path):
    (tmp_path / "sub").mkdir()
    write_log(tmp_path / FILE_A, "", mtime=1000.0)
    entries = scan_directory(str(tmp_path))
    assert len(entries) == 1
    entry = entries[0]
    assert entry.name == FILE_A
    assert entry.size == (tmp_path / FILE_A).stat().st_size
    assert entry.modified_at == 1000.0


def test_missing_logs_dir_is_config_error(sink):
    with pytest.raises(ConfigError):
        Dispatcher(RelayConfig(), sink)


def test_missing_directory_is_fatal(tmp_path, clock, sink):
    dispatcher = make_dispatcher(tmp_path / "nope", clock, sink)
    with pytest.raises(WatchPathError):
        asyncio.run(dispatcher.run())


# ---------------------------------------------------------------------------
# History and freshness
# ---------------------------------------------------------------------------

def test_history_outside_freshness_window_is_skipped(tmp_path, clock, sink):
    now = clock.now
    lines = [eve_line(now - 1000 + i, "Old", f"line {i}") for i in range(498)]
    lines.append(eve_line(now - 30, "Scout", "4O-239 red"))
    lines.append(eve_line(now - 10, "Scout", "4O-239 clear"))
    write_log(tmp_path / FILE_A, "".join(lines), mtime=now)

    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)

    assert sink.messages == ["4O-239 red", "4O-239 clear"]
    assert dispatcher.stats.messages_processed == 500
    assert dispatcher.stats.history_skipped == 498
    assert dispatcher.stats.intel_sent == 2


def test_appended_lines_bypass_freshness(tmp_path, clock, sink):
    path = tmp_path / FILE_A
    write_log(path, "", mtime=clock.now)
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)

    # Old timestamp, but written after the initial read.
    append_log(path, eve_line(clock.now - 7200, "Pilot", "late line"), mtime=clock.advance(1))
    run_steps(dispatcher)
    assert sink.messages == ["late line"]


def test_selected_primary_and_parse(tmp_path, clock, sink):
    now = clock.now
    write_log(tmp_path / FILE_A, eve_line(now, "Pilot One", "4O-239 clear"), mtime=now)
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)

    (record,) = sink.records
    assert record.author == "Pilot One"
    assert record.channel_key == "Intel"
    assert record.source_path == str(tmp_path / FILE_A)
    assert dispatcher.selector.primary_of("Intel") == str(tmp_path / FILE_A)
    assert dispatcher.stats.files_tracked == 1
    assert dispatcher.stats.channels == 1


def test_unrelated_files_ignored(tmp_path, clock, sink):
    (tmp_path / "notes.txt").write_text("[ 2025.01.01 00:00:00 ] A > b\n")
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)
    assert sink.records == []
    assert dispatcher.stats.files_tracked == 0


def test_files_beyond_retention_not_tracked(tmp_path, clock, sink):
    write_log(tmp_path / FILE_A, eve_line(clock.now, "A", "b"), mtime=clock.now - 2 * 86400)
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)
    assert sink.records == []
    assert dispatcher.stats.files_tracked == 0


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------

def test_same_record_twice_delivered_once(tmp_path, clock, sink, sample_record):
    dispatcher = make_dispatcher(tmp_path, clock, sink)

    async def scenario():
        return [
            await dispatcher.process_record(sample_record),
            await dispatcher.process_record(sample_record),
        ]

    assert asyncio.run(scenario()) == [True, False]
    assert len(sink.records) == 1
    assert dispatcher.stats.duplicates_suppressed == 1
    assert dispatcher.dedup.state_of(sample_record.fingerprint) is DeliveryState.DELIVERED


def test_same_line_in_two_sessions_delivered_once(tmp_path, clock, sink):
    t0 = clock.now
    a, b = tmp_path / FILE_A, tmp_path / FILE_B
    write_log(a, "", mtime=t0 - 5)
    write_log(b, "", mtime=t0 - 6)
    dispatcher = make_dispatcher(tmp_path, clock, sink, inactivity_threshold=5)
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(a)

    line = eve_line(t0 + 1, "Scout", "RQH-MY 2 red on gate")
    append_log(a, line, mtime=t0 + 1)
    append_log(b, line, mtime=t0 + 1)
    clock.now = t0 + 1
    run_steps(dispatcher)
    assert sink.messages == ["RQH-MY 2 red on gate"]

    # A goes quiet; B carries on and takes over, replaying its history.
    append_log(b, eve_line(t0 + 10, "Scout", "RQH-MY clear"), mtime=t0 + 10)
    clock.now = t0 + 10
    run_steps(dispatcher)

    assert dispatcher.selector.primary_of("Intel") == str(b)
    assert sink.messages == ["RQH-MY 2 red on gate", "RQH-MY clear"]
    assert dispatcher.stats.duplicates_suppressed == 1


# ---------------------------------------------------------------------------
# Primary switching
# ---------------------------------------------------------------------------

def test_switch_to_newer_session(tmp_path, clock, sink):
    t0 = clock.now
    a, b = tmp_path / FILE_A, tmp_path / FILE_B
    write_log(a, "", mtime=t0)
    switches = []
    config = RelayConfig(logs_dir=str(tmp_path)).with_overrides(inactivity_threshold=5)
    dispatcher = Dispatcher(
        config, sink, is_relevant=lambda m, c: True, clock=clock,
        on_switch=switches.append, watch=False,
    )
    run_steps(dispatcher)

    write_log(b, eve_line(t0 + 20, "Scout", "new session"), mtime=t0 + 20)
    clock.now = t0 + 20
    run_steps(dispatcher)

    assert [e.reason for e in switches] == ["initial", "inactive"]
    assert switches[-1].previous_path == str(a)
    assert switches[-1].current_path == str(b)
    assert dispatcher.selector.get("Intel").standby_paths == {str(a)}
    assert sink.messages == ["new session"]
    assert dispatcher.stats.switches == 2


def test_cooldown_delays_switch(tmp_path, clock, sink):
    t0 = clock.now
    a, b = tmp_path / FILE_A, tmp_path / FILE_B
    write_log(a, "", mtime=t0)
    dispatcher = make_dispatcher(
        tmp_path, clock, sink, inactivity_threshold=1, switch_cooldown=5
    )
    run_steps(dispatcher)

    write_log(b, "", mtime=t0 + 3)
    clock.now = t0 + 3
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(a)

    clock.now = t0 + 6
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(b)


def test_returning_primary_resumes_at_end(tmp_path, clock, sink):
    t0 = clock.now
    a, b = tmp_path / FILE_A, tmp_path / FILE_B
    write_log(a, "", mtime=t0)
    write_log(b, "", mtime=t0 - 1)
    dispatcher = make_dispatcher(tmp_path, clock, sink, inactivity_threshold=5)
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(a)

    append_log(b, eve_line(t0 + 10, "Scout", "from b"), mtime=t0 + 10)
    clock.now = t0 + 10
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(b)

    append_log(a, eve_line(t0 + 20, "Scout", "written while standby"), mtime=t0 + 20)
    clock.now = t0 + 20
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(a)
    assert dispatcher.reader.offset(str(a)) == a.stat().st_size

    append_log(a, eve_line(t0 + 21, "Scout", "after return"), mtime=t0 + 21)
    clock.now = t0 + 21
    run_steps(dispatcher)
    assert sink.messages == ["from b", "after return"]


def test_deleted_primary_falls_back(tmp_path, clock, sink):
    t0 = clock.now
    a, b = tmp_path / FILE_A, tmp_path / FILE_B
    write_log(a, "", mtime=t0)
    write_log(b, "", mtime=t0 - 1)
    dispatcher = make_dispatcher(tmp_path, clock, sink, switch_cooldown=60)
    run_steps(dispatcher)

    a.unlink()
    clock.advance(1)
    run_steps(dispatcher)
    assert dispatcher.selector.primary_of("Intel") == str(b)
    assert str(a) not in dispatcher.liveness

    b.unlink()
    clock.advance(1)
    run_steps(dispatcher)
    assert dispatcher.selector.get("Intel") is None
    assert dispatcher.stats.channels == 0


def test_truncated_file_is_reread_as_history(tmp_path, clock, sink):
    path = tmp_path / FILE_A
    write_log(path, eve_line(clock.now, "A", "before") * 20, mtime=clock.now)
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)
    assert sink.messages == ["before"]

    clock.advance(120)
    write_log(
        path,
        eve_line(clock.now - 100, "A", "stale") + eve_line(clock.now, "A", "fresh"),
        mtime=clock.now,
    )
    run_steps(dispatcher)
    assert sink.messages == ["before", "fresh"]
    assert dispatcher.stats.history_skipped == 1


def test_vanished_between_scan_and_read(tmp_path, clock, sink):
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    missing = DirEntry(FILE_A, 100, clock.now)

    async def scenario():
        dispatcher.apply_scan([missing], clock.now)
        dispatcher._schedule_reads()
        await dispatcher.wait_idle()

    asyncio.run(scenario())
    assert dispatcher.selector.get("Intel") is None
    assert str(tmp_path / FILE_A) not in dispatcher.liveness


# ---------------------------------------------------------------------------
# Relevance and sink failures
# ---------------------------------------------------------------------------

def test_irrelevant_lines_not_delivered(tmp_path, clock, sink):
    now = clock.now
    write_log(
        tmp_path / FILE_A,
        eve_line(now, "A", "o7") + eve_line(now, "B", "4O-239 red"),
        mtime=now,
    )
    dispatcher = make_dispatcher(
        tmp_path, clock, sink, is_relevant=lambda message, channel: "red" in message
    )
    run_steps(dispatcher)
    assert sink.messages == ["4O-239 red"]
    assert dispatcher.stats.messages_processed == 2
    assert dispatcher.stats.intel_detected == 1


def test_failed_delivery_marked_and_not_retried(tmp_path, clock, sample_record):
    sink = RecordingSink(fail=True)
    dispatcher = make_dispatcher(tmp_path, clock, sink)

    async def scenario():
        await dispatcher.process_record(sample_record)
        await dispatcher.process_record(sample_record)

    asyncio.run(scenario())
    assert len(sink.records) == 1
    assert dispatcher.dedup.state_of(sample_record.fingerprint) is DeliveryState.FAILED
    assert dispatcher.stats.sink_failures == 1
    assert dispatcher.stats.intel_sent == 0


class ExplodingSink:
    def __init__(self):
        self.calls = 0

    async def deliver(self, record):
        self.calls += 1
        raise RuntimeError("boom")


def test_sink_exception_does_not_stop_processing(tmp_path, clock):
    now = clock.now
    write_log(
        tmp_path / FILE_A,
        eve_line(now, "A", "first") + eve_line(now, "B", "second"),
        mtime=now,
    )
    sink = ExplodingSink()
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)
    assert sink.calls == 2
    assert dispatcher.stats.sink_failures == 2
    assert dispatcher.stats.errors == 0


class SlowSink:
    async def deliver(self, record):
        await asyncio.sleep(5)
        return True


def test_slow_sink_times_out(tmp_path, clock, sample_record):
    dispatcher = make_dispatcher(tmp_path, clock, SlowSink(), sink_timeout=0.05)
    assert asyncio.run(dispatcher.process_record(sample_record)) is False
    assert dispatcher.dedup.state_of(sample_record.fingerprint) is DeliveryState.FAILED


def test_predicate_error_is_counted(tmp_path, clock, sink, sample_record):
    def broken(message, channel):
        raise ValueError("bad predicate")

    dispatcher = make_dispatcher(tmp_path, clock, sink, is_relevant=broken)
    assert asyncio.run(dispatcher.process_record(sample_record)) is False
    assert dispatcher.stats.errors == 1
    assert sink.records == []


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------

def test_run_until_stopped(tmp_path, sink):
    path = tmp_path / FILE_A
    write_log(path, eve_line(time.time(), "Pilot", "4O-239 clear"))
    config = RelayConfig(logs_dir=str(tmp_path)).with_overrides(
        poll_interval=0.05, stats_interval=0
    )
    dispatcher = Dispatcher(config, sink, is_relevant=lambda m, c: True, watch=False)

    async def scenario():
        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.2)
        append_log(path, eve_line(time.time(), "Pilot", "4O-239 red"))
        await asyncio.sleep(0.3)
        dispatcher.stop()
        await asyncio.wait_for(task, 5)

    asyncio.run(scenario())
    assert sink.messages == ["4O-239 clear", "4O-239 red"]
    assert dispatcher.reader.closed
    assert len(dispatcher.liveness) == 0
    assert dispatcher.selector.states() == []
    assert len(dispatcher.dedup) == 0


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

def notice(path):
    return FileEvent(timestamp=time.time(), event_type="modify", file_path=str(path))


def counting(dispatcher):
    """Wrap ``tick`` and ``reader.read`` with call counters."""
    counts = {"ticks": 0, "reads": 0}
    tick, read = dispatcher.tick, dispatcher.reader.read

    async def counted_tick():
        counts["ticks"] += 1
        await tick()

    async def counted_read(path):
        chunk = await read(path)
        if chunk is not None:
            counts["reads"] += 1
        return chunk

    dispatcher.tick = counted_tick
    dispatcher.reader.read = counted_read
    return counts


def notifying_dispatcher(tmp_path, sink):
    config = RelayConfig(logs_dir=str(tmp_path)).with_overrides(
        poll_interval=30, debounce=0.2, stats_interval=0
    )
    return Dispatcher(config, sink, is_relevant=lambda m, c: True, watch=False)


def test_notification_burst_is_one_tick(tmp_path, sink):
    path = tmp_path / FILE_A
    write_log(path, "")
    dispatcher = notifying_dispatcher(tmp_path, sink)
    counts = counting(dispatcher)

    async def scenario():
        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.1)
        assert counts == {"ticks": 1, "reads": 1}

        for n in range(5):
            append_log(path, eve_line(time.time(), "Scout", f"burst {n}"))
            # Delivered from another thread, the way watchdog calls it.
            await asyncio.to_thread(dispatcher._notify, notice(path))
        await asyncio.sleep(0.5)
        snapshot = dict(counts)

        dispatcher.stop()
        await asyncio.wait_for(task, 5)
        return snapshot

    snapshot = asyncio.run(scenario())
    assert snapshot == {"ticks": 2, "reads": 2}
    assert sink.messages == [f"burst {n}" for n in range(5)]


def test_stop_signal_inside_burst_ends_loop(tmp_path, sink):
    path = tmp_path / FILE_A
    write_log(path, "")
    dispatcher = notifying_dispatcher(tmp_path, sink)
    counts = counting(dispatcher)

    async def scenario():
        task = asyncio.create_task(dispatcher.run())
        await asyncio.sleep(0.1)
        dispatcher._notify(notice(path))
        await asyncio.sleep(0.05)
        dispatcher._notifications.put_nowait(None)
        await asyncio.wait_for(task, 5)

    asyncio.run(scenario())
    assert counts["ticks"] == 1


def test_wait_for_trigger_drains_queue(tmp_path, clock, sink):
    dispatcher = make_dispatcher(tmp_path, clock, sink, poll_interval=0.05, debounce=0.01)

    async def scenario():
        dispatcher._notifications = asyncio.Queue()
        for _ in range(4):
            dispatcher._notifications.put_nowait(notice(tmp_path / FILE_A))
        await dispatcher._wait_for_trigger()
        drained = dispatcher._notifications.empty()
        # Nothing queued: returns after the poll interval.
        await asyncio.wait_for(dispatcher._wait_for_trigger(), 1)
        return drained

    assert asyncio.run(scenario()) is True
    assert not dispatcher._stopping


def test_notify_before_run_is_ignored(tmp_path, clock, sink):
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    dispatcher._notify(notice(tmp_path / FILE_A))
    assert dispatcher._notifications is None


def test_shrink_during_read_rereads_as_history(tmp_path, clock, sink):
    path = tmp_path / FILE_A
    write_log(path, eve_line(clock.now, "A", "before"), mtime=clock.now)
    dispatcher = make_dispatcher(tmp_path, clock, sink)
    run_steps(dispatcher)

    async def scenario():
        append_log(path, eve_line(clock.now, "A", "lost in truncation"), mtime=clock.advance(1))
        await dispatcher.tick()
        await asyncio.sleep(0)
        # The file is replaced while the drain task is still reading it.
        write_log(
            path,
            eve_line(clock.now - 100, "A", "stale") + eve_line(clock.now, "A", "fresh"),
            mtime=clock.advance(1),
        )
        dispatcher.apply_scan(scan_directory(str(tmp_path)), clock.now)
        await dispatcher.wait_idle()

    asyncio.run(scenario())
    assert sink.messages[0] == "before"
    assert sink.messages[-1] == "fresh"
    assert "stale" not in sink.messages
    assert dispatcher.reader.offset(str(path)) == path.stat().st_size
