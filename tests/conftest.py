"""Test fixtures and helpers."""

from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path

import pytest

from intelrelay.config import RelayConfig
from intelrelay.dispatcher import Dispatcher
from intelrelay.events import Record

# 2025-01-01T00:00:00Z
EPOCH_2025 = 1_735_689_600.0

HEADER = (
    "\r\n\r\n"
    "        ---------------------------------------------------------------\r\n"
    "          Channel ID:      -31337\r\n"
    "          Channel Name:    Intel\r\n"
    "          Listener:        Pilot One\r\n"
    "          Session started: 2025.01.01 00:00:00\r\n"
    "        ---------------------------------------------------------------\r\n"
)


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = EPOCH_2025) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSink:
    """In-memory sink; ``fail=True`` makes every delivery fail."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.records: list[Record] = []

    async def deliver(self, record: Record) -> bool:
        self.records.append(record)
        return not self.fail

    @property
    def messages(self) -> list[str]:
        return [r.message for r in self.records]


def at(seconds: float) -> datetime:
    """UTC datetime for an epoch offset."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def eve_line(when: float, author: str, message: str) -> str:
    return f"[ {at(when).strftime('%Y.%m.%d %H:%M:%S')} ] {author} > {message}\r\n"


def write_log(path: Path, text: str, mtime: float | None = None) -> None:
    """Create a UTF-16-LE chat log with BOM and header, followed by *text*."""
    path.write_bytes(("\ufeff" + HEADER + text).encode("utf-16-le"))
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def append_log(path: Path, text: str, mtime: float | None = None) -> None:
    with path.open("ab") as fh:
        fh.write(text.encode("utf-16-le"))
    if mtime is not None:
        os.utime(path, (mtime, mtime))


def make_dispatcher(
    logs_dir: Path,
    clock: FakeClock,
    sink: RecordingSink,
    is_relevant=lambda message, channel: True,
    **overrides,
) -> Dispatcher:
    config = RelayConfig(logs_dir=str(logs_dir)).with_overrides(**overrides)
    return Dispatcher(config, sink, is_relevant=is_relevant, clock=clock, watch=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def sample_record() -> Record:
    return Record(
        timestamp=datetime(2025, 1, 1, 0, 0, 1, tzinfo=timezone.utc),
        author="Pilot One",
        message="4O-239 clear",
        channel_key="Intel",
        source_path="/logs/Intel_20250101_000000_111.txt",
    )
