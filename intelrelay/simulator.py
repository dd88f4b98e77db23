#!/usr/bin/env python3
"""
simulator.py — Chat log simulator for intel-relay testing.

Writes EVE-style chat logs (UTF-16 with BOM, session header, CRLF lines)
into a directory, the way several game clients logged into one channel
would:
  • One log file per client session, same channel, different suffix
  • Every message appended to every session's file
  • Optionally, the first session goes quiet part-way through, so the
    relay has to switch its primary to another file

Run it against the directory the relay is watching and check that each
intel line reaches the server exactly once.

Usage
-----
    python -m intelrelay.simulator --target-dir /tmp/chatlogs --sessions 2 --quiet-after 10

    # Or use the default (creates its own temp dir)
    python -m intelrelay.simulator
"""

from __future__ import annotations

import argparse
import logging
import os
import random
import shutil
import tempfile
import time
import zlib
from datetime import datetime, timezone

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("intelrelay.simulator")

ENCODING = "utf-16-le"
BOM = "\ufeff"

_PILOTS = ["Pilot One", "Scout Two", "Hauler Three", "Cyno Alt"]
_SYSTEMS = ["4O-239", "RQH-MY", "Q-02UL", "HED-GP", "GE-8JV"]
_MESSAGES = [
    "{system} clear",
    "{system} 2 red on gate",
    "{system} +1 neut in belt",
    "status {system}?",
    "{system} hostile gang coming from {other}",
    "cyno up in {system}",
    "o7",
    "anyone up for a roam?",
]

_HEADER = (
    "\r\n\r\n"
    "        ---------------------------------------------------------------\r\n"
    "\r\n"
    "          Channel ID:      {channel_id}\r\n"
    "          Channel Name:    {channel}\r\n"
    "          Listener:        {listener}\r\n"
    "          Session started: {started}\r\n"
    "        ---------------------------------------------------------------\r\n"
    "\r\n"
)


def format_timestamp(when: datetime) -> str:
    return when.strftime("%Y.%m.%d %H:%M:%S")


def format_line(when: datetime, author: str, message: str) -> str:
    """Render one chat line as EVE writes it."""
    return f"[ {format_timestamp(when)} ] {author} > {message}\r\n"


def channel_id(channel: str) -> int:
    """Stable negative ID for *channel*, the same on every run."""
    return -(zlib.crc32(channel.encode("utf-8")) % 100000)


def log_filename(channel: str, started: datetime, character_id: int | None = None) -> str:
    name = f"{channel}_{started.strftime('%Y%m%d_%H%M%S')}"
    if character_id is not None:
        name += f"_{character_id}"
    return name + ".txt"


def create_log(
    target_dir: str,
    channel: str,
    listener: str,
    started: datetime,
    character_id: int | None = None,
) -> str:
    """Create a new session log with its header and return its path."""
    path = os.path.join(target_dir, log_filename(channel, started, character_id))
    header = _HEADER.format(
        channel_id=channel_id(channel),
        channel=channel,
        listener=listener,
        started=format_timestamp(started),
    )
    with open(path, "w", encoding=ENCODING, newline="") as fh:
        fh.write(BOM + header)
    return path


def append_line(path: str, when: datetime, author: str, message: str) -> None:
    with open(path, "a", encoding=ENCODING, newline="") as fh:
        fh.write(format_line(when, author, message))


def random_message(rng: random.Random) -> tuple[str, str]:
    system, other = rng.sample(_SYSTEMS, 2)
    template = rng.choice(_MESSAGES)
    return rng.choice(_PILOTS), template.format(system=system, other=other)


def simulate_channel(
    target_dir: str,
    channel: str = "Intel",
    sessions: int = 2,
    messages: int = 20,
    interval: float = 1.0,
    quiet_after: int | None = None,
    seed: int | None = None,
) -> list[str]:
    """Write *messages* chat lines into *sessions* logs of one channel.

    Args:
        target_dir:  Directory to write the logs in.
        channel:     Channel name used in filenames and header.
        sessions:    Number of concurrently logging client sessions.
        messages:    Number of chat lines to write.
        interval:    Seconds between lines.
        quiet_after: Stop writing to the first session after this many
                     lines (simulates that client closing).
        seed:        Seed for reproducible message choice.

    Returns:
        Paths of the session logs.
    """
    os.makedirs(target_dir, exist_ok=True)
    rng = random.Random(seed)
    started = datetime.now(timezone.utc).replace(microsecond=0)

    paths = [
        create_log(target_dir, channel, f"Listener {i + 1}", started, 90000000 + i)
        for i in range(sessions)
    ]
    logger.info("📝 Simulating %s with %d sessions in: %s", channel, sessions, target_dir)

    for n in range(messages):
        when = datetime.now(timezone.utc)
        author, message = random_message(rng)
        for i, path in enumerate(paths):
            if i == 0 and quiet_after is not None and n >= quiet_after:
                continue
            append_line(path, when, author, message)
        if quiet_after is not None and n + 1 == quiet_after:
            logger.info("Session 1 went quiet after %d lines", quiet_after)
        time.sleep(interval)

    logger.info("✅ Wrote %d lines per active session.", messages)
    return paths


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main() -> None:
    parser = argparse.ArgumentParser(
        prog="intel-relay-simulator",
        description="Write redundant EVE chat logs for testing the relay.",
    )
    parser.add_argument(
        "--target-dir",
        default=None,
        help="Directory to write logs in (default: auto-created temp dir).",
    )
    parser.add_argument("--channel", default="Intel", help="Channel name (default: Intel).")
    parser.add_argument(
        "--sessions",
        type=int,
        default=2,
        help="Number of client sessions logging the channel (default: 2).",
    )
    parser.add_argument(
        "--messages",
        type=int,
        default=20,
        help="Number of chat lines to write (default: 20).",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=1.0,
        help="Seconds between lines (default: 1).",
    )
    parser.add_argument(
        "--quiet-after",
        type=int,
        default=None,
        help="Stop writing the first session after N lines.",
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Delete the target directory when done.",
    )

    args = parser.parse_args()

    target = args.target_dir or tempfile.mkdtemp(prefix="intelrelay_sim_")

    try:
        simulate_channel(
            target,
            channel=args.channel,
            sessions=args.sessions,
            messages=args.messages,
            interval=args.interval,
            quiet_after=args.quiet_after,
        )
    finally:
        if args.cleanup and os.path.isdir(target):
            shutil.rmtree(target, ignore_errors=True)
            logger.info("Removed simulated logs in %s", target)
        else:
            logger.info("Simulated logs left in %s", target)


if __name__ == "__main__":
    main()
