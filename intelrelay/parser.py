"""
parser.py — Chat line grammar for EVE chat logs.

A chat line looks like::

    [ 2025.01.01 00:00:01 ] Pilot One > 4O-239 clear

Anything else (the channel header block, session banners, blank lines) is
rejected by returning ``None``; rejection is not an error.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone

from intelrelay.decoder import clean_line
from intelrelay.events import Record

# Author is everything up to the first ">", so a ">" inside the message
# stays part of the message.
LINE_PATTERN = re.compile(
    r"^\[\s*(?P<date>\d{4}\.\d{2}\.\d{2})\s+(?P<time>\d{2}:\d{2}:\d{2})\s*\]"
    r"\s*(?P<author>[^>]+?)\s*>\s*(?P<message>.+)$"
)

TIMESTAMP_FORMAT = "%Y.%m.%d %H:%M:%S"


def parse_timestamp(date: str, time_of_day: str, assume_utc: bool = True) -> datetime:
    """Convert the bracketed date/time into an aware UTC datetime.

    With ``assume_utc=False`` the value is read as local wall-clock time.
    """
    naive = datetime.strptime(f"{date} {time_of_day}", TIMESTAMP_FORMAT)
    if assume_utc:
        return naive.replace(tzinfo=timezone.utc)
    return naive.astimezone(timezone.utc)


def parse_line(
    line: str,
    channel_key: str = "",
    source_path: str = "",
    assume_utc: bool = True,
) -> Record | None:
    """Parse one decoded line into a :class:`Record`, or ``None``."""
    match = LINE_PATTERN.match(clean_line(line).strip())
    if match is None:
        return None

    author = match.group("author").strip()
    message = match.group("message").strip()
    if not author or not message:
        return None

    try:
        timestamp = parse_timestamp(
            match.group("date"), match.group("time"), assume_utc
        )
    except ValueError:
        # Shaped like a timestamp but not a real date (e.g. month 13).
        return None

    return Record(
        timestamp=timestamp,
        author=author,
        message=message,
        channel_key=channel_key,
        source_path=source_path,
    )


def parse_lines(
    lines: list[str],
    channel_key: str = "",
    source_path: str = "",
    assume_utc: bool = True,
) -> list[Record]:
    """Parse a batch of lines, dropping rejected ones."""
    records = []
    for line in lines:
        record = parse_line(line, channel_key, source_path, assume_utc)
        if record is not None:
            records.append(record)
    return records
