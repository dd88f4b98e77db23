"""
channels.py — Derive a logical channel from a chat log filename.

EVE names every log ``<channel>_<YYYYMMDD>_<HHMMSS>[_<characterID>].txt``.
Two clients logged into the same channel write two files that differ only
in that suffix; both map to the same channel key.
"""

from __future__ import annotations

import os
import re

LOG_SUFFIX = ".txt"

_NAME_PATTERN = re.compile(r"^(?P<channel>.+?)_\d{8}_\d{6}(?:_\d+)?$")


def channel_key(filename: str) -> str | None:
    """Return the channel name for *filename*, or ``None`` if it is not a log.

    Accepts a bare filename or a full path.
    """
    base = os.path.basename(filename)
    stem, ext = os.path.splitext(base)
    if ext.lower() != LOG_SUFFIX:
        return None
    match = _NAME_PATTERN.match(stem)
    if match is None:
        return None
    return match.group("channel")


def is_candidate(filename: str) -> bool:
    """True if *filename* follows the chat-log naming convention."""
    return channel_key(filename) is not None
