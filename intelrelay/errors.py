"""
errors.py — Exception taxonomy for intel-relay.

Only ``WatchPathError`` and ``ConfigError`` are fatal; everything else is
caught by the dispatcher loop, counted and logged.  Lines that do not match
the chat grammar are not errors at all (the parser returns ``None``).
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for intel-relay errors."""


class DecodeError(RelayError):
    """Bytes read from a log could not be decoded.

    The file is skipped for this cycle and retried on the next tick.
    """

    def __init__(self, path: str, encoding: str, reason: str) -> None:
        super().__init__(f"Cannot decode {path} as {encoding}: {reason}")
        self.path = path
        self.encoding = encoding


class FileVanished(RelayError):
    """A file disappeared between the directory scan and the read."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File vanished: {path}")
        self.path = path


class SinkFailure(RelayError):
    """The sink rejected or could not receive a record."""


class WatchPathError(RelayError):
    """The watched directory does not exist or is not a directory."""


class ConfigError(RelayError):
    """Invalid configuration file or values."""
