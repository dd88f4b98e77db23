"""
tailer.py — Incremental byte-offset tailing of chat logs.

One :class:`TailCursor` per file remembers how far the file has been
consumed.  Reads happen in a worker thread so a slow disk never stalls the
event loop, and a per-cursor busy flag guarantees that one file is never
read by two overlapping triggers: the second trigger only asks for a rerun.

Read semantics:
    * never tailed   → read the whole file (``initial=True``); the caller
                       applies the freshness window to that history
    * already tailed → read bytes from the cursor offset to end of file
    * shrank         → the file was truncated/replaced; start over at 0 as
                       if it had never been tailed
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field

from intelrelay.decoder import LineDecoder
from intelrelay.errors import FileVanished

logger = logging.getLogger(__name__)

HEAD_SIZE = 4


@dataclass
class TailCursor:
    """Read position and guards for one file."""

    path: str
    offset: int = 0
    tailed: bool = False
    busy: bool = False
    rerun: bool = False
    reset_pending: bool = False
    decoder: LineDecoder = field(init=False)

    def __post_init__(self) -> None:
        self.decoder = LineDecoder(self.path)


@dataclass
class TailChunk:
    """Result of one read.

    Attributes:
        offset:  File offset of ``data[0]``.
        data:    Raw bytes read in this pass.
        lines:   Complete lines decoded from the bytes seen so far.
        initial: True when this pass read the file's pre-existing history.
    """

    path: str
    offset: int
    data: bytes
    lines: list[str]
    initial: bool

    @property
    def end(self) -> int:
        return self.offset + len(self.data)


def _read_from(path: str, offset: int) -> tuple[bytes, bytes, int]:
    """Blocking read of ``[offset, EOF)``; runs in a worker thread.

    Returns ``(head, data, size)``.  When the file is shorter than *offset*
    no data is read and the caller deals with the truncation.
    """
    try:
        with open(path, "rb") as fh:
            size = os.fstat(fh.fileno()).st_size
            head = fh.read(HEAD_SIZE)
            if size < offset:
                return head, b"", size
            fh.seek(offset)
            # Stop at the size snapshot so the offset stays exact even if
            # the writer appends while we read.
            data = fh.read(size - offset)
    except FileNotFoundError as exc:
        raise FileVanished(path) from exc
    return head, data, size


def _rewind(cursor: TailCursor) -> None:
    cursor.offset = 0
    cursor.tailed = False
    cursor.decoder.reset()


class TailReader:
    """Owns all tail cursors for one engine instance."""

    def __init__(self) -> None:
        self._cursors: dict[str, TailCursor] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Cursor bookkeeping
    # ------------------------------------------------------------------

    def cursor(self, path: str) -> TailCursor:
        cursor = self._cursors.get(path)
        if cursor is None:
            cursor = TailCursor(path)
            self._cursors[path] = cursor
        return cursor

    def has_tailed(self, path: str) -> bool:
        cursor = self._cursors.get(path)
        return cursor is not None and cursor.tailed

    def offset(self, path: str) -> int:
        cursor = self._cursors.get(path)
        return cursor.offset if cursor else 0

    def is_busy(self, path: str) -> bool:
        cursor = self._cursors.get(path)
        return cursor is not None and cursor.busy

    def seek_to_end(self, path: str, size: int) -> None:
        """Skip a previously tailed file forward to *size*.

        Used when a standby that was tailed before becomes primary again:
        whatever it gained while on standby was delivered from the other
        file and is not replayed.
        """
        cursor = self.cursor(path)
        if size > cursor.offset:
            logger.debug("Seeking %s from %d to %d", path, cursor.offset, size)
            cursor.offset = size

    def reset(self, path: str) -> None:
        """Treat *path* as never tailed (truncation/rotation).

        While a read of *path* is in flight the reset is deferred: the read
        is discarded when it returns and a rerun is requested.
        """
        cursor = self._cursors.get(path)
        if cursor is None:
            return
        if cursor.busy:
            cursor.reset_pending = True
            cursor.rerun = True
            return
        _rewind(cursor)

    def take_rerun(self, path: str) -> bool:
        """Return and clear the rerun request recorded while *path* was busy."""
        cursor = self._cursors.get(path)
        if cursor is None or not cursor.rerun:
            return False
        cursor.rerun = False
        return True

    def forget(self, path: str) -> None:
        self._cursors.pop(path, None)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Refuse new reads; reads already running finish normally."""
        self._closed = True

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    async def read(self, path: str) -> TailChunk | None:
        """Read whatever is new in *path*.

        Returns ``None`` if the reader is closed, the file is already being
        read, or the file was reset while this read ran; in the last two
        cases a rerun is requested.

        Raises:
            FileVanished: The file no longer exists.
            DecodeError:  The new bytes cannot be decoded; the offset is
                          not advanced so the next tick retries.
        """
        if self._closed:
            return None
        cursor = self.cursor(path)
        if cursor.busy:
            cursor.rerun = True
            return None

        cursor.busy = True
        try:
            chunk = await self._read(cursor)
        finally:
            cursor.busy = False
            discard = cursor.reset_pending
            if discard:
                cursor.reset_pending = False
                _rewind(cursor)
        if discard:
            logger.debug("%s was reset during a read; chunk discarded", path)
            return None
        return chunk

    async def _read(self, cursor: TailCursor) -> TailChunk:
        start = cursor.offset
        head, data, size = await asyncio.to_thread(_read_from, cursor.path, start)
        if size < start:
            logger.info(
                "%s truncated (%d < %d); rereading from start",
                cursor.path, size, start,
            )
            _rewind(cursor)
            start = 0
            head, data, size = await asyncio.to_thread(_read_from, cursor.path, 0)

        initial = not cursor.tailed
        lines = cursor.decoder.feed(start, data, head)

        cursor.offset = start + len(data)
        cursor.tailed = True
        return TailChunk(
            path=cursor.path,
            offset=start,
            data=data,
            lines=lines,
            initial=initial,
        )
