"""
decoder.py — Incremental byte-to-line decoding for chat logs.

EVE writes its chat logs as UTF-16 little-endian with a byte-order mark,
but older clients and hand-made test files are plain UTF-8.  A
``LineDecoder`` belongs to exactly one file; it is fed the raw bytes the
tail reader pulls from disk together with their file offset and returns
the complete lines found so far.  The trailing, not yet terminated line is
kept as raw bytes so a multibyte character or a UTF-16 code unit split
across two reads is never decoded half-way.
"""

from __future__ import annotations

import codecs
import logging

from intelrelay.errors import DecodeError

logger = logging.getLogger(__name__)

# Checked in order; the UTF-8 BOM does not overlap the UTF-16 ones.
_BOMS = (
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)

_NEWLINES = {
    "utf-8": b"\n",
    "utf-16-le": b"\n\x00",
    "utf-16-be": b"\x00\n",
}

FALLBACK_ENCODING = "utf-8"


def sniff_encoding(head: bytes) -> tuple[str, int]:
    """Return ``(encoding, bom_length)`` for a file starting with *head*.

    Files without a byte-order mark are treated as UTF-8.
    """
    for bom, encoding in _BOMS:
        if head.startswith(bom):
            return encoding, len(bom)
    return FALLBACK_ENCODING, 0


def clean_line(line: str) -> str:
    """Strip carriage returns, stray BOM characters and NUL bytes."""
    return line.rstrip("\r").replace("\ufeff", "").replace("\x00", "")


class LineDecoder:
    """Turns successive reads of one file into complete text lines.

    Parameters:
        path:     File the decoder belongs to (used in errors and logs).
        encoding: Force an encoding instead of sniffing the file head.
    """

    def __init__(self, path: str = "", encoding: str | None = None) -> None:
        self.path = path
        self.encoding = encoding
        self._pending = b""
        self._consumed = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def consumed(self) -> int:
        """Absolute file offset up to which bytes have been accepted."""
        return self._consumed

    @property
    def pending(self) -> bytes:
        """Bytes of the trailing partial line awaiting a newline."""
        return self._pending

    def reset(self) -> None:
        """Forget everything; used when the file is truncated or replaced."""
        self.encoding = None
        self._pending = b""
        self._consumed = 0

    def feed(self, offset: int, data: bytes, head: bytes | None = None) -> list[str]:
        """Accept *data* read at file *offset* and return complete lines.

        Bytes at or below the already consumed offset are ignored, so
        re-feeding the same chunk is a no-op.  If *offset* lies beyond the
        consumed position (the reader skipped ahead), the stale partial line
        is discarded.

        Args:
            offset: File offset of ``data[0]``.
            data:   Raw bytes read from the file.
            head:   First bytes of the file, used to sniff the encoding when
                    decoding starts somewhere other than offset 0.

        Raises:
            DecodeError: If the complete region cannot be decoded with the
                file's encoding nor with the UTF-8 fallback.  The decoder
                state is left untouched so the read can be retried.
        """
        end = offset + len(data)
        if end <= self._consumed:
            return []
        pending = self._pending
        if offset < self._consumed:
            data = data[self._consumed - offset:]
            offset = self._consumed
        elif offset > self._consumed:
            if pending:
                logger.debug(
                    "Dropping %d stale partial bytes of %s (jump %d -> %d)",
                    len(pending), self.path, self._consumed, offset,
                )
            pending = b""

        buf = pending + data
        start = offset - len(pending)

        encoding = self.encoding
        if encoding is None:
            if start == 0:
                if len(buf) < 3 and b"\n" not in buf:
                    # Too short to tell a BOM from text; wait for more.
                    self._pending = buf
                    self._consumed = end
                    return []
                encoding, bom_len = sniff_encoding(buf)
                buf = buf[bom_len:]
                start += bom_len
            else:
                encoding, _ = sniff_encoding(head or b"")

        try:
            lines, rest = self._split(buf, start, encoding)
        except UnicodeDecodeError as exc:
            if encoding == FALLBACK_ENCODING:
                raise DecodeError(self.path, encoding, str(exc)) from exc
            try:
                lines, rest = self._split(buf, start, FALLBACK_ENCODING)
            except UnicodeDecodeError as exc2:
                raise DecodeError(self.path, encoding, str(exc2)) from exc2
            logger.warning(
                "%s is not valid %s; falling back to %s",
                self.path, encoding, FALLBACK_ENCODING,
            )
            encoding = FALLBACK_ENCODING

        self.encoding = encoding
        self._pending = rest
        self._consumed = end
        return lines

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _split(buf: bytes, start: int, encoding: str) -> tuple[list[str], bytes]:
        """Decode *buf* up to its last complete line.

        *start* is the absolute file offset of ``buf[0]``; it keeps UTF-16
        newline matches aligned on code-unit boundaries.
        """
        newline = _NEWLINES.get(encoding, b"\n")
        unit = len(newline)
        if start % unit:
            # Reader landed mid code unit; resync on the next boundary.
            buf = buf[1:]
            start += 1

        idx = buf.rfind(newline)
        while idx >= 0 and (start + idx) % unit:
            idx = buf.rfind(newline, 0, idx + unit - 1)
        if idx < 0:
            return [], buf

        cut = idx + unit
        text = buf[:cut].decode(encoding)
        lines = [clean_line(line) for line in text.split("\n")[:-1]]
        return lines, buf[cut:]
