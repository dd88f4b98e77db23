"""
monitor.py — Directory change notifications for intel-relay.

Uses the ``watchdog`` library to watch the chat log directory and converts
raw events on chat logs into ``FileEvent`` objects passed to a callback.
The callback runs on watchdog's observer thread; the dispatcher hands it
a function that forwards the event onto its event loop.

Notifications are only a hint to rescan sooner: the dispatcher also polls,
so a missed or dropped event costs latency, never data.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable

from watchdog.events import (
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from intelrelay.channels import is_candidate
from intelrelay.events import FileEvent

logger = logging.getLogger(__name__)

# watchdog event class -> FileEvent.event_type; anything else is dropped.
_KINDS = {
    FileModifiedEvent: "modify",
    FileCreatedEvent: "create",
    FileMovedEvent: "rename",
    FileDeletedEvent: "delete",
}


class ChatLogHandler(FileSystemEventHandler):
    """Translates watchdog events on chat logs into FileEvent callbacks."""

    def __init__(self, callback: Callable[[FileEvent], None]) -> None:
        super().__init__()
        self._forward = callback

    def on_any_event(self, event) -> None:  # noqa: ANN001
        kind = _KINDS.get(type(event))
        if kind is None or event.is_directory:
            return

        # A log renamed into place counts under its new name.
        path = os.fsdecode(getattr(event, "dest_path", None) or event.src_path)
        if not is_candidate(path):
            return

        notice = FileEvent(timestamp=time.time(), event_type=kind, file_path=path)
        try:
            self._forward(notice)
        except Exception:
            logger.exception("Notification handler failed for %s", notice)


class DirectoryMonitor:
    """Owns one watchdog observer for one directory.

    Args:
        path:     Directory to watch (not recursive; EVE keeps chat logs flat).
        callback: Receives a ``FileEvent`` per relevant change.
    """

    def __init__(self, path: str, callback: Callable[[FileEvent], None]) -> None:
        self.path = path
        self._handler = ChatLogHandler(callback)
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        """Start the observer thread.  Does not block."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(self._handler, self.path, recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("Watching: %s", self.path)

    def stop(self) -> None:
        """Stop the observer and wait briefly for its thread."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
            logger.info("Monitor stopped.")
