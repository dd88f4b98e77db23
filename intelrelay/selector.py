"""
selector.py — Primary/standby assignment per channel.

Each channel is either without a primary or has exactly one.  Switching
away from an existing primary is damped two ways: a challenger must be
clearly better (the primary went quiet, or the challenger is newer by more
than ``newer_margin``), and no switch happens within ``switch_cooldown``
seconds of the previous one.  Together they keep two sessions writing the
same channel at the same moment from flapping the primary back and forth.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from intelrelay.events import ChannelState, LogFile, SwitchEvent

logger = logging.getLogger(__name__)


def _newest(files: Iterable[LogFile]) -> LogFile | None:
    # Path as secondary key keeps the choice deterministic on equal mtimes.
    return max(files, key=lambda f: (f.last_modified_at, f.path), default=None)


class PrimarySelector:
    """Owns every :class:`ChannelState` and decides switches.

    Parameters:
        switch_cooldown: Minimum seconds between two switches of a channel.
        newer_margin:    How much newer (seconds of mtime) a challenger must
                         be to displace a primary that is still active.
    """

    def __init__(self, switch_cooldown: float = 5.0, newer_margin: float = 10.0) -> None:
        self.switch_cooldown = switch_cooldown
        self.newer_margin = newer_margin
        self._states: dict[str, ChannelState] = {}

    def get(self, channel_key: str) -> ChannelState | None:
        return self._states.get(channel_key)

    def primary_of(self, channel_key: str) -> str | None:
        state = self._states.get(channel_key)
        return state.primary_path if state else None

    def states(self) -> list[ChannelState]:
        return list(self._states.values())

    def clear(self) -> None:
        self._states.clear()

    def update(
        self,
        channel_key: str,
        candidates: list[LogFile],
        now: float,
        is_active: Callable[[str], bool],
    ) -> SwitchEvent | None:
        """Re-evaluate one channel against its current candidate files.

        Returns a :class:`SwitchEvent` if the primary changed.
        """
        state = self._states.get(channel_key)
        if state is None:
            state = ChannelState(channel_key=channel_key)
            self._states[channel_key] = state

        by_path = {f.path: f for f in candidates}
        previous = state.primary_path
        chosen: LogFile | None = None
        reason = ""

        if not by_path:
            del self._states[channel_key]
            if previous is None:
                return None
            return self._emit(channel_key, previous, None, "empty", now)

        if previous is None:
            chosen, reason = _newest(by_path.values()), "initial"
        elif previous not in by_path:
            # Primary is gone; fall back immediately, cooldown or not.
            chosen, reason = _newest(by_path.values()), "vanished"
        else:
            current = by_path[previous]
            challenger = _newest(f for f in by_path.values() if f.path != previous)
            if challenger is not None and self._cooldown_elapsed(state, now):
                lead = challenger.last_modified_at - current.last_modified_at
                if not is_active(current.path) and lead > 0:
                    chosen, reason = challenger, "inactive"
                elif lead > self.newer_margin:
                    chosen, reason = challenger, "newer"

        if chosen is not None:
            state.primary_path = chosen.path
            state.last_switch_at = now
        state.standby_paths = set(by_path) - {state.primary_path}

        if chosen is None:
            return None
        return self._emit(channel_key, previous, chosen.path, reason, now)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cooldown_elapsed(self, state: ChannelState, now: float) -> bool:
        if state.last_switch_at is None:
            return True
        return now - state.last_switch_at > self.switch_cooldown

    @staticmethod
    def _emit(
        channel_key: str,
        previous: str | None,
        current: str | None,
        reason: str,
        now: float,
    ) -> SwitchEvent:
        event = SwitchEvent(
            channel_key=channel_key,
            previous_path=previous,
            current_path=current,
            reason=reason,
            at=now,
        )
        logger.info(
            "Primary for %s: %s -> %s (%s)",
            channel_key, previous, current, reason,
        )
        return event
