"""
dedup.py — Time-windowed duplicate suppression for chat records.

Two sessions logged into one channel write the same lines to two files,
and a primary switch may re-read a few lines the old primary already
delivered.  Every record passes through :class:`DedupFilter` keyed by its
fingerprint; a fingerprint seen inside the retention window is dropped.

Each entry carries a delivery state.  ``pending`` marks a delivery in
flight so a second task holding the same fingerprint is turned away
instead of racing it.
"""

from __future__ import annotations

import enum
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable


class Verdict(enum.Enum):
    DELIVER = "deliver"
    DUPLICATE = "duplicate"


class DeliveryState(enum.Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass
class DedupEntry:
    state: DeliveryState
    inserted_at: float


class DedupFilter:
    """Fingerprint set with insertion-time eviction.

    Parameters:
        retention:   Seconds an entry is remembered (default one hour).
        max_entries: Hard cap; the oldest entries go first when exceeded.
        clock:       Time source, overridable in tests.
    """

    def __init__(
        self,
        retention: float = 3600.0,
        max_entries: int = 50_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.retention = retention
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, DedupEntry] = OrderedDict()
        self._duplicates = 0

    def __contains__(self, fingerprint: str) -> bool:
        return fingerprint in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def should_deliver(self, fingerprint: str) -> Verdict:
        """Claim *fingerprint* for delivery.

        On ``DELIVER`` the fingerprint is recorded as pending; the caller
        must follow up with :meth:`mark_delivered` or :meth:`mark_failed`.
        """
        now = self._clock()
        self.sweep(now)

        if fingerprint in self._entries:
            self._duplicates += 1
            return Verdict.DUPLICATE

        self._entries[fingerprint] = DedupEntry(DeliveryState.PENDING, now)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
        return Verdict.DELIVER

    def state_of(self, fingerprint: str) -> DeliveryState | None:
        entry = self._entries.get(fingerprint)
        return entry.state if entry else None

    def mark_delivered(self, fingerprint: str) -> None:
        self._set_state(fingerprint, DeliveryState.DELIVERED)

    def mark_failed(self, fingerprint: str) -> None:
        self._set_state(fingerprint, DeliveryState.FAILED)

    def retry(self, fingerprint: str) -> bool:
        """Move a failed fingerprint back to pending for a caller-driven retry.

        Only one caller wins; everyone else gets ``False``.
        """
        entry = self._entries.get(fingerprint)
        if entry is None or entry.state is not DeliveryState.FAILED:
            return False
        entry.state = DeliveryState.PENDING
        return True

    def sweep(self, now: float | None = None) -> int:
        """Evict entries older than the retention window, whatever their state."""
        if now is None:
            now = self._clock()
        cutoff = now - self.retention
        evicted = 0
        while self._entries:
            entry = next(iter(self._entries.values()))
            if entry.inserted_at >= cutoff:
                break
            self._entries.popitem(last=False)
            evicted += 1
        return evicted

    def clear(self) -> None:
        self._entries.clear()

    @property
    def stats(self) -> dict[str, int]:
        states = {state.value: 0 for state in DeliveryState}
        for entry in self._entries.values():
            states[entry.state.value] += 1
        return {
            "tracked": len(self._entries),
            "dedup_hits": self._duplicates,
            **states,
        }

    def _set_state(self, fingerprint: str, state: DeliveryState) -> None:
        entry = self._entries.get(fingerprint)
        if entry is not None:
            entry.state = state
