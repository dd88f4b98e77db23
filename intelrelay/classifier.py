"""
classifier.py — Decide which chat lines are intel worth forwarding.

The dispatcher only needs a ``(message, channel_key) -> bool`` predicate;
:class:`IntelClassifier` is the default one.  Lines from dedicated intel
channels pass on a looser test than lines from general chat.
"""

from __future__ import annotations

import re
from typing import Iterable

DEFAULT_KEYWORDS = (
    "clear", "clr", "status", "stat",
    "red", "hostile", "neut", "neutral",
    "spike", "spikes", "spiked",
    "gate", "station", "pos", "citadel",
    "cyno", "bridge", "titan", "super",
    "fleet", "gang", "blob", "camp",
    "bubble", "drag", "pull", "stop",
    "warp", "align", "safe", "dock",
)

DEFAULT_CHANNEL_PATTERNS = (
    r"intel",
    r"phoenix.*intel",
    r"standing.*fleet",
    r"fleet.*intel",
    r"alliance.*intel",
    r"corp.*intel",
    r"military",
    r"defense",
    r"recon",
)

# Movement/location words that make an intel-channel line count even
# without a keyword.
_LIKELY_INTEL = re.compile(
    r"\b(gate|station|belt|asteroid|moon|planet|sun|warp|jump|dock|undock"
    r"|in|out|next|coming|going)\b|[+-]1\b",
    re.IGNORECASE,
)

# (substrings, boost) applied to the lower-cased message.
_CONFIDENCE_BOOSTS = (
    (("red", "hostile"), 0.3),
    (("clear", "clr"), 0.2),
    (("status", "stat"), 0.2),
    (("gate", "station"), 0.1),
    (("cyno", "bridge"), 0.3),
)

SOURCE_INTEL_CHANNEL = "intel_channel"
SOURCE_GENERAL_CHAT = "general_chat"


class IntelClassifier:
    """Keyword and channel-name based intel filter.

    Keywords are matched as substrings, so ``"red"`` also hits
    ``"reds"`` (and, admittedly, ``"bored"``).
    """

    def __init__(
        self,
        keywords: Iterable[str] = DEFAULT_KEYWORDS,
        channel_patterns: Iterable[str] = DEFAULT_CHANNEL_PATTERNS,
    ) -> None:
        self.keywords = tuple(k.lower() for k in keywords)
        self._channel_patterns = [re.compile(p, re.IGNORECASE) for p in channel_patterns]

    def __call__(self, message: str, channel_key: str) -> bool:
        return self.is_relevant(message, channel_key)

    def is_intel_channel(self, channel_key: str) -> bool:
        return any(p.search(channel_key) for p in self._channel_patterns)

    def has_keyword(self, message: str) -> bool:
        lower = message.lower()
        return any(k in lower for k in self.keywords)

    def is_relevant(self, message: str, channel_key: str) -> bool:
        if self.has_keyword(message):
            return True
        if not self.is_intel_channel(channel_key):
            return False
        return _LIKELY_INTEL.search(message) is not None

    def confidence(self, message: str, channel_key: str) -> float:
        """Score in ``[0, 1]``; intel channels start higher than general chat."""
        lower = message.lower()
        score = 0.7 if self.is_intel_channel(channel_key) else 0.5
        for words, boost in _CONFIDENCE_BOOSTS:
            if any(w in lower for w in words):
                score += boost
        return min(score, 1.0)

    def source(self, channel_key: str) -> str:
        if self.is_intel_channel(channel_key):
            return SOURCE_INTEL_CHANNEL
        return SOURCE_GENERAL_CHAT
