"""Per-speaker suppression windows armed after an enforcement action."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List


@dataclass(slots=True, frozen=True)
class CooldownEntry:
    speaker_id: str
    expiry: float


class CooldownRegistry:
    """Process-wide cooldown map keyed by speaker id.

    Expiry uses a monotonic clock; entries are purged lazily when consulted.
    """

    def __init__(self, duration_sec: float = 10.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.duration_sec = max(0.0, float(duration_sec))
        self._clock = clock
        self._entries: Dict[str, CooldownEntry] = {}

    def arm(self, speaker_id: str, duration_sec: float | None = None) -> CooldownEntry:
        window = self.duration_sec if duration_sec is None else max(0.0, float(duration_sec))
        entry = CooldownEntry(speaker_id, self._clock() + window)
        self._entries[speaker_id] = entry
        return entry

    def is_active(self, speaker_id: str) -> bool:
        entry = self._entries.get(speaker_id)
        if entry is None:
            return False
        if self._clock() >= entry.expiry:
            del self._entries[speaker_id]
            return False
        return True

    def remaining(self, speaker_id: str) -> float:
        if not self.is_active(speaker_id):
            return 0.0
        return max(0.0, self._entries[speaker_id].expiry - self._clock())

    def clear(self, speaker_id: str) -> bool:
        return self._entries.pop(speaker_id, None) is not None

    def active(self) -> List[CooldownEntry]:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if now >= entry.expiry]
        for key in expired:
            del self._entries[key]
        return list(self._entries.values())
