"""Voice-session event adapter: tracks who is monitored and forwards speech starts."""

from __future__ import annotations

import logging
from typing import Iterable, Set, Tuple

from .scheduler import CaptureScheduler

SpeakerKey = Tuple[str, str]


class VoiceSessionMonitor:
    """Holds the monitored (session, speaker) set and feeds the scheduler.

    Monitoring a pair twice is a no-op, so a platform that re-announces a
    member never produces a second subscription for it.
    """

    def __init__(self, scheduler: CaptureScheduler) -> None:
        self.scheduler = scheduler
        self._monitored: Set[SpeakerKey] = set()
        self._log = logging.getLogger("session")

    def is_monitored(self, session_id: str, speaker_id: str) -> bool:
        return (session_id, speaker_id) in self._monitored

    def monitored(self, session_id: str | None = None) -> list[SpeakerKey]:
        return sorted(key for key in self._monitored if session_id is None or key[0] == session_id)

    def monitor(self, session_id: str, speaker_id: str, *, bot: bool = False) -> bool:
        if bot:
            return False
        key = (session_id, speaker_id)
        if key in self._monitored:
            self._log.debug("Already monitoring %s in %s", speaker_id, session_id)
            return False
        self._monitored.add(key)
        self._log.info("Monitoring %s in %s", speaker_id, session_id)
        return True

    def session_opened(self, session_id: str, members: Iterable[Tuple[str, bool]]) -> int:
        """Monitor every non-bot member already present; returns how many were added."""
        return sum(1 for speaker_id, bot in members if self.monitor(session_id, speaker_id, bot=bot))

    def speaker_joined(self, session_id: str, speaker_id: str, *, bot: bool = False) -> bool:
        return self.monitor(session_id, speaker_id, bot=bot)

    def speaker_left(self, session_id: str, speaker_id: str) -> bool:
        key = (session_id, speaker_id)
        if key not in self._monitored:
            return False
        self._monitored.discard(key)
        self._log.info("Stopped monitoring %s in %s", speaker_id, session_id)
        return True

    def speaker_started_talking(self, session_id: str, speaker_id: str) -> bool:
        if (session_id, speaker_id) not in self._monitored:
            return False
        return self.scheduler.admit(session_id, speaker_id)

    def session_closed(self, session_id: str) -> int:
        dropped = [key for key in self._monitored if key[0] == session_id]
        for key in dropped:
            self._monitored.discard(key)
        if dropped:
            self._log.info("Session %s closed; dropped %d speakers", session_id, len(dropped))
        return len(dropped)
