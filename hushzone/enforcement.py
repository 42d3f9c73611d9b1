"""Detection and enforcement hook fed by the recognition stage."""

from __future__ import annotations

import inspect
import logging
from typing import Awaitable, List, Optional, Protocol, Sequence, Union

from .cooldown import CooldownRegistry
from .detector import Detection, KeywordDetector


class Enforcer(Protocol):
    """Platform action (kick, forced disconnect); returns True on success."""

    def enforce(self, speaker_id: str, terms: Sequence[str]) -> Union[bool, Awaitable[bool]]: ...


class LoggingEnforcer:
    """Dry-run enforcer that records actions instead of calling a platform."""

    def __init__(self) -> None:
        self.actions: List[tuple[str, List[str]]] = []
        self._log = logging.getLogger("enforcement")

    def enforce(self, speaker_id: str, terms: Sequence[str]) -> bool:
        self.actions.append((speaker_id, list(terms)))
        self._log.warning("Would disconnect %s for: %s", speaker_id, ", ".join(terms))
        return True


class EnforcementHook:
    def __init__(
        self,
        detector: KeywordDetector,
        enforcer: Enforcer,
        cooldowns: CooldownRegistry,
    ) -> None:
        self.detector = detector
        self.enforcer = enforcer
        self.cooldowns = cooldowns
        self._log = logging.getLogger("enforcement")

    async def on_transcript(self, speaker_id: str, text: str) -> Optional[Detection]:
        """Match ``text`` and enforce once; a cooldown is armed only on success."""
        cleaned = (text or "").strip()
        if not cleaned:
            return None
        self._log.info("Transcript for %s: %s", speaker_id, cleaned)
        detection = self.detector.detect(cleaned)
        if not detection.matched:
            return detection

        self._log.info("Detected terms from %s: %s", speaker_id, ", ".join(detection.terms))
        if await self._enforce(speaker_id, detection.terms):
            self.cooldowns.arm(speaker_id)
            self._log.info(
                "Enforced against %s; cooldown %.1fs", speaker_id, self.cooldowns.remaining(speaker_id)
            )
        return detection

    async def _enforce(self, speaker_id: str, terms: Sequence[str]) -> bool:
        try:
            outcome = self.enforcer.enforce(speaker_id, list(terms))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as exc:  # noqa: BLE001 - enforcement is best effort, once
            self._log.warning("Enforcement against %s failed: %s", speaker_id, exc)
            return False
        if not outcome:
            self._log.warning("Enforcement against %s was not applied", speaker_id)
            return False
        return True
