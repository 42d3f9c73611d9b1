"""Cheap signal-quality checks run before any expensive processing."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .pcm import AudioSegment


@dataclass(frozen=True)
class GateThresholds:
    min_bytes: int = 512
    min_duration_ms: float = 300.0
    min_rms: float = 50.0

    @classmethod
    def from_config(cls, section: Optional[Mapping[str, Any]]) -> "GateThresholds":
        if not isinstance(section, Mapping):
            return cls()
        defaults = cls()
        return cls(
            min_bytes=int(section.get("min_bytes", defaults.min_bytes)),
            min_duration_ms=float(section.get("min_duration_ms", defaults.min_duration_ms)),
            min_rms=float(section.get("min_rms", defaults.min_rms)),
        )


@dataclass(frozen=True)
class GateVerdict:
    accepted: bool
    reason: str = ""

    def __bool__(self) -> bool:
        return self.accepted


class QualityGate:
    """Reject segments that are too small, too short or too quiet.

    Checks run in order (bytes, duration, energy) and the first failure wins.
    A rejected segment's scratch file is deleted before returning.
    """

    def __init__(
        self,
        thresholds: GateThresholds | None = None,
        *,
        release: Optional[Callable[[Any], Any]] = None,
    ) -> None:
        self.thresholds = thresholds or GateThresholds()
        self._release = release
        self._log = logging.getLogger("quality_gate")

    def evaluate(self, segment: AudioSegment) -> GateVerdict:
        limits = self.thresholds
        if segment.byte_length < limits.min_bytes:
            return GateVerdict(False, f"too small ({segment.byte_length} < {limits.min_bytes} bytes)")
        if segment.duration_ms < limits.min_duration_ms:
            return GateVerdict(
                False, f"too short ({segment.duration_ms:.0f} < {limits.min_duration_ms:.0f} ms)"
            )
        if segment.rms_energy < limits.min_rms:
            return GateVerdict(False, f"too quiet (rms {segment.rms_energy:.1f} < {limits.min_rms:.1f})")
        return GateVerdict(True)

    def accept(self, segment: AudioSegment) -> bool:
        verdict = self.evaluate(segment)
        if verdict.accepted:
            return True
        self._log.info("Skipping %s: %s", segment.path.name, verdict.reason)
        self._discard(segment)
        return False

    def _discard(self, segment: AudioSegment) -> None:
        if self._release is not None:
            self._release(segment.path)
            return
        try:
            segment.path.unlink()
        except FileNotFoundError:
            pass
