"""Assemble the moderation pipeline from configuration."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from .capture import PacketDecoder, SegmentCapture
from .cooldown import CooldownRegistry
from .detector import KeywordDetector
from .enforcement import EnforcementHook, Enforcer, LoggingEnforcer
from .enhance import Enhancer, build_enhancer
from .quality_gate import GateThresholds, QualityGate
from .recognition import Backend, RecognitionLane, build_backend
from .scheduler import CaptureScheduler, SubscribeFn
from .scratch import ScratchStore
from .session import VoiceSessionMonitor


@dataclass
class Pipeline:
    scheduler: CaptureScheduler
    monitor: VoiceSessionMonitor
    lane: RecognitionLane
    detector: KeywordDetector
    cooldowns: CooldownRegistry
    scratch: ScratchStore

    async def close(self) -> None:
        await self.scheduler.close()
        await self.lane.close()


def build_pipeline(
    cfg: Mapping[str, Any],
    *,
    subscribe: SubscribeFn,
    enforcer: Optional[Enforcer] = None,
    backend: Optional[Backend] = None,
    enhancer: Optional[Enhancer] = None,
    decoder_factory: Optional[Callable[[], PacketDecoder]] = None,
    detector: Optional[KeywordDetector] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Pipeline:
    """Wire every stage; explicit arguments replace the configured component."""
    capture_cfg = cfg.get("capture", {})
    sample_rate = int(capture_cfg.get("sample_rate", 48000))
    channels = int(capture_cfg.get("channels", 2))

    scratch = ScratchStore(cfg.get("paths", {}).get("scratch_dir", "./audio_recordings"))
    scratch.ensure()
    scratch.purge()

    cooldowns = CooldownRegistry(float(cfg.get("enforcement", {}).get("cooldown_sec", 10.0)), clock=clock)
    detector = detector or KeywordDetector.from_config(cfg)
    lane = RecognitionLane(
        backend if backend is not None else build_backend(cfg),
        chunk_bytes=int(cfg.get("recognition", {}).get("chunk_bytes", 8000)),
        release=scratch.release,
    )
    scheduler = CaptureScheduler(
        subscribe=subscribe,
        capture=SegmentCapture(
            silence_ms=int(capture_cfg.get("silence_ms", 2000)),
            sample_rate=sample_rate,
            channels=channels,
            decoder_factory=decoder_factory,
        ),
        gate=QualityGate(GateThresholds.from_config(cfg.get("gate")), release=scratch.release),
        enhancer=enhancer if enhancer is not None else build_enhancer(cfg),
        lane=lane,
        hook=EnforcementHook(detector, enforcer or LoggingEnforcer(), cooldowns),
        cooldowns=cooldowns,
        scratch=scratch,
        max_concurrent=int(cfg.get("scheduler", {}).get("max_concurrent", 3)),
        task_timeout_sec=float(cfg.get("scheduler", {}).get("task_timeout_sec", 20.0)),
        sample_rate=sample_rate,
        channels=channels,
    )
    logging.getLogger("hushzone").info(
        "Pipeline ready: max_concurrent=%d, silence=%sms, %d moderation terms",
        scheduler.max_concurrent,
        capture_cfg.get("silence_ms", 2000),
        len(detector),
    )
    return Pipeline(
        scheduler=scheduler,
        monitor=VoiceSessionMonitor(scheduler),
        lane=lane,
        detector=detector,
        cooldowns=cooldowns,
        scratch=scratch,
    )
