"""Scheduler accounting and end-to-end pipeline behaviour with in-process fakes."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from pathlib import Path

import numpy as np
import pytest

from hushzone.capture import RawPcmDecoder, SegmentCapture
from hushzone.cooldown import CooldownRegistry
from hushzone.detector import KeywordDetector
from hushzone.enforcement import EnforcementHook
from hushzone.enhance import PassthroughEnhancer
from hushzone.quality_gate import QualityGate
from hushzone.recognition import RecognitionLane
from hushzone import scheduler as scheduler_module
from hushzone.scheduler import CaptureScheduler, TaskState
from hushzone.scratch import ScratchStore

RATE = 48000
CHANNELS = 2


def _speech(seconds: float, amplitude: float = 6000.0) -> bytes:
    frames = int(round(seconds * RATE))
    t = np.arange(frames) / RATE
    mono = amplitude * np.sin(2 * np.pi * 220.0 * t)
    stereo = np.repeat(mono[:, None], CHANNELS, axis=1)
    return np.rint(stereo).astype("<i2").tobytes()


def _silence(seconds: float) -> bytes:
    return b"\x00\x00" * CHANNELS * int(round(seconds * RATE))


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakeBackend:
    sample_rate = 16000

    def __init__(self, text: str = "") -> None:
        self.text = text
        self.calls = 0

    def transcribe_samples(self, samples):
        self.calls += 1
        if isinstance(self.text, BaseException):
            raise self.text
        return self.text


class RecordingEnforcer:
    def __init__(self, succeed: bool = True) -> None:
        self.succeed = succeed
        self.calls: list[tuple[str, list[str]]] = []

    async def enforce(self, speaker_id, terms):
        self.calls.append((speaker_id, list(terms)))
        return self.succeed


class SpyHook(EnforcementHook):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.transcripts: list[tuple[str, str]] = []

    async def on_transcript(self, speaker_id, text):
        self.transcripts.append((speaker_id, text))
        return await super().on_transcript(speaker_id, text)


class Streams:
    """subscribe() fake: queued payloads per speaker, each optionally gated by an event."""

    def __init__(self) -> None:
        self.pending: dict[str, list[tuple[bytes, asyncio.Event | None]]] = defaultdict(list)
        self.subscribed: list[tuple[str, str]] = []

    def add(self, speaker_id: str, payload: bytes, *, hold: bool = False) -> asyncio.Event | None:
        release = asyncio.Event() if hold else None
        self.pending[speaker_id].append((payload, release))
        return release

    def __call__(self, session_id: str, speaker_id: str):
        self.subscribed.append((session_id, speaker_id))
        payload, release = self.pending[speaker_id].pop(0) if self.pending[speaker_id] else (b"", None)
        return self._stream(payload, release)

    @staticmethod
    async def _stream(payload: bytes, release: asyncio.Event | None):
        if release is not None:
            await release.wait()
        if payload:
            yield payload


def _build(
    tmp_path: Path,
    streams: Streams,
    *,
    text="",
    enforcer=None,
    enhancer=None,
    max_concurrent: int = 3,
    task_timeout_sec: float = 20.0,
    silence_ms: int = 5000,
):
    clock = FakeClock()
    cooldowns = CooldownRegistry(10.0, clock=clock)
    scratch = ScratchStore(tmp_path / "scratch")
    backend = FakeBackend(text)
    enforcer = enforcer or RecordingEnforcer()
    hook = SpyHook(KeywordDetector(), enforcer, cooldowns)
    scheduler = CaptureScheduler(
        subscribe=streams,
        capture=SegmentCapture(silence_ms=silence_ms, decoder_factory=RawPcmDecoder),
        gate=QualityGate(release=scratch.release),
        enhancer=enhancer or PassthroughEnhancer(input_sample_rate=RATE, input_channels=CHANNELS),
        lane=RecognitionLane(backend, release=scratch.release),
        hook=hook,
        cooldowns=cooldowns,
        scratch=scratch,
        max_concurrent=max_concurrent,
        task_timeout_sec=task_timeout_sec,
        sample_rate=RATE,
        channels=CHANNELS,
    )
    return scheduler, clock, backend, enforcer, hook


def _scratch_files(tmp_path: Path) -> list[Path]:
    root = tmp_path / "scratch"
    return sorted(root.iterdir()) if root.exists() else []


async def _shutdown(scheduler: CaptureScheduler) -> None:
    await scheduler.drain()
    await scheduler.lane.close()


def _wav_files(tmp_path: Path) -> list[Path]:
    return [path for path in _scratch_files(tmp_path) if path.suffix == ".wav"]


@pytest.mark.asyncio
async def test_concurrency_ceiling_admits_three_of_five(tmp_path):
    streams = Streams()
    releases = [streams.add(f"s{index}", _silence(0.5), hold=True) for index in range(5)]
    scheduler, *_ = _build(tmp_path, streams, max_concurrent=3)

    admitted = [scheduler.admit("guild", f"s{index}") for index in range(5)]

    assert admitted == [True, True, True, False, False]
    assert scheduler.in_flight == 3
    assert scheduler.stats["rejected_capacity"] == 2

    for release in releases:
        release.set()
    await _shutdown(scheduler)
    assert scheduler.in_flight == 0
    assert scheduler.stats[TaskState.DONE.value] == 3


@pytest.mark.asyncio
async def test_duplicate_speaker_is_rejected(tmp_path):
    streams = Streams()
    release = streams.add("alice", _silence(0.5), hold=True)
    scheduler, *_ = _build(tmp_path, streams)

    assert scheduler.admit("guild", "alice") is True
    assert scheduler.admit("guild", "alice") is False
    assert scheduler.stats["rejected_duplicate"] == 1
    assert scheduler.task_for("alice").state is TaskState.CAPTURING

    release.set()
    await _shutdown(scheduler)
    assert len(streams.subscribed) == 1


@pytest.mark.asyncio
async def test_cooldown_blocks_until_expiry_then_admits_once(tmp_path):
    streams = Streams()
    scheduler, clock, *_ = _build(tmp_path, streams)
    scheduler.cooldowns.arm("alice")

    assert scheduler.admit("guild", "alice") is False
    clock.now += 9.0
    assert scheduler.admit("guild", "alice") is False
    assert scheduler.stats["rejected_cooldown"] == 2

    clock.now += 1.5
    release = streams.add("alice", _silence(0.5), hold=True)
    assert scheduler.admit("guild", "alice") is True
    assert scheduler.admit("guild", "alice") is False

    release.set()
    await _shutdown(scheduler)
    assert scheduler.stats["admitted"] == 1


@pytest.mark.asyncio
async def test_timeout_frees_slot_and_stale_completion_is_ignored(tmp_path):
    streams = Streams()
    first = streams.add("alice", _speech(1.0), hold=True)
    scheduler, _clock, backend, enforcer, hook = _build(
        tmp_path, streams, text="touchdown", max_concurrent=1, task_timeout_sec=0.05
    )

    assert scheduler.admit("guild", "alice") is True
    await asyncio.sleep(0.2)

    assert scheduler.in_flight == 0
    assert scheduler.stats[TaskState.TIMED_OUT.value] == 1

    second = streams.add("alice", _speech(1.0), hold=True)
    scheduler.task_timeout_sec = 20.0
    assert scheduler.admit("guild", "alice") is True
    generation = scheduler.task_for("alice").generation

    # the stale task finishes capture now; it must not touch the new registration
    first.set()
    for _ in range(20):
        await asyncio.sleep(0.01)
    assert scheduler.task_for("alice").generation == generation
    assert scheduler.in_flight == 1
    assert backend.calls == 0
    assert hook.transcripts == []

    second.set()
    await _shutdown(scheduler)
    assert hook.transcripts == [("alice", "touchdown")]
    assert scheduler.stats[TaskState.TIMED_OUT.value] == 1
    assert scheduler.stats[TaskState.DONE.value] == 1
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_timeout_during_enhancement_discards_stale_output(tmp_path):
    class _HeldEnhancer:
        """Produces its WAV at once but returns only when released (first call)."""

        def __init__(self) -> None:
            self.inner = PassthroughEnhancer(input_sample_rate=RATE, input_channels=CHANNELS)
            self.entered = asyncio.Event()
            self.release = asyncio.Event()
            self.calls = 0

        async def enhance(self, raw_path):
            self.calls += 1
            enhanced = await self.inner.enhance(raw_path)
            if self.calls == 1:
                self.entered.set()
                await self.release.wait()
            return enhanced

    enhancer = _HeldEnhancer()
    streams = Streams()
    streams.add("alice", _speech(1.0))
    scheduler, _clock, backend, enforcer, hook = _build(
        tmp_path, streams, text="touchdown", enhancer=enhancer, task_timeout_sec=0.2
    )

    assert scheduler.admit("guild", "alice") is True
    await asyncio.wait_for(enhancer.entered.wait(), timeout=2)
    await asyncio.sleep(0.4)
    assert scheduler.in_flight == 0
    assert scheduler.stats[TaskState.TIMED_OUT.value] == 1

    second = streams.add("alice", _speech(1.0), hold=True)
    scheduler.task_timeout_sec = 20.0
    assert scheduler.admit("guild", "alice") is True
    generation = scheduler.task_for("alice").generation

    enhancer.release.set()
    for _ in range(50):
        if not _wav_files(tmp_path):
            break
        await asyncio.sleep(0.01)

    assert _wav_files(tmp_path) == []
    assert scheduler.task_for("alice").generation == generation
    assert scheduler.task_for("alice").state is TaskState.CAPTURING
    assert backend.calls == 0
    assert hook.transcripts == []

    second.set()
    await _shutdown(scheduler)
    assert hook.transcripts == [("alice", "touchdown")]
    assert enforcer.calls == [("alice", ["touchdown"])]
    assert scheduler.stats[TaskState.DONE.value] == 1
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_timeout_during_recognition_drops_late_transcript(tmp_path):
    class _BlockingBackend(FakeBackend):
        def __init__(self, text: str) -> None:
            super().__init__(text)
            self.entered = threading.Event()
            self.release = threading.Event()

        def transcribe_samples(self, samples):
            if self.calls == 0:
                self.entered.set()
                self.release.wait(5)
            return super().transcribe_samples(samples)

    streams = Streams()
    streams.add("alice", _speech(1.0))
    scheduler, _clock, _unused, enforcer, hook = _build(
        tmp_path, streams, text="touchdown", task_timeout_sec=0.2
    )
    backend = _BlockingBackend("touchdown")
    scheduler.lane = RecognitionLane(backend, release=scheduler.scratch.release)

    assert scheduler.admit("guild", "alice") is True
    assert await asyncio.to_thread(backend.entered.wait, 2)
    await asyncio.sleep(0.4)
    assert scheduler.in_flight == 0
    assert scheduler.stats[TaskState.TIMED_OUT.value] == 1

    second = streams.add("alice", _speech(1.0), hold=True)
    scheduler.task_timeout_sec = 20.0
    assert scheduler.admit("guild", "alice") is True
    generation = scheduler.task_for("alice").generation

    backend.release.set()
    for _ in range(100):
        if backend.calls == 1 and not _wav_files(tmp_path):
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)

    assert backend.calls == 1
    assert _wav_files(tmp_path) == []
    assert hook.transcripts == []
    assert enforcer.calls == []
    assert not scheduler.cooldowns.is_active("alice")
    assert scheduler.task_for("alice").generation == generation

    second.set()
    await _shutdown(scheduler)
    assert backend.calls == 2
    assert hook.transcripts == [("alice", "touchdown")]
    assert scheduler.stats[TaskState.TIMED_OUT.value] == 1
    assert scheduler.stats[TaskState.DONE.value] == 1
    assert _scratch_files(tmp_path) == []



@pytest.mark.asyncio
async def test_silent_segment_is_gated_and_never_transcribed(tmp_path):
    streams = Streams()
    streams.add("alice", _silence(2.0))
    scheduler, _clock, backend, enforcer, hook = _build(tmp_path, streams, text="touchdown")

    assert scheduler.admit("guild", "alice") is True
    await _shutdown(scheduler)

    assert hook.transcripts == []
    assert backend.calls == 0
    assert enforcer.calls == []
    assert scheduler.stats[TaskState.DONE.value] == 1
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_touchdown_segment_enforces_and_arms_cooldown(tmp_path):
    streams = Streams()
    streams.add("alice", _speech(3.0))
    scheduler, _clock, backend, enforcer, hook = _build(tmp_path, streams, text="what a touchdown")

    assert scheduler.admit("guild", "alice") is True
    await scheduler.drain()

    assert backend.calls == 1
    assert hook.transcripts == [("alice", "what a touchdown")]
    assert enforcer.calls == [("alice", ["touchdown"])]
    assert scheduler.cooldowns.is_active("alice")

    assert scheduler.admit("guild", "alice") is False
    assert scheduler.stats["rejected_cooldown"] == 1
    await _shutdown(scheduler)
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_failed_enforcement_arms_no_cooldown(tmp_path):
    streams = Streams()
    streams.add("alice", _speech(1.0))
    scheduler, *_ = _build(
        tmp_path, streams, text="touchdown", enforcer=RecordingEnforcer(succeed=False)
    )

    assert scheduler.admit("guild", "alice") is True
    await scheduler.drain()

    assert not scheduler.cooldowns.is_active("alice")
    streams.add("alice", _silence(0.5))
    assert scheduler.admit("guild", "alice") is True
    await _shutdown(scheduler)


@pytest.mark.asyncio
async def test_recognition_failure_counts_as_done_without_transcript(tmp_path):
    streams = Streams()
    streams.add("alice", _speech(1.0))
    scheduler, _clock, backend, enforcer, hook = _build(
        tmp_path, streams, text=RuntimeError("kaldi crashed")
    )

    assert scheduler.admit("guild", "alice") is True
    await _shutdown(scheduler)

    assert backend.calls == 1
    assert hook.transcripts == []
    assert scheduler.stats[TaskState.DONE.value] == 1
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_enhancement_failure_marks_task_failed(tmp_path):
    class _BrokenEnhancer:
        async def enhance(self, raw_path):
            return None

    streams = Streams()
    streams.add("alice", _speech(1.0))
    scheduler, _clock, backend, *_ = _build(tmp_path, streams, enhancer=_BrokenEnhancer())

    assert scheduler.admit("guild", "alice") is True
    await _shutdown(scheduler)

    assert backend.calls == 0
    assert scheduler.stats[TaskState.FAILED.value] == 1
    assert scheduler.in_flight == 0
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_one_speaker_failure_does_not_affect_another(tmp_path):
    async def _broken(session_id, speaker_id):
        raise ConnectionResetError("premature close")

    streams = Streams()
    streams.add("bob", _speech(1.0))

    def subscribe(session_id, speaker_id):
        if speaker_id == "alice":
            return _broken(session_id, speaker_id)
        return streams(session_id, speaker_id)

    scheduler, _clock, _backend, enforcer, hook = _build(tmp_path, streams, text="goal")
    scheduler._subscribe = subscribe

    assert scheduler.admit("guild", "alice") is True
    assert scheduler.admit("guild", "bob") is True
    await _shutdown(scheduler)

    assert scheduler.stats[TaskState.FAILED.value] == 1
    assert scheduler.stats[TaskState.DONE.value] == 1
    assert enforcer.calls == [("bob", ["goal"])]
    assert scheduler.in_flight == 0
    assert _scratch_files(tmp_path) == []


@pytest.mark.asyncio
async def test_close_cancels_running_tasks(tmp_path):
    streams = Streams()
    streams.add("alice", _silence(0.5), hold=True)
    scheduler, *_ = _build(tmp_path, streams)

    assert scheduler.admit("guild", "alice") is True
    await asyncio.sleep(0)
    await scheduler.close()
    await scheduler.lane.close()

    assert scheduler.in_flight == 0
    assert scheduler.stats[TaskState.FAILED.value] == 1


@pytest.mark.asyncio
async def test_segment_metrics_are_read_off_the_event_loop(tmp_path, monkeypatch, caplog):
    caplog.set_level(logging.DEBUG, logger="scheduler")

    threads = []
    original = scheduler_module.describe_segment

    def recording_describe(path, **kwargs):
        threads.append(threading.current_thread())
        return original(path, **kwargs)

    monkeypatch.setattr(scheduler_module, "describe_segment", recording_describe)
    streams = Streams()
    streams.add("alice", _speech(1.0))
    scheduler, *_ = _build(tmp_path, streams, text="touchdown")

    assert scheduler.admit("guild", "alice") is True
    await _shutdown(scheduler)

    assert len(threads) == 1
    assert threads[0] is not threading.main_thread()
    assert "Captured 192000 bytes from 1 packets for alice" in caplog.text
    assert scheduler.stats[TaskState.DONE.value] == 1
