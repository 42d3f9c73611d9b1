"""Concurrency-bounded driver for the per-speaker capture pipeline.

Each admitted speaker-start event becomes a ``CaptureTask`` that runs
Capture -> Gate -> Enhance -> Recognize -> Detect on its own asyncio task.
The scheduler is the single owner of task accounting:

* at most ``max_concurrent`` tasks are registered at once, one per speaker;
* speakers under an active cooldown are refused;
* a task that outlives ``task_timeout_sec`` is unregistered and its scratch
  files released, but the coroutine is left to finish on its own. Every stage
  boundary checks the task's generation against the registry, so a late
  completion cannot touch state that has already been reclaimed.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import itertools
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Set, Union

from .capture import CaptureError, SegmentCapture, is_benign_capture_error
from .cooldown import CooldownRegistry
from .enforcement import EnforcementHook
from .enhance import Enhancer
from .pcm import describe_segment
from .quality_gate import QualityGate
from .recognition import RecognitionLane, TranscriptionResult
from .scratch import ScratchStore

AudioStream = AsyncIterator[bytes]
SubscribeFn = Callable[[str, str], Union[AudioStream, Awaitable[AudioStream]]]


class TaskState(str, enum.Enum):
    CAPTURING = "capturing"
    GATING = "gating"
    ENHANCING = "enhancing"
    RECOGNIZING = "recognizing"
    DONE = "done"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({TaskState.DONE, TaskState.FAILED, TaskState.TIMED_OUT})


@dataclass(eq=False)
class CaptureTask:
    speaker_id: str
    session_id: str
    start_time: float
    generation: int
    state: TaskState = TaskState.CAPTURING
    scratch_path: Optional[Path] = None
    enhanced_path: Optional[Path] = None
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class CaptureScheduler:
    def __init__(
        self,
        *,
        subscribe: SubscribeFn,
        capture: SegmentCapture,
        gate: QualityGate,
        enhancer: Enhancer,
        lane: RecognitionLane,
        hook: EnforcementHook,
        cooldowns: CooldownRegistry,
        scratch: ScratchStore,
        max_concurrent: int = 3,
        task_timeout_sec: float = 20.0,
        sample_rate: int = 48000,
        channels: int = 2,
    ) -> None:
        self._subscribe = subscribe
        self.capture = capture
        self.gate = gate
        self.enhancer = enhancer
        self.lane = lane
        self.hook = hook
        self.cooldowns = cooldowns
        self.scratch = scratch
        self.max_concurrent = max(1, int(max_concurrent))
        self.task_timeout_sec = max(0.001, float(task_timeout_sec))
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)

        self._in_flight: Dict[str, CaptureTask] = {}
        self._running: Set[asyncio.Task[Any]] = set()
        self._generations = itertools.count(1)
        self.stats: Counter[str] = Counter()
        self._log = logging.getLogger("scheduler")

    # -- accounting -----------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def task_for(self, speaker_id: str) -> Optional[CaptureTask]:
        return self._in_flight.get(speaker_id)

    def admit(self, session_id: str, speaker_id: str) -> bool:
        """Register and start a capture task; must be called on the event loop."""
        if speaker_id in self._in_flight:
            self.stats["rejected_duplicate"] += 1
            self._log.debug("Already processing audio for %s", speaker_id)
            return False
        if self.cooldowns.is_active(speaker_id):
            self.stats["rejected_cooldown"] += 1
            self._log.debug(
                "Ignoring %s during cooldown (%.1fs left)", speaker_id, self.cooldowns.remaining(speaker_id)
            )
            return False
        if len(self._in_flight) >= self.max_concurrent:
            self.stats["rejected_capacity"] += 1
            self._log.info(
                "Skipping audio for %s: concurrency limit reached (%d/%d)",
                speaker_id,
                len(self._in_flight),
                self.max_concurrent,
            )
            return False

        loop = asyncio.get_running_loop()
        task = CaptureTask(
            speaker_id=speaker_id,
            session_id=session_id,
            start_time=time.monotonic(),
            generation=next(self._generations),
        )
        self._in_flight[speaker_id] = task
        task.timer = loop.call_later(self.task_timeout_sec, self._on_timeout, task)
        runner = loop.create_task(self._run(task), name=f"capture-{speaker_id}-{task.generation}")
        self._running.add(runner)
        runner.add_done_callback(self._running.discard)
        self.stats["admitted"] += 1
        self._log.debug("Admitted %s (generation %d)", speaker_id, task.generation)
        return True

    def _owns(self, task: CaptureTask) -> bool:
        current = self._in_flight.get(task.speaker_id)
        return current is not None and current.generation == task.generation

    def _advance(self, task: CaptureTask, state: TaskState) -> bool:
        if not self._owns(task):
            return False
        task.state = state
        return True

    def _on_timeout(self, task: CaptureTask) -> None:
        if not self._owns(task):
            return
        self._log.warning(
            "Task for %s exceeded %.1fs in state %s; reclaiming slot",
            task.speaker_id,
            self.task_timeout_sec,
            task.state.value,
        )
        self._finish(task, TaskState.TIMED_OUT)

    def _finish(self, task: CaptureTask, state: TaskState) -> None:
        """Single cleanup point for every terminal transition."""
        self.scratch.release(task.scratch_path)
        self.scratch.release(task.enhanced_path)
        if not self._owns(task):
            self._log.debug("Late completion for %s ignored (%s)", task.speaker_id, state.value)
            return
        if task.timer is not None:
            task.timer.cancel()
            task.timer = None
        task.state = state
        del self._in_flight[task.speaker_id]
        self.stats[state.value] += 1
        self._log.debug(
            "Task for %s finished as %s after %.2fs",
            task.speaker_id,
            state.value,
            time.monotonic() - task.start_time,
        )

    # -- pipeline -------------------------------------------------------

    async def _run(self, task: CaptureTask) -> None:
        try:
            outcome = await self._pipeline(task)
        except asyncio.CancelledError:
            self._finish(task, TaskState.FAILED)
            raise
        except CaptureError:
            outcome = TaskState.FAILED
        except Exception as exc:  # noqa: BLE001 - failures stay inside one task
            if is_benign_capture_error(exc) or not self._owns(task):
                self._log.debug("Pipeline for %s stopped: %s", task.speaker_id, exc)
            else:
                self._log.exception("Error processing audio for %s", task.speaker_id)
            outcome = TaskState.FAILED
        self._finish(task, outcome)

    async def _open_stream(self, task: CaptureTask) -> AudioStream:
        stream = self._subscribe(task.session_id, task.speaker_id)
        if inspect.isawaitable(stream):
            stream = await stream
        return stream

    async def _pipeline(self, task: CaptureTask) -> TaskState:
        task.scratch_path = self.scratch.allocate(task.speaker_id)
        stream = await self._open_stream(task)
        captured = await self.capture.capture(stream, task.scratch_path, speaker_id=task.speaker_id)
        self._log.debug(
            "Captured %d bytes from %d packets for %s in %.2fs",
            captured.byte_length,
            captured.packets,
            task.speaker_id,
            captured.elapsed_sec,
        )

        if not self._advance(task, TaskState.GATING):
            return TaskState.TIMED_OUT
        segment = await asyncio.to_thread(
            describe_segment, captured.path, sample_rate=self.sample_rate, channels=self.channels
        )
        if not self._owns(task):
            return TaskState.TIMED_OUT
        if not self.gate.accept(segment):
            return TaskState.DONE

        if not self._advance(task, TaskState.ENHANCING):
            return TaskState.TIMED_OUT
        enhanced = await self.enhancer.enhance(task.scratch_path)
        self.scratch.release(task.scratch_path)
        if enhanced is None:
            return TaskState.FAILED
        task.enhanced_path = enhanced

        if not self._advance(task, TaskState.RECOGNIZING):
            return TaskState.TIMED_OUT
        # the lane deletes the enhanced file once it has consumed it
        task.enhanced_path = None
        text = await self.lane.transcribe(enhanced)
        result = TranscriptionResult(task.speaker_id, text)

        if not self._owns(task):
            self._log.debug("Discarding late transcript for %s", task.speaker_id)
            return TaskState.TIMED_OUT
        if result.is_empty:
            return TaskState.DONE
        await self.hook.on_transcript(result.speaker_id, result.text)
        return TaskState.DONE

    # -- lifecycle ------------------------------------------------------

    async def drain(self) -> None:
        """Wait for every running pipeline, including ones already timed out."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

    async def close(self) -> None:
        for runner in list(self._running):
            runner.cancel()
        await self.drain()
        for task in list(self._in_flight.values()):
            self._finish(task, TaskState.FAILED)
