"""Speech-to-text backends and the serialized recognition lane.

Recognizer state (a loaded Kaldi or CTranslate2 model) is not safe for
concurrent use, so every request goes through ``RecognitionLane``: a FIFO
queue drained by exactly one worker coroutine, which hands each job to a
single-thread executor. Two backend shapes are supported:

* streaming backends open a session that accepts PCM chunks, may emit
  intermediate results, and must be drained with a final result;
* segment backends take the whole utterance as float samples in one call.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import wave
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Protocol, Union, runtime_checkable

import numpy as np

from .pcm import downmix_to_mono, pcm16_samples

DEFAULT_TARGET_RATE = 16000


class RecognitionError(Exception):
    """Raised when a recognition backend cannot be constructed."""


@dataclass(frozen=True)
class TranscriptionResult:
    speaker_id: str
    text: str

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


@runtime_checkable
class StreamingSession(Protocol):
    def accept_chunk(self, chunk: bytes) -> bool: ...

    def result(self) -> str: ...

    def final_result(self) -> str: ...


@runtime_checkable
class StreamingBackend(Protocol):
    sample_rate: int

    def open_session(self) -> StreamingSession: ...


@runtime_checkable
class SegmentBackend(Protocol):
    sample_rate: int

    def transcribe_samples(self, samples: np.ndarray) -> str: ...


Backend = Union[StreamingBackend, SegmentBackend]


def _load_vosk_model(model_path: Path):  # pragma: no cover - exercised via stub
    from vosk import Model, SetLogLevel  # type: ignore[import-not-found]

    SetLogLevel(-1)
    return Model(str(model_path))


def _load_whisper_model(name: str, device: str, compute_type: str):  # pragma: no cover - exercised via stub
    from faster_whisper import WhisperModel  # type: ignore[import-not-found]

    return WhisperModel(name, device=device, compute_type=compute_type)


def extract_text(raw: Any) -> str:
    """Pull ``text`` out of a recognizer JSON payload; malformed output yields ''."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="ignore")
    if isinstance(raw, Mapping):
        payload: Any = raw
    elif isinstance(raw, str):
        if not raw.strip():
            return ""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError:
            return ""
    else:
        return ""
    if not isinstance(payload, Mapping):
        return ""
    return str(payload.get("text", "") or "").strip()


class _VoskSession:
    def __init__(self, recognizer: Any) -> None:
        self._recognizer = recognizer

    def accept_chunk(self, chunk: bytes) -> bool:
        return bool(self._recognizer.AcceptWaveform(chunk))

    def result(self) -> str:
        return self._recognizer.Result()

    def final_result(self) -> str:
        return self._recognizer.FinalResult()


class VoskBackend:
    """Streaming backend around a single shared Vosk model."""

    def __init__(self, model_path: str | os.PathLike[str], *, sample_rate: int = DEFAULT_TARGET_RATE) -> None:
        path = Path(model_path)
        if not path.exists():
            raise RecognitionError(
                f"Vosk model not found at {path}; run 'hushzone fetch-model' to download it"
            )
        try:
            self._model = _load_vosk_model(path)
        except Exception as exc:  # pragma: no cover - depends on installed vosk
            raise RecognitionError(f"Failed to load Vosk model: {exc}") from exc
        self.model_path = path
        self.sample_rate = max(8000, int(sample_rate) if sample_rate else DEFAULT_TARGET_RATE)

    def open_session(self) -> StreamingSession:
        from vosk import KaldiRecognizer  # type: ignore[import-not-found]

        return _VoskSession(KaldiRecognizer(self._model, float(self.sample_rate)))

    def close(self) -> None:
        self._model = None


class WhisperBackend:
    """Whole-segment backend using faster-whisper (English only)."""

    def __init__(
        self,
        model_name: str = "tiny.en",
        *,
        device: str = "cpu",
        compute_type: str = "int8",
        beam_size: int = 5,
    ) -> None:
        try:
            self._model = _load_whisper_model(model_name, device, compute_type)
        except Exception as exc:  # pragma: no cover - hardware/env dep
            raise RecognitionError(f"Failed to load Whisper model '{model_name}': {exc}") from exc
        self.model_name = model_name
        self.beam_size = int(beam_size)
        self.sample_rate = DEFAULT_TARGET_RATE

    def transcribe_samples(self, samples: np.ndarray) -> str:
        segments, _info = self._model.transcribe(
            samples, language="en", beam_size=self.beam_size, vad_filter=False
        )
        return _join_segments(segments)

    def close(self) -> None:
        self._model = None


def _join_segments(segments: Iterable[Any]) -> str:
    pieces = []
    for segment in segments:
        text = str(getattr(segment, "text", "") or "").strip()
        if text:
            pieces.append(text)
    return " ".join(pieces).strip()


def resample_pcm16(samples: np.ndarray, input_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resample of mono int16 samples."""
    if input_rate == target_rate or samples.size == 0:
        return samples.astype(np.int16, copy=False)
    duration = samples.size / float(input_rate)
    target_count = max(1, int(round(duration * target_rate)))
    source_times = np.arange(samples.size) / float(input_rate)
    target_times = np.arange(target_count) / float(target_rate)
    resampled = np.interp(target_times, source_times, samples.astype(np.float64))
    return np.clip(np.rint(resampled), -32768, 32767).astype(np.int16)


def read_wav_mono(path: Path, target_rate: int) -> np.ndarray:
    """Load a 16-bit WAV as mono int16 at ``target_rate``."""
    with contextlib.closing(wave.open(str(path), "rb")) as wav_file:
        channels = wav_file.getnchannels()
        sample_width = wav_file.getsampwidth()
        input_rate = wav_file.getframerate()
        if sample_width != 2:
            raise RecognitionError("Only 16-bit PCM is supported")
        if input_rate <= 0:
            raise RecognitionError("Invalid WAV sample rate")
        data = wav_file.readframes(wav_file.getnframes())
    mono = pcm16_samples(downmix_to_mono(data, channels))
    return resample_pcm16(mono, input_rate, target_rate)


def run_backend(backend: Backend, path: Path, *, chunk_bytes: int = 8000) -> str:
    """Feed one enhanced segment through ``backend`` and return its final text."""
    samples = read_wav_mono(path, int(backend.sample_rate))
    if isinstance(backend, StreamingBackend):
        session = backend.open_session()
        pcm = samples.astype("<i2").tobytes()
        step = max(2, int(chunk_bytes) - (int(chunk_bytes) % 2))
        pieces: list[str] = []
        for offset in range(0, len(pcm), step):
            if session.accept_chunk(pcm[offset : offset + step]):
                pieces.append(extract_text(session.result()))
        pieces.append(extract_text(session.final_result()))
        return " ".join(piece for piece in pieces if piece).strip()
    if isinstance(backend, SegmentBackend):
        as_float = samples.astype(np.float32) / 32768.0
        return str(backend.transcribe_samples(as_float) or "").strip()
    raise RecognitionError(f"Unsupported backend type: {type(backend).__name__}")


@dataclass
class _Job:
    path: Path
    future: "asyncio.Future[str]"


class RecognitionLane:
    """FIFO queue with one worker; the only path to the shared backend."""

    def __init__(self, backend: Backend, *, chunk_bytes: int = 8000, release=None) -> None:
        self.backend = backend
        self.chunk_bytes = int(chunk_bytes)
        self._release = release
        self._queue: Optional[asyncio.Queue[Optional[_Job]]] = None
        self._worker: Optional[asyncio.Task[None]] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recognizer")
        self._closed = False
        self._log = logging.getLogger("recognition")

    def start(self) -> None:
        if self._closed:
            raise RecognitionError("recognition lane is closed")
        if self._worker is not None and not self._worker.done():
            return
        self._queue = asyncio.Queue()
        self._worker = asyncio.get_running_loop().create_task(self._run(), name="recognition-lane")

    async def transcribe(self, enhanced_path: str | os.PathLike[str]) -> str:
        """Queue one segment and wait for its text; never raises for backend faults."""
        path = Path(enhanced_path)
        if self._closed:
            self._log.warning("Recognition lane closed; dropping %s", path.name)
            self._discard(path)
            return ""
        self.start()
        assert self._queue is not None
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        await self._queue.put(_Job(path, future))
        return await future

    async def _run(self) -> None:
        assert self._queue is not None
        queue = self._queue
        loop = asyncio.get_running_loop()
        while True:
            job = await queue.get()
            try:
                if job is None:
                    break
                if job.future.done():
                    continue
                try:
                    text = await loop.run_in_executor(self._executor, self._transcribe_sync, job.path)
                except Exception as exc:  # noqa: BLE001 - the worker must outlive one bad job
                    self._log.warning("Recognition worker failed on %s: %s", job.path.name, exc)
                    text = ""
                if not job.future.done():
                    job.future.set_result(text)
            finally:
                if job is not None:
                    self._discard(job.path)
                queue.task_done()

    def _transcribe_sync(self, path: Path) -> str:
        try:
            text = run_backend(self.backend, path, chunk_bytes=self.chunk_bytes)
        except Exception as exc:  # noqa: BLE001 - recognition failure is per-segment
            self._log.warning("Transcription error for %s: %s", path.name, exc)
            return ""
        if not text:
            self._log.debug("No transcription for %s (empty or unclear)", path.name)
        return text

    def _discard(self, path: Path) -> None:
        if self._release is not None:
            self._release(path)
            return
        try:
            path.unlink()
        except FileNotFoundError:
            pass

    async def close(self) -> None:
        self._closed = True
        if self._worker is not None and not self._worker.done() and self._queue is not None:
            await self._queue.put(None)
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
        self._worker = None
        # jobs stranded by a worker that was cancelled before the sentinel
        while self._queue is not None and not self._queue.empty():
            job = self._queue.get_nowait()
            if job is not None:
                if not job.future.done():
                    job.future.set_result("")
                self._discard(job.path)
        self._executor.shutdown(wait=True)
        closer = getattr(self.backend, "close", None)
        if callable(closer):
            closer()


def build_backend(cfg: Mapping[str, Any]) -> Backend:
    section = cfg.get("recognition", {}) if isinstance(cfg, Mapping) else {}
    target_rate = int(cfg.get("enhance", {}).get("target_sample_rate", DEFAULT_TARGET_RATE))
    engine = str(section.get("engine", "vosk")).strip().lower()
    if engine == "vosk":
        model_key = section.get("vosk_model_path")
        if not isinstance(model_key, str) or not model_key.strip():
            raise RecognitionError("recognition.vosk_model_path is not configured")
        return VoskBackend(model_key.strip(), sample_rate=target_rate)
    if engine == "whisper":
        return WhisperBackend(
            str(section.get("whisper_model", "tiny.en")),
            device=str(section.get("whisper_device", "cpu")),
            compute_type=str(section.get("whisper_compute_type", "int8")),
        )
    raise RecognitionError(f"Unsupported transcription engine: {engine}")
