"""PCM helper utilities and per-segment metrics."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from pathlib import Path

import numpy as np

SAMPLE_WIDTH = 2  # 16-bit


@dataclass(frozen=True)
class AudioSegment:
    """Derived metrics for one captured segment on scratch storage."""

    path: Path
    sample_rate: int
    channel_count: int
    byte_length: int
    duration_ms: float
    rms_energy: float


def pcm16_samples(data: bytes | bytearray | memoryview) -> np.ndarray:
    """Interpret little-endian signed 16-bit PCM, dropping a trailing odd byte."""
    usable = len(data) - (len(data) % SAMPLE_WIDTH)
    if usable <= 0:
        return np.array([], dtype=np.int16)
    return np.frombuffer(bytes(data[:usable]), dtype="<i2")


def pcm16_rms(data: bytes | bytearray | memoryview) -> float:
    """Root-mean-square amplitude over every sample in the buffer."""
    samples = pcm16_samples(data)
    if not samples.size:
        return 0.0
    as_float = samples.astype(np.float64)
    return float(math.sqrt(np.mean(as_float * as_float)))


def estimate_duration_ms(
    byte_length: int,
    sample_rate: int,
    channels: int,
    sample_width: int = SAMPLE_WIDTH,
) -> float:
    if byte_length <= 0 or sample_rate <= 0 or channels <= 0 or sample_width <= 0:
        return 0.0
    frames = byte_length / float(channels * sample_width)
    return frames * 1000.0 / float(sample_rate)


def downmix_to_mono(
    data: bytes | bytearray | memoryview,
    channels: int,
) -> bytes:
    """Average interleaved 16-bit channels into a single mono stream."""
    samples = pcm16_samples(data)
    if channels <= 1:
        return samples.tobytes()
    usable = samples.size - (samples.size % channels)
    if usable <= 0:
        return b""
    frames = samples[:usable].reshape(-1, channels).astype(np.int32)
    mono = np.rint(frames.mean(axis=1))
    return np.clip(mono, -32768, 32767).astype("<i2").tobytes()


def describe_segment(
    path: str | os.PathLike[str],
    *,
    sample_rate: int,
    channels: int,
) -> AudioSegment:
    """Compute the immutable metrics for a raw s16le scratch file."""
    segment_path = Path(path)
    data = segment_path.read_bytes()
    byte_length = len(data)
    return AudioSegment(
        path=segment_path,
        sample_rate=int(sample_rate),
        channel_count=int(channels),
        byte_length=byte_length,
        duration_ms=estimate_duration_ms(byte_length, sample_rate, channels),
        rms_energy=pcm16_rms(data),
    )
