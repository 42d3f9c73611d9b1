"""Per-speaker segment capture: Opus packets in, raw PCM scratch file out.

A capture runs until the speaker's stream ends or no packet arrives for the
configured trailing-silence window. Packets are decoded to interleaved
signed 16-bit PCM at the transport rate (48 kHz stereo for voice gateways)
and appended to a scratch file owned by the calling task.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Protocol

import numpy as np

try:
    import av
except (ModuleNotFoundError, ImportError) as exc:  # pragma: no cover - exercised in environments without PyAV
    av = None  # type: ignore[assignment]
    _AV_IMPORT_ERROR: Exception | None = exc
else:
    _AV_IMPORT_ERROR = None


BENIGN_ERROR_MARKERS = (
    "premature close",
    "err_stream_premature_close",
    "compressed data passed is corrupted",
    "corrupt",
    "invalid data found",
    "no such file",
    "enoent",
)

BENIGN_ERROR_TYPES: tuple[type[BaseException], ...] = (
    EOFError,
    asyncio.IncompleteReadError,
    ConnectionResetError,
    BrokenPipeError,
    FileNotFoundError,
)


class CaptureError(Exception):
    """Raised when a segment could not be captured; ``benign`` marks expected causes."""

    def __init__(self, message: str, *, benign: bool = False) -> None:
        super().__init__(message)
        self.benign = benign


class PacketDecoder(Protocol):
    def decode(self, packet: bytes) -> bytes: ...


def is_benign_capture_error(exc: BaseException) -> bool:
    if isinstance(exc, BENIGN_ERROR_TYPES):
        return True
    if av is not None and isinstance(exc, getattr(av, "InvalidDataError", ())):
        return True
    message = f"{getattr(exc, 'code', '')} {exc}".lower()
    return any(marker in message for marker in BENIGN_ERROR_MARKERS)


class OpusPacketDecoder:
    """Decode individual Opus packets to packed s16 PCM using PyAV."""

    def __init__(self, sample_rate: int = 48000, channels: int = 2) -> None:
        if av is None:
            raise CaptureError(f"PyAV is not installed: {_AV_IMPORT_ERROR}")
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        layout = "stereo" if self.channels == 2 else "mono"
        self._codec = av.CodecContext.create("libopus", "r")
        self._codec.sample_rate = self.sample_rate
        self._codec.layout = layout
        self._resampler = av.AudioResampler(format="s16", layout=layout, rate=self.sample_rate)

    def decode(self, packet: bytes) -> bytes:
        pieces: list[bytes] = []
        for frame in self._codec.decode(av.Packet(packet)):
            for converted in self._resampler.resample(frame):
                pieces.append(np.ascontiguousarray(converted.to_ndarray()).astype("<i2").tobytes())
        return b"".join(pieces)


class RawPcmDecoder:
    """Identity decoder for sources that already deliver s16le PCM."""

    def decode(self, packet: bytes) -> bytes:
        return bytes(packet)


@dataclass(frozen=True)
class CaptureResult:
    path: Path
    byte_length: int
    elapsed_sec: float
    packets: int


class SegmentCapture:
    """Accumulate one utterance from a live subscription into a scratch file."""

    def __init__(
        self,
        *,
        silence_ms: int = 2000,
        sample_rate: int = 48000,
        channels: int = 2,
        decoder_factory: Optional[Callable[[], PacketDecoder]] = None,
    ) -> None:
        self.silence_sec = max(0.05, int(silence_ms) / 1000.0)
        self.sample_rate = int(sample_rate)
        self.channels = int(channels)
        if decoder_factory is None:
            decoder_factory = lambda: OpusPacketDecoder(self.sample_rate, self.channels)  # noqa: E731
        self._decoder_factory = decoder_factory
        self._log = logging.getLogger("capture")

    async def capture(
        self,
        stream: AsyncIterator[bytes],
        destination: str | os.PathLike[str],
        *,
        speaker_id: str = "",
    ) -> CaptureResult:
        dest_path = Path(destination)
        started = time.monotonic()
        packets = 0
        written = 0
        iterator = stream.__aiter__()
        try:
            decoder = self._decoder_factory()
            with dest_path.open("wb") as handle:
                while True:
                    try:
                        packet = await asyncio.wait_for(iterator.__anext__(), timeout=self.silence_sec)
                    except StopAsyncIteration:
                        break
                    except asyncio.TimeoutError:
                        self._log.debug(
                            "Silence boundary reached for %s after %d packets", speaker_id, packets
                        )
                        break
                    packets += 1
                    if not packet:
                        continue
                    pcm = decoder.decode(packet)
                    if pcm:
                        handle.write(pcm)
                        written += len(pcm)
        except CaptureError:
            raise
        except Exception as exc:  # noqa: BLE001 - classified and re-raised as CaptureError
            benign = is_benign_capture_error(exc)
            if benign:
                self._log.debug("Capture for %s ended early: %s", speaker_id, exc)
            else:
                self._log.warning("Error capturing audio for %s: %s", speaker_id, exc)
            raise CaptureError(str(exc), benign=benign) from exc
        finally:
            await _close_stream(iterator)

        return CaptureResult(
            path=dest_path,
            byte_length=written,
            elapsed_sec=time.monotonic() - started,
            packets=packets,
        )


async def _close_stream(iterator: object) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception as exc:  # noqa: BLE001 - the subscription is already finished
        logging.getLogger("capture").debug("Error closing audio stream: %s", exc)
