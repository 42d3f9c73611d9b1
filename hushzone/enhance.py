"""Speech enhancement stage backed by an ffmpeg filter graph.

The chain is plain data: an ordered list of named ffmpeg audio filters with
numeric parameters. It is rendered into a single ``-af`` argument, and the
final resample/downmix to the recognizer's layout is appended as output
options. ``PassthroughEnhancer`` skips filtering entirely and only wraps the
raw capture in a mono WAV container, which keeps tests free of ffmpeg.
"""
from __future__ import annotations

import asyncio
import logging
import os
import wave
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from . import ffmpeg_io
from .pcm import downmix_to_mono

_STAGE_NAME_CHARS = set("abcdefghijklmnopqrstuvwxyz0123456789_")


class EnhancementError(Exception):
    """Raised internally when the filter subprocess cannot produce output."""


class Enhancer(Protocol):
    async def enhance(self, raw_path: Path) -> Optional[Path]: ...


@dataclass(frozen=True)
class FilterStage:
    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def render(self) -> str:
        if not self.params:
            return self.name
        options = ":".join(f"{key}={_format_value(value)}" for key, value in self.params.items())
        return f"{self.name}={options}"


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class FilterChain:
    """Ordered list of ffmpeg audio filters parsed from configuration."""

    def __init__(self, stages: Sequence[FilterStage] = ()) -> None:
        self.stages: List[FilterStage] = [stage for stage in stages if stage.enabled]

    @classmethod
    def from_config(cls, payload: Any) -> "FilterChain":
        stages: List[FilterStage] = []
        if isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)):
            for entry in payload:
                stage = cls._parse_entry(entry)
                if stage is not None:
                    stages.append(stage)
        return cls(stages)

    @staticmethod
    def _parse_entry(entry: Any) -> Optional[FilterStage]:
        if isinstance(entry, str):
            entry = {"name": entry}
        if not isinstance(entry, Mapping):
            return None
        name = str(entry.get("name") or entry.get("type") or "").strip().lower()
        if not name or not set(name) <= _STAGE_NAME_CHARS:
            return None
        enabled = entry.get("enabled", True)
        if isinstance(enabled, str):
            enabled = enabled.strip().lower() in {"1", "true", "yes", "on"}
        if not enabled:
            return None
        raw_params = entry.get("params") or {}
        if not isinstance(raw_params, Mapping):
            return None
        params: Dict[str, Any] = {}
        for key, value in raw_params.items():
            if isinstance(value, (int, float, str, bool)):
                params[str(key)] = value
        return FilterStage(name=name, params=params)

    def render(self) -> str:
        return ",".join(stage.render() for stage in self.stages)

    def __len__(self) -> int:
        return len(self.stages)


class FfmpegEnhancer:
    """Run the filter chain over a raw capture and emit a recognizer-ready WAV."""

    def __init__(
        self,
        chain: FilterChain,
        *,
        input_sample_rate: int = 48000,
        input_channels: int = 2,
        target_sample_rate: int = 16000,
        ffmpeg_path: str = "ffmpeg",
        timeout_sec: float = 10.0,
    ) -> None:
        self.chain = chain
        self.input_sample_rate = int(input_sample_rate)
        self.input_channels = int(input_channels)
        self.target_sample_rate = int(target_sample_rate)
        self.ffmpeg_path = ffmpeg_path
        self.timeout_sec = float(timeout_sec)
        self._log = logging.getLogger("enhance")

    def build_command(self, raw_path: Path, output_path: Path) -> list[str]:
        cmd = ffmpeg_io.base_args(self.ffmpeg_path)
        cmd.extend(
            ffmpeg_io.pcm_file_input_args(str(raw_path), self.input_sample_rate, self.input_channels)
        )
        graph = self.chain.render()
        if graph:
            cmd.extend(["-af", graph])
        cmd.extend(ffmpeg_io.wav_output_args(str(output_path), self.target_sample_rate, 1))
        return cmd

    async def enhance(self, raw_path: Path) -> Optional[Path]:
        output_path = Path(raw_path).with_suffix(".wav")
        cmd = self.build_command(Path(raw_path), output_path)
        self._log.debug("Launching ffmpeg: %s", " ".join(cmd))
        try:
            await self._run(cmd)
        except EnhancementError as exc:
            self._log.warning("Enhancement failed for %s: %s", Path(raw_path).name, exc)
            _unlink_quietly(output_path)
            return None
        except asyncio.CancelledError:
            _unlink_quietly(output_path)
            raise
        if not output_path.exists():
            self._log.warning("ffmpeg reported success but produced no output for %s", raw_path)
            return None
        return output_path

    async def _run(self, cmd: list[str]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            raise EnhancementError(f"unable to spawn ffmpeg: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            await _terminate(proc, self._log)
            raise EnhancementError(f"ffmpeg timed out after {self.timeout_sec:.1f}s")
        except asyncio.CancelledError:
            # never leave an orphaned ffmpeg behind a cancelled pipeline
            await _terminate(proc, self._log)
            raise

        if proc.returncode != 0:
            detail = (stderr or b"").decode("utf-8", errors="ignore").strip()
            raise EnhancementError(f"ffmpeg exited rc={proc.returncode}: {detail[-400:]}")


class PassthroughEnhancer:
    """No-op enhancement: downmix to mono and wrap in WAV at the source rate."""

    def __init__(self, *, input_sample_rate: int = 48000, input_channels: int = 2) -> None:
        self.input_sample_rate = int(input_sample_rate)
        self.input_channels = int(input_channels)

    async def enhance(self, raw_path: Path) -> Optional[Path]:
        output_path = Path(raw_path).with_suffix(".wav")
        try:
            mono = downmix_to_mono(Path(raw_path).read_bytes(), self.input_channels)
            with wave.open(str(output_path), "wb") as wav_file:
                wav_file.setnchannels(1)
                wav_file.setsampwidth(2)
                wav_file.setframerate(self.input_sample_rate)
                wav_file.writeframes(mono)
        except OSError as exc:
            logging.getLogger("enhance").warning("Passthrough failed for %s: %s", raw_path, exc)
            _unlink_quietly(output_path)
            return None
        return output_path


async def _terminate(proc: asyncio.subprocess.Process, log: logging.Logger) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(proc.wait(), timeout=1.5)
    except asyncio.TimeoutError:
        log.warning("ffmpeg did not exit after SIGTERM; sending SIGKILL")
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


def _unlink_quietly(path: str | os.PathLike[str]) -> None:
    try:
        Path(path).unlink()
    except FileNotFoundError:
        pass


def build_enhancer(cfg: Mapping[str, Any]) -> Enhancer:
    capture_cfg = cfg.get("capture", {}) if isinstance(cfg, Mapping) else {}
    section = cfg.get("enhance", {}) if isinstance(cfg, Mapping) else {}
    sample_rate = int(capture_cfg.get("sample_rate", 48000))
    channels = int(capture_cfg.get("channels", 2))
    if not section.get("enabled", True):
        return PassthroughEnhancer(input_sample_rate=sample_rate, input_channels=channels)
    return FfmpegEnhancer(
        FilterChain.from_config(section.get("stages")),
        input_sample_rate=sample_rate,
        input_channels=channels,
        target_sample_rate=int(section.get("target_sample_rate", 16000)),
        ffmpeg_path=str(section.get("ffmpeg_path", "ffmpeg")),
        timeout_sec=float(section.get("timeout_sec", 10.0)),
    )
