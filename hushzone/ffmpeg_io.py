"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

import shutil

DEFAULT_SAMPLE_FORMAT = "s16le"


def pcm_file_input_args(
    path: str,
    sample_rate: int,
    channels: int,
    *,
    sample_format: str = DEFAULT_SAMPLE_FORMAT,
) -> list[str]:
    """Return input arguments for reading a headerless PCM file.

    ffmpeg treats options appearing before ``-i`` as applying to that input, so
    the raw format description must precede the path it describes.
    """

    return [
        "-f",
        sample_format,
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-i",
        str(path),
    ]


def wav_output_args(path: str, sample_rate: int, channels: int = 1) -> list[str]:
    return [
        "-ar",
        str(sample_rate),
        "-ac",
        str(channels),
        "-c:a",
        "pcm_s16le",
        "-f",
        "wav",
        str(path),
    ]


def base_args(ffmpeg_path: str = "ffmpeg") -> list[str]:
    return [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostdin", "-y"]


def ffmpeg_available(ffmpeg_path: str = "ffmpeg") -> bool:
    return shutil.which(ffmpeg_path) is not None
