"""``hushzone`` command line: environment checks, model download, offline replay."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import copy
import shutil
import subprocess
import sys
import wave
import zipfile
from pathlib import Path
from typing import Any, Dict, Sequence
from urllib.error import URLError
from urllib.request import Request, urlopen

from . import config, ffmpeg_io
from .detector import KeywordDetector
from .enhance import build_enhancer
from .pcm import describe_segment
from .quality_gate import GateThresholds, QualityGate
from .recognition import RecognitionError, RecognitionLane, build_backend
from .scratch import ScratchStore

MODEL_NAME = "vosk-model-small-en-us-0.15"
MODEL_URL = f"https://alphacephei.com/vosk/models/{MODEL_NAME}.zip"
MIN_PYTHON = (3, 10)


class CommandError(Exception):
    pass


def _print(message: str) -> None:
    print(message, flush=True)


def cmd_check(cfg: Dict[str, Any], _args: argparse.Namespace) -> int:
    ok = True
    ffmpeg_path = str(cfg["enhance"].get("ffmpeg_path", "ffmpeg"))
    if ffmpeg_io.ffmpeg_available(ffmpeg_path):
        banner = _ffmpeg_version(ffmpeg_path)
        _print(f"[check] ffmpeg found: {shutil.which(ffmpeg_path)} {banner}".rstrip())
    elif cfg["enhance"].get("enabled", True):
        ok = False
        _print(f"[check] ERROR: ffmpeg not found ({ffmpeg_path}); install it or set FFMPEG_PATH")
    else:
        _print("[check] ffmpeg not found (enhancement disabled)")

    engine = str(cfg["recognition"].get("engine", "vosk"))
    if engine == "vosk":
        model_path = Path(cfg["recognition"].get("vosk_model_path", ""))
        if model_path.exists():
            _print(f"[check] Vosk model found: {model_path}")
        else:
            ok = False
            _print(f"[check] ERROR: Vosk model missing at {model_path}; run 'hushzone fetch-model'")
    else:
        _print(f"[check] recognition engine: {engine}")

    version = sys.version_info
    if version[:2] < MIN_PYTHON:
        ok = False
        _print(f"[check] ERROR: Python {version.major}.{version.minor} is too old")
    else:
        _print(f"[check] Python {version.major}.{version.minor}.{version.micro} is compatible")

    active = config.active_config_path()
    _print(f"[check] config: {active if active else 'defaults only'}")
    _print("[check] all requirements met" if ok else "[check] requirements missing")
    return 0 if ok else 1


def cmd_fetch_model(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    models_dir = Path(args.dest or cfg["paths"].get("models_dir", "./models"))
    target = models_dir / MODEL_NAME
    if target.exists() and not args.force:
        _print(f"[fetch-model] model already present at {target}")
        return 0
    models_dir.mkdir(parents=True, exist_ok=True)
    archive = models_dir / f"{MODEL_NAME}.zip.partial"
    _print(f"[fetch-model] downloading {args.url}")
    try:
        _download(args.url, archive)
        with zipfile.ZipFile(archive) as bundle:
            bundle.extractall(models_dir)
    except (URLError, OSError, zipfile.BadZipFile) as exc:
        raise CommandError(f"failed to fetch model: {exc}") from exc
    finally:
        with contextlib.suppress(FileNotFoundError):
            archive.unlink()
    _print(f"[fetch-model] model ready at {target}")
    return 0


def _download(url: str, destination: Path, chunk_size: int = 1 << 16) -> None:
    request = Request(url, headers={"User-Agent": "hushzone"})
    with urlopen(request, timeout=60) as response, destination.open("wb") as handle:
        total = int(response.headers.get("Content-Length") or 0)
        received = 0
        while True:
            chunk = response.read(chunk_size)
            if not chunk:
                break
            handle.write(chunk)
            received += len(chunk)
            if total and sys.stdout.isatty():
                sys.stdout.write(f"\r[fetch-model] {received * 100.0 / total:5.1f}%")
                sys.stdout.flush()
    if total and sys.stdout.isatty():
        sys.stdout.write("\n")


def cmd_terms(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    detector = KeywordDetector.from_config(cfg)
    if args.match:
        detection = detector.detect(args.match)
        _print(", ".join(detection.terms) if detection.matched else "(no match)")
        return 0 if detection.matched else 1
    for term in sorted(detector.terms()):
        _print(term)
    return 0


def _stage_input(source: Path, scratch: ScratchStore, cfg: Dict[str, Any]) -> tuple[Path, int, int]:
    """Copy ``source`` into scratch as raw s16le; returns (path, rate, channels)."""
    raw_path = scratch.allocate("replay")
    if source.suffix.lower() == ".wav":
        with contextlib.closing(wave.open(str(source), "rb")) as wav_file:
            if wav_file.getsampwidth() != 2:
                raise CommandError("only 16-bit WAV input is supported")
            rate = wav_file.getframerate()
            channels = wav_file.getnchannels()
            raw_path.write_bytes(wav_file.readframes(wav_file.getnframes()))
        return raw_path, rate, channels
    shutil.copyfile(source, raw_path)
    return raw_path, int(cfg["capture"]["sample_rate"]), int(cfg["capture"]["channels"])


async def _replay(cfg: Dict[str, Any], source: Path) -> int:
    scratch = ScratchStore(cfg["paths"]["scratch_dir"])
    raw_path, rate, channels = _stage_input(source, scratch, cfg)
    try:
        segment = describe_segment(raw_path, sample_rate=rate, channels=channels)
        gate = QualityGate(GateThresholds.from_config(cfg.get("gate")), release=scratch.release)
        verdict = gate.evaluate(segment)
        if not verdict:
            _print(f"[transcribe] rejected: {verdict.reason}")
            return 2

        lane = RecognitionLane(
            build_backend(cfg),
            chunk_bytes=int(cfg["recognition"].get("chunk_bytes", 8000)),
            release=scratch.release,
        )
        try:
            replay_cfg = copy.deepcopy(cfg)
            replay_cfg["capture"].update({"sample_rate": rate, "channels": channels})
            enhanced = await build_enhancer(replay_cfg).enhance(raw_path)
            if enhanced is None:
                _print("[transcribe] enhancement failed")
                return 1
            text = await lane.transcribe(enhanced)
        finally:
            await lane.close()
    finally:
        scratch.release(raw_path)

    _print(f"[transcribe] text: {text or '(empty)'}")
    detection = KeywordDetector.from_config(cfg).detect(text)
    if detection.matched:
        _print(f"[transcribe] matched: {', '.join(detection.terms)}")
    return 0


def cmd_transcribe(cfg: Dict[str, Any], args: argparse.Namespace) -> int:
    source = Path(args.source)
    if not source.is_file():
        raise CommandError(f"no such file: {source}")
    return asyncio.run(_replay(cfg, source))


def _ffmpeg_version(ffmpeg_path: str) -> str:
    try:
        proc = subprocess.run([ffmpeg_path, "-version"], capture_output=True, text=True, timeout=5)
    except (OSError, subprocess.TimeoutExpired):
        return ""
    return proc.stdout.splitlines()[0] if proc.stdout else ""


def _parse_cli_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="hushzone", description="Voice moderation pipeline tools")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Verify ffmpeg, the recognition model and Python")
    check.set_defaults(handler=cmd_check)

    fetch = sub.add_parser("fetch-model", help="Download the small English Vosk model")
    fetch.add_argument("--url", default=MODEL_URL)
    fetch.add_argument("--dest", default=None, help="Models directory (default: paths.models_dir)")
    fetch.add_argument("--force", action="store_true", help="Download even if already present")
    fetch.set_defaults(handler=cmd_fetch_model)

    transcribe = sub.add_parser("transcribe", help="Run gate, enhancement and recognition on a file")
    transcribe.add_argument("source", help="WAV file or raw s16le capture at the configured rate")
    transcribe.set_defaults(handler=cmd_transcribe)

    terms = sub.add_parser("terms", help="List moderation terms or test a phrase")
    terms.add_argument("--match", default=None, help="Text to test against the term set")
    terms.set_defaults(handler=cmd_terms)

    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_cli_args(argv)
    cfg = config.get_cfg()
    config.configure_logging(cfg)
    try:
        return int(args.handler(cfg, args))
    except (CommandError, RecognitionError) as exc:
        _print(f"[{args.command}] ERROR: {exc}")
        return 1
    except Exception as exc:  # pragma: no cover - unexpected failure
        _print(f"[{args.command}] ERROR: unexpected failure: {exc}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
