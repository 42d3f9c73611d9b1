#!/usr/bin/env python3
"""
Unified configuration loader for hushzone.

Load order (first found wins for reporting, all found files are merged):
  1) HUSHZONE_CONFIG (env, absolute or relative to CWD)
  2) /etc/hushzone/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations
import copy
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict

try:
    import yaml
except Exception:
    yaml = None  # pyyaml should be installed; if not, only defaults will be used.

_DEFAULTS: Dict[str, Any] = {
    "capture": {
        "silence_ms": 2000,
        "sample_rate": 48000,
        "channels": 2,
    },
    "gate": {
        "min_bytes": 512,
        "min_duration_ms": 300,
        "min_rms": 50,
    },
    "enhance": {
        "enabled": True,
        "ffmpeg_path": "ffmpeg",
        "target_sample_rate": 16000,
        "timeout_sec": 10.0,
        "stages": [
            {"name": "highpass", "params": {"f": 200}},
            {"name": "lowpass", "params": {"f": 3400}},
            {"name": "afftdn", "params": {"nf": -25}},
            {"name": "equalizer", "params": {"f": 2500, "t": "q", "w": 1.0, "g": 4}},
            {"name": "agate", "params": {"threshold": 0.02, "ratio": 2, "attack": 5, "release": 100}},
            {"name": "acompressor", "params": {"threshold": 0.1, "ratio": 3, "attack": 10, "release": 200}},
            {"name": "dynaudnorm", "params": {"f": 150, "g": 15}},
        ],
    },
    "recognition": {
        "engine": "vosk",
        "vosk_model_path": "./models/vosk-model-small-en-us-0.15",
        "whisper_model": "tiny.en",
        "whisper_device": "cpu",
        "whisper_compute_type": "int8",
        "chunk_bytes": 8000,
    },
    "scheduler": {
        "max_concurrent": 3,
        "task_timeout_sec": 20.0,
    },
    "enforcement": {
        "cooldown_sec": 10.0,
    },
    "detector": {
        "extra_terms": [],
        "removed_terms": [],
    },
    "paths": {
        "scratch_dir": "./audio_recordings",
        "models_dir": "./models",
    },
    "logging": {
        "dev_mode": False,  # if True or ENV DEV=1, enable verbose debug
        "level": "INFO",
    },
}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_NOISY_LOGGERS = ("vosk", "faster_whisper", "libav")

_cfg_cache: Dict[str, Any] | None = None
_warned_yaml_missing = False
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    global _warned_yaml_missing
    if not path.exists():
        return {}
    if not yaml:
        if not _warned_yaml_missing:
            _warned_yaml_missing = True
            logging.getLogger("hushzone").warning(
                "PyYAML not available; using defaults only (no file parsing)."
            )
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except Exception:
        # Ignore parse errors and continue with other locations/defaults
        pass
    return {}


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("HUSHZONE_CONFIG")
    if env_cfg:
        try:
            search.append(Path(env_cfg).expanduser().resolve())
        except Exception:
            search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/hushzone/config.yaml"),
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except Exception:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "LOG_LEVEL" in os.environ:
        value = os.environ["LOG_LEVEL"].strip()
        if value:
            cfg.setdefault("logging", {})["level"] = value.upper()
    # Paths
    if "SCRATCH_DIR" in os.environ:
        value = os.environ["SCRATCH_DIR"].strip()
        if value:
            cfg.setdefault("paths", {})["scratch_dir"] = value
    if "VOSK_MODEL_PATH" in os.environ:
        value = os.environ["VOSK_MODEL_PATH"].strip()
        if value:
            cfg.setdefault("recognition", {})["vosk_model_path"] = value
    if "FFMPEG_PATH" in os.environ:
        value = os.environ["FFMPEG_PATH"].strip()
        if value:
            cfg.setdefault("enhance", {})["ffmpeg_path"] = value

    env_map: Dict[str, tuple[str, str, Callable[[str], Any]]] = {
        "RECOGNITION_ENGINE": ("recognition", "engine", lambda s: s.strip().lower()),
        "WHISPER_MODEL": ("recognition", "whisper_model", str),
        "MAX_CONCURRENT": ("scheduler", "max_concurrent", int),
        "TASK_TIMEOUT_SEC": ("scheduler", "task_timeout_sec", float),
        "SILENCE_MS": ("capture", "silence_ms", int),
        "GATE_MIN_BYTES": ("gate", "min_bytes", int),
        "GATE_MIN_DURATION_MS": ("gate", "min_duration_ms", int),
        "GATE_MIN_RMS": ("gate", "min_rms", float),
        "COOLDOWN_SEC": ("enforcement", "cooldown_sec", float),
        "ENHANCE_ENABLED": ("enhance", "enabled", _parse_bool),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except Exception:
                pass


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (hushzone/ -> project root)
    try:
        project_root = Path(__file__).resolve().parent.parent
    except Exception:
        project_root = Path.cwd()

    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        if active is None:
            try:
                if candidate.exists():
                    active = candidate
            except OSError:
                pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    global _active_config_path
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    global _search_paths
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


def _quiet_noisy_dependencies(level: int = logging.WARNING) -> None:
    """Tone down overly chatty third-party loggers."""

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def configure_logging(cfg: Dict[str, Any] | None = None, *, level: str | None = None) -> None:
    section = (cfg or get_cfg()).get("logging", {})
    if level is None:
        level = "DEBUG" if section.get("dev_mode") else str(section.get("level", "INFO"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    _quiet_noisy_dependencies()
