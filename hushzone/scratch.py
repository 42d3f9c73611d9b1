"""Scratch storage for transient per-task audio files."""

from __future__ import annotations

import logging
import os
import re
import threading
import time
from pathlib import Path

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _sanitize(token: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", str(token)).strip("._")
    return cleaned or "speaker"


class ScratchStore:
    """Hands out unique per-(speaker, timestamp) paths and removes them."""

    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)
        self._log = logging.getLogger("scratch")
        self._counter = 0
        self._lock = threading.Lock()

    def ensure(self) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return self.root

    def allocate(self, speaker_id: str, suffix: str = ".pcm") -> Path:
        """Return a fresh path; the millisecond timestamp plus a counter keeps names unique."""
        self.ensure()
        with self._lock:
            self._counter += 1
            counter = self._counter
        stamp = int(time.time() * 1000)
        return self.root / f"{_sanitize(speaker_id)}-{stamp}-{counter}{suffix}"

    def release(self, path: str | os.PathLike[str] | None) -> bool:
        if path is None:
            return False
        target = Path(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            self._log.warning("Unable to remove scratch file %s: %s", target, exc)
            return False
        return True

    def purge(self) -> int:
        """Remove leftovers from a previous run; returns the number deleted."""
        if not self.root.exists():
            return 0
        removed = 0
        for entry in self.root.iterdir():
            if entry.is_file() and entry.suffix in {".pcm", ".wav"}:
                if self.release(entry):
                    removed += 1
        if removed:
            self._log.info("Purged %d stale scratch files from %s", removed, self.root)
        return removed
