"""
Append-only error-capture file.

One human-readable line per failed payload, for offline inspection.
"""

from __future__ import annotations

import threading
from pathlib import Path

from loguru import logger


class ErrorCaptureLog:
    def __init__(self, path: str | Path, *, mkdirs: bool = True):
        self.path = Path(path)
        self._lock = threading.Lock()
        if mkdirs:
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def append(self, rendered: str) -> None:
        line = rendered.replace("\r", "\\r").replace("\n", "\\n")
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def tail(self, limit: int = 20) -> list[str]:
        """Last ``limit`` captured lines (empty when nothing was captured)."""
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        return lines[-limit:] if limit > 0 else []

    def count(self) -> int:
        if not self.path.exists():
            return 0
        with self._lock, self.path.open("r", encoding="utf-8") as f:
            return sum(1 for _ in f)

    def __repr__(self) -> str:
        return f"ErrorCaptureLog({self.path})"


def safe_append(log: ErrorCaptureLog, rendered: str) -> bool:
    """Append, logging (not raising) on I/O failure; the stream must go on."""
    try:
        log.append(rendered)
        return True
    except OSError as exc:
        logger.error(f"Error when writing message to error file {log.path}: {exc}")
        return False
