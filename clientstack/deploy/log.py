"""Append-only per-deployment log files."""

from __future__ import annotations

from collections import deque
from datetime import UTC, datetime
import os
from pathlib import Path
import re
import threading

_LOG_SUFFIX_RE = re.compile(r"\d{8}-\d{6}-[0-9a-f]+\.log")


def log_filename(client: str, environment: str, started: datetime, deployment_id: str) -> str:
    return f"{client}-{environment}-{started.strftime('%Y%m%d-%H%M%S')}-{deployment_id}.log"


class DeploymentLog:
    """One durable log file per deployment.

    Every line is flushed and fsynced before ``write`` returns, so whatever the
    caller has been told about a deployment is already on disk.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o640)
        self._handle = os.fdopen(fd, "a", encoding="utf-8")

    def write(self, message: str) -> None:
        stamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        lines = message.rstrip("\n").splitlines() or [""]
        with self._lock:
            for line in lines:
                self._handle.write(f"[{stamp}] {line}\n")
            self._handle.flush()
            os.fsync(self._handle.fileno())

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()

    def __enter__(self) -> "DeploymentLog":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


def latest_log(log_dir: Path, client: str, environment: str) -> Path | None:
    if not log_dir.is_dir():
        return None
    prefix = f"{client}-{environment}-"
    candidates = []
    for path in log_dir.glob(f"{prefix}*.log"):
        # Exact prefix plus the whole timestamp-id suffix, so "staging" never picks up
        # logs of "staging-2" or "staging-20261018".
        if _LOG_SUFFIX_RE.fullmatch(path.name[len(prefix) :]):
            candidates.append(path)
    if not candidates:
        return None
    return max(candidates, key=lambda item: (item.stat().st_mtime, item.name))


def tail(path: Path, lines: int = 50) -> list[str]:
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return [line.rstrip("\n") for line in deque(handle, maxlen=max(1, lines))]
