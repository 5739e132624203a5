"""Flat key-value (.env) serialization and atomic private file writes."""

from __future__ import annotations

import os
from pathlib import Path
import re
import tempfile

_KEY_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
_BARE_VALUE_RE = re.compile(r"^[A-Za-z0-9_./:@,+%=-]*$")


def atomic_write_text(path: Path, text: str, *, mode: int = 0o600) -> None:
    """Replace ``path`` with ``text``; readers see either the old or the new file, never a partial one."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        os.fchmod(fd, mode)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _quote(value: str) -> str:
    if any(char in value for char in ("\n", "\r", "\x00")):
        raise ValueError("env values must be single-line")
    if _BARE_VALUE_RE.match(value):
        return value
    if "'" not in value:
        return f"'{value}'"
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "$$")
    return f'"{escaped}"'


def _unquote(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    if len(value) >= 2 and value[0] == value[-1] == '"':
        inner = value[1:-1]
        out: list[str] = []
        index = 0
        while index < len(inner):
            char = inner[index]
            if char == "\\" and index + 1 < len(inner):
                out.append(inner[index + 1])
                index += 2
                continue
            if char == "$" and inner[index + 1 : index + 2] == "$":
                out.append("$")
                index += 2
                continue
            out.append(char)
            index += 1
        return "".join(out)
    return value


class EnvFileBuilder:
    """Ordered .env document; keys are validated and values are quoted, never interpolated."""

    def __init__(self, header: str | None = None) -> None:
        self._lines: list[str] = []
        self._keys: set[str] = set()
        if header:
            self._lines.append(f"# {header}")

    def section(self, title: str) -> "EnvFileBuilder":
        if self._lines:
            self._lines.append("")
        self._lines.append(f"# {title}")
        return self

    def set(self, key: str, value: object) -> "EnvFileBuilder":
        if not _KEY_RE.match(key):
            raise ValueError(f"invalid env key '{key}'")
        if key in self._keys:
            raise ValueError(f"duplicate env key '{key}'")
        self._keys.add(key)
        self._lines.append(f"{key}={_quote(str(value))}")
        return self

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"

    def write(self, path: Path, *, mode: int = 0o600) -> None:
        atomic_write_text(path, self.render(), mode=mode)


def parse_env_text(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export ") :].lstrip()
        key, sep, raw_value = stripped.partition("=")
        key = key.strip()
        if not sep or not _KEY_RE.match(key):
            continue
        values[key] = _unquote(raw_value)
    return values


def read_env_file(path: Path) -> dict[str, str]:
    return parse_env_text(path.read_text(encoding="utf-8"))


def update_env_file(path: Path, updates: dict[str, str]) -> None:
    """Rewrite selected keys in place, keeping order and comments of the existing document."""
    for key in updates:
        if not _KEY_RE.match(key):
            raise ValueError(f"invalid env key '{key}'")
    pending = dict(updates)
    lines: list[str] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        key = line.partition("=")[0].strip()
        if key in pending:
            lines.append(f"{key}={_quote(str(pending.pop(key)))}")
        else:
            lines.append(line)
    for key, value in pending.items():
        lines.append(f"{key}={_quote(str(value))}")
    atomic_write_text(path, "\n".join(lines) + "\n", mode=0o600)
