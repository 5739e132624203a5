"""External command execution for git, npm, and the container runtime."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import subprocess
from typing import Protocol, Sequence


@dataclass(slots=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def rendered(self) -> str:
        return " ".join(self.command)

    def details(self) -> str:
        return (self.stderr or self.stdout or "").strip() or f"exit status {self.returncode}"


class CommandTimeout(RuntimeError):
    def __init__(self, command: Sequence[str], timeout_seconds: float) -> None:
        super().__init__(f"command '{' '.join(command)}' exceeded {timeout_seconds:.1f}s")
        self.command = list(command)
        self.timeout_seconds = timeout_seconds


class CommandRunner(Protocol):
    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: float,
    ) -> CommandResult: ...


class SubprocessRunner:
    """Runs commands without a shell; a missing executable yields exit status 127."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout_seconds: float,
    ) -> CommandResult:
        argv = [str(item) for item in command]
        try:
            proc = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                check=False,
                capture_output=True,
                text=True,
                timeout=max(0.01, timeout_seconds),
            )
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(argv, timeout_seconds) from exc
        except FileNotFoundError as exc:
            return CommandResult(command=argv, returncode=127, stderr=str(exc))
        return CommandResult(command=argv, returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
