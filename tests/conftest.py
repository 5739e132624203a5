from __future__ import annotations

from pathlib import Path
import threading
from typing import Any, Callable, Sequence

import pytest

from clientstack.config.schema import AppConfig, parse_config
from clientstack.core.commands import CommandResult
from clientstack.core.service import HostingService


Handler = Callable[[list[str], "Path | None", float], CommandResult]


class FakeRunner:
    """Records every command and answers like a small docker host.

    Rules registered with ``on`` match by argv prefix; the latest rule wins.
    """

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.networks: set[str] = {"bridge", "host"}
        self.containers: set[str] = {"traefik"}
        self._rules: list[tuple[list[str], Handler]] = []
        self._lock = threading.Lock()

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        handler: Handler | None = None,
    ) -> None:
        if handler is None:

            def handler(argv: list[str], cwd: Path | None, timeout: float) -> CommandResult:
                return CommandResult(command=argv, returncode=returncode, stdout=stdout, stderr=stderr)

        self._rules.append((list(prefix), handler))

    def run(self, command: Sequence[str], *, cwd: Path | None = None, timeout_seconds: float) -> CommandResult:
        argv = [str(item) for item in command]
        with self._lock:
            self.calls.append({"argv": argv, "cwd": cwd, "timeout": timeout_seconds})
            rules = list(self._rules)
        for prefix, handler in reversed(rules):
            if argv[: len(prefix)] == prefix:
                return handler(argv, cwd, timeout_seconds)
        return self._default(argv)

    def commands(self, *prefix: str) -> list[list[str]]:
        with self._lock:
            return [call["argv"] for call in self.calls if call["argv"][: len(prefix)] == list(prefix)]

    def _default(self, argv: list[str]) -> CommandResult:
        if argv[:3] == ["docker", "network", "ls"]:
            return CommandResult(command=argv, returncode=0, stdout="\n".join(sorted(self.networks)) + "\n")
        if argv[:3] == ["docker", "network", "create"]:
            self.networks.add(argv[3])
            return CommandResult(command=argv, returncode=0, stdout=f"{argv[3]}-id\n")
        if argv[:2] == ["docker", "ps"]:
            return CommandResult(command=argv, returncode=0, stdout="\n".join(sorted(self.containers)) + "\n")
        return CommandResult(command=argv, returncode=0)


def build_config(tmp_path: Path, **overrides: Any) -> AppConfig:
    data: dict[str, Any] = {
        "paths": {
            "clients_path": str(tmp_path / "clients"),
            "deployment_log_path": str(tmp_path / "deployments"),
            "proxy_dynamic_path": str(tmp_path / "dynamic"),
        },
        "domains": {"base_domain": "example.com", "timezone": "UTC"},
        "proxy": {"reload_settle_seconds": 0},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return parse_config(data)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def runner_factory() -> Callable[[], FakeRunner]:
    return FakeRunner


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., AppConfig]:
    return lambda **overrides: build_config(tmp_path, **overrides)


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    return build_config(tmp_path)


@pytest.fixture
def service(app_config: AppConfig, runner: FakeRunner):
    hosting = HostingService(app_config, runner=runner)
    yield hosting
    hosting.close()


@pytest.fixture
def make_checkout() -> Callable[..., Path]:
    def _make(path: Path, *, package_json: bool = False, node_modules: bool = False) -> Path:
        (path / ".git").mkdir(parents=True, exist_ok=True)
        if package_json:
            (path / "package.json").write_text('{"scripts": {"production": "mix --production"}}\n', encoding="utf-8")
        if node_modules:
            (path / "node_modules").mkdir(exist_ok=True)
        return path

    return _make
