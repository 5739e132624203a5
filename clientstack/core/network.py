"""Per-client network isolation on the container runtime."""

from __future__ import annotations

from dataclasses import dataclass, field
import threading
from typing import Iterable

from clientstack.config.schema import NetworkConfig, RuntimeConfig
from clientstack.core.commands import CommandRunner, CommandTimeout
from clientstack.core.errors import NetworkIsolationError
from clientstack.core.logging import get_logger
from clientstack.core.naming import client_network_name


@dataclass(slots=True)
class NetworkReport:
    name: str
    created: bool = False
    managed: bool = True


@dataclass(slots=True)
class IsolationReport:
    networks: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)

    @property
    def compliant(self) -> bool:
        return not self.violations

    def to_dict(self) -> dict[str, object]:
        return {
            "compliant": self.compliant,
            "networks": list(self.networks),
            "warnings": list(self.warnings),
            "violations": list(self.violations),
        }


class NetworkIsolationManager:
    """Guarantees exactly one isolated network domain per client."""

    def __init__(self, config: NetworkConfig, runtime: RuntimeConfig, runner: CommandRunner) -> None:
        self.config = config
        self.runtime = runtime
        self.runner = runner
        self.logger = get_logger("clientstack.network")
        self._lock = threading.Lock()

    def network_name(self, client: str) -> str:
        return client_network_name(client, self.config.network_suffix)

    def list_networks(self) -> set[str]:
        result = self._docker(["network", "ls", "--format", "{{.Name}}"])
        if not result.ok:
            raise NetworkIsolationError(f"cannot list container networks: {result.details()}", step="network")
        return {line.strip() for line in result.stdout.splitlines() if line.strip()}

    def ensure_client_network(self, client: str) -> NetworkReport:
        name = self.network_name(client)
        if not self.config.manage_client_networks:
            return NetworkReport(name=name, managed=False)
        # Serialized so two clients' first environments cannot race on list-then-create.
        with self._lock:
            if name in self.list_networks():
                return NetworkReport(name=name)
            result = self._docker(["network", "create", name])
            if not result.ok and "already exists" not in result.details():
                raise NetworkIsolationError(f"failed to create network '{name}': {result.details()}", step="network")
        self.logger.info(
            "client network created",
            extra={"event_action": "network_create", "event_outcome": "success", "client": client},
        )
        return NetworkReport(name=name, created=True)

    def validate(self, clients: Iterable[str]) -> IsolationReport:
        report = IsolationReport()
        if not self.config.manage_client_networks:
            report.warnings.append("Client network management is disabled.")
            return report
        try:
            existing = self.list_networks()
        except NetworkIsolationError as exc:
            report.violations.append(str(exc))
            return report
        for client in sorted(set(clients)):
            name = self.network_name(client)
            if name in existing:
                report.networks.append(name)
            else:
                report.violations.append(f"Client network '{name}' not found.")
        return report

    def _docker(self, args: list[str]):
        command = [*self.runtime.docker_command, *args]
        try:
            return self.runner.run(command, timeout_seconds=self.runtime.command_timeout_seconds)
        except CommandTimeout as exc:
            raise NetworkIsolationError(str(exc), step="network") from exc
