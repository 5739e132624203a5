"""Hosting service facade wiring every component from one ``AppConfig``."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator

from clientstack.config.schema import AppConfig
from clientstack.core.commands import CommandRunner, SubprocessRunner
from clientstack.core.errors import HostingError, ProxyReloadError, SecretRevokedError
from clientstack.core.event_bus import EventBus
from clientstack.core.locks import EnvironmentLockTable
from clientstack.core.logging import EventLogger, configure_logging, get_logger
from clientstack.core.models import EnvironmentSummary
from clientstack.core.network import NetworkIsolationManager
from clientstack.core.registry import EnvironmentRegistry
from clientstack.core.vault import SecretScope, SecretVault
from clientstack.deploy.pipeline import DeploymentOrchestrator, DeploymentResult
from clientstack.deploy.workflow import render_workflow, token_secret_name
from clientstack.proxy.policy import ProxyPolicySynthesizer


class HostingService:
    def __init__(self, config: AppConfig, *, runner: CommandRunner | None = None) -> None:
        self.config = config
        configure_logging(config.logging)
        self.runner = runner or SubprocessRunner()
        self.event_bus = EventBus(config.event_bus)
        self.event_logger = EventLogger(
            logger=get_logger("clientstack.events", level=config.logging.level),
            service_name=config.logging.service_name,
            publish_hook=self.event_bus.publish,
        )
        self.locks = EnvironmentLockTable()
        self.vault = SecretVault(Path(config.paths.clients_path))
        self.network = NetworkIsolationManager(config.network, config.runtime, self.runner)
        self.proxy = ProxyPolicySynthesizer(
            config.proxy,
            config.runtime,
            Path(config.paths.proxy_dynamic_path),
            self.runner,
            event_logger=self.event_logger,
        )
        self.registry = EnvironmentRegistry(
            config,
            vault=self.vault,
            network=self.network,
            proxy=self.proxy,
            locks=self.locks,
            runner=self.runner,
            event_logger=self.event_logger,
        )
        self.deployments = DeploymentOrchestrator(
            config.deployment,
            config.runtime,
            registry=self.registry,
            vault=self.vault,
            locks=self.locks,
            runner=self.runner,
            log_dir=Path(config.paths.deployment_log_path),
            event_logger=self.event_logger,
        )

    def create(self, client: str, environment: str, domain: str | None = None) -> dict[str, Any]:
        result = self.registry.create(client, environment, domain_override=domain)
        record = result.environment
        credentials: dict[str, str] = {
            "admin_user": record.config.get("WP_ADMIN_USER", "admin"),
            "admin_password": result.secrets.credentials.admin_password,
            "deployment_token": result.secrets.token,
        }
        if not record.production:
            credentials["staging_username"] = self.config.proxy.staging_username
            credentials["staging_password"] = result.secrets.credentials.staging_password
        return {
            "environment": record.to_dict(),
            "network": result.network.name,
            "network_created": result.network.created,
            "policy_files": list(result.policy.files),
            "credentials": credentials,
            "webhook_path": f"/webhook/{client}/{environment}",
            "token_secret_name": token_secret_name(client, environment),
            "warnings": list(result.warnings),
        }

    def list(self, client: str | None = None) -> Iterator[EnvironmentSummary]:
        return self.registry.list(client)

    def status(self) -> dict[str, Any]:
        clients = [item.name for item in self.registry.clients()]
        environments = [summary.to_dict() for summary in self.registry.list()]
        return {
            "environment": self.config.environment,
            "clients": clients,
            "environments": environments,
            "network": self.network.validate(clients).to_dict(),
            "proxy": {
                "reload_mode": self.config.proxy.reload_mode,
                "dynamic_path": str(self.proxy.dynamic_path),
                "files": len(self.proxy.list_files()),
            },
            "active_operations": self.locks.active(),
            "recent_deployments": [record.to_dict() for record in self.deployments.recent(5)],
            "event_bus": self.event_bus.snapshot(),
        }

    def remove(self, client: str, environment: str, confirmation: str | None) -> dict[str, Any]:
        result = self.registry.remove(client, environment, confirmation)
        return {
            "client": result.client,
            "environment": result.environment,
            "token_revoked": result.token_revoked,
            "policy_files_removed": list(result.policy_files),
            "warnings": list(result.warnings),
        }

    def trigger(
        self,
        client: str,
        environment: str,
        token: str | None,
        payload: dict[str, Any] | None = None,
    ) -> DeploymentResult:
        return self.deployments.trigger(client, environment, token, payload)

    def deploy_test(self, client: str, environment: str) -> DeploymentResult:
        """Run the pipeline with the environment's own token, as the operator."""
        try:
            token = self.vault.read_token(SecretScope(client, environment))
        except SecretRevokedError:
            token = None
        return self.deployments.trigger(client, environment, token, {"ref": "manual", "actor": "operator"})

    def generate_trigger_descriptor(self, client: str, environment: str, base_url: str) -> str:
        self.registry.get(client, environment)
        return render_workflow(client, environment, base_url)

    def deployment_logs(self, client: str, environment: str, lines: int = 50) -> dict[str, Any]:
        path, tail_lines = self.deployments.read_log(client, environment, lines)
        return {"path": str(path), "lines": tail_lines}

    def recent_deployments(self, limit: int = 20) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self.deployments.recent(limit)]

    def resync_policies(self) -> dict[str, Any]:
        applied: list[dict[str, Any]] = []
        failed: list[dict[str, Any]] = []
        for summary in self.registry.list():
            try:
                record = self.registry.get(summary.client, summary.environment)
                change = self.proxy.apply(self.proxy.derive(record), reload=False)
            except HostingError as exc:
                failed.append({"client": summary.client, "environment": summary.environment, **exc.to_dict()})
                continue
            applied.append({"client": change.client, "environment": change.environment, "files": list(change.files)})
        reload_error: str | None = None
        if applied:
            try:
                self.proxy.reload()
            except ProxyReloadError as exc:
                reload_error = exc.message
        return {"applied": applied, "failed": failed, "reload_error": reload_error}

    def list_policies(self) -> list[dict[str, object]]:
        return self.proxy.list_files()

    def close(self) -> None:
        self.event_bus.close()
