"""Authoritative record of clients and their environments.

An environment lives at ``{clients_path}/{client}/{environment}`` and is
described by the flat ``.env`` document in that directory; the document is the
single source of truth for identity, domain, credentials, and status.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
import shutil
import tempfile
import threading
from typing import Any, Iterator

import yaml

from clientstack.config.schema import AppConfig
from clientstack.core.commands import CommandRunner, CommandTimeout
from clientstack.core.envfile import EnvFileBuilder, read_env_file, update_env_file
from clientstack.core.errors import (
    AlreadyExistsError,
    ConfirmationRequiredError,
    HostingError,
    NotFoundError,
    StepFailedError,
)
from clientstack.core.event_bus import ENVIRONMENT_COMPLETED, ENVIRONMENT_CREATED, ENVIRONMENT_REMOVED
from clientstack.core.locks import EnvironmentLockTable
from clientstack.core.logging import EventLogger, get_logger
from clientstack.core.models import (
    Client,
    Environment,
    EnvironmentStatus,
    EnvironmentSummary,
    Found,
    Lookup,
    NotFound,
)
from clientstack.core.naming import derive_domain, is_valid_name, validate_name
from clientstack.core.network import NetworkIsolationManager, NetworkReport
from clientstack.core.vault import SecretBundle, SecretScope, SecretVault
from clientstack.proxy.policy import PolicyChange, ProxyPolicySynthesizer

REMOVAL_CONFIRMATION = "DELETE"
SHARED_DIR = "shared"
ENV_FILE = ".env"
CLIENT_MARKER = ".client-config"


@dataclass(slots=True)
class CreateResult:
    environment: Environment
    secrets: SecretBundle
    network: NetworkReport
    policy: PolicyChange
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RemoveResult:
    client: str
    environment: str
    token_revoked: bool
    policy_files: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _utc_now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


def _rename_in_compose(node: Any, placeholder: str, replacement: str) -> Any:
    if isinstance(node, dict):
        return {
            (replacement if key == placeholder else key): _rename_in_compose(value, placeholder, replacement)
            for key, value in node.items()
        }
    if isinstance(node, list):
        return [_rename_in_compose(item, placeholder, replacement) for item in node]
    if node == placeholder:
        return replacement
    return node


class EnvironmentRegistry:
    def __init__(
        self,
        config: AppConfig,
        *,
        vault: SecretVault,
        network: NetworkIsolationManager,
        proxy: ProxyPolicySynthesizer,
        locks: EnvironmentLockTable,
        runner: CommandRunner,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.config = config
        self.clients_path = Path(config.paths.clients_path)
        self.vault = vault
        self.network = network
        self.proxy = proxy
        self.locks = locks
        self.runner = runner
        self.event_logger = event_logger
        self.logger = get_logger("clientstack.registry")
        self._create_guard = threading.Lock()

    def client_path(self, client: str) -> Path:
        return self.clients_path / client

    def environment_path(self, client: str, environment: str) -> Path:
        return self.clients_path / client / environment

    def lookup(self, client: str, environment: str) -> Lookup:
        validate_name(client, kind="client")
        validate_name(environment, kind="environment")
        if environment == SHARED_DIR:
            return NotFound(client, environment, reason="reserved directory")
        env_file = self.environment_path(client, environment) / ENV_FILE
        try:
            values = read_env_file(env_file)
        except FileNotFoundError:
            return NotFound(client, environment)
        return Found(self._environment_from_config(client, environment, values))

    def get(self, client: str, environment: str) -> Environment:
        result = self.lookup(client, environment)
        if isinstance(result, NotFound):
            raise NotFoundError(f"environment {client}/{environment} not found")
        return result.environment

    def create(self, client: str, environment: str, domain_override: str | None = None) -> CreateResult:
        validate_name(client, kind="client")
        validate_name(environment, kind="environment")
        if environment == SHARED_DIR:
            raise AlreadyExistsError(f"'{SHARED_DIR}' is reserved for client resources")
        domain = derive_domain(
            client,
            environment,
            base_domain=self.config.domains.base_domain,
            override=domain_override,
        )
        with self.locks.hold(client, environment, operation="create"):
            env_path = self.environment_path(client, environment)
            with self._create_guard:
                if isinstance(self.lookup(client, environment), Found) or env_path.exists():
                    raise AlreadyExistsError(f"environment {client}/{environment} already exists")
                owner = self._prefix_owner(client, environment)
                if owner is not None:
                    raise AlreadyExistsError(
                        f"environment {client}/{environment} collides with {owner[0]}/{owner[1]}:"
                        f" both are named {client}-{environment}"
                    )
                return self._create_locked(client, environment, domain)

    def _prefix_owner(self, client: str, environment: str) -> tuple[str, str] | None:
        """Find another environment whose joined ``client-environment`` name equals this one's.

        Container names, policy files and deployment logs all use the joined form, so
        ``acme-dev/staging`` and ``acme/dev-staging`` cannot coexist.
        """
        joined = f"{client}-{environment}"
        if not self.clients_path.is_dir():
            return None
        for path in self.clients_path.iterdir():
            other = path.name
            if other == client or not path.is_dir() or not joined.startswith(f"{other}-"):
                continue
            other_env = joined[len(other) + 1 :]
            if other_env == SHARED_DIR or not is_valid_name(other_env):
                continue
            if (path / other_env).exists():
                return other, other_env
        return None

    def _create_locked(self, client: str, environment: str, domain: str) -> CreateResult:
        scope = SecretScope(client, environment)
        env_path = self.environment_path(client, environment)
        step = "layout"
        try:
            self._create_layout(client, environment)
            step = "secrets"
            bundle = self.vault.generate(scope)
            self.vault.store(scope, bundle)
            step = "config"
            record = self._write_environment_config(client, environment, domain, bundle)
            step = "network"
            network_report = self.network.ensure_client_network(client)
            step = "starter"
            if self.config.starter.enabled:
                self._seed_from_starter(env_path, network_report.name)
            step = "policy"
            change = self.proxy.apply(self.proxy.derive(record))
        except (HostingError, OSError, ValueError) as exc:
            detail = exc.message if isinstance(exc, HostingError) else str(exc)
            self._rollback_create(client, environment, step)
            self.logger.error(
                "environment creation failed",
                extra={
                    "event_action": "environment_create",
                    "event_outcome": "failure",
                    "client": client,
                    "environment": environment,
                    "stage": step,
                    "payload": {"error": detail},
                },
            )
            raise StepFailedError(
                f"create {client}/{environment} failed at step '{step}': {detail}",
                step=step,
            ) from exc

        warnings: list[str] = []
        if change.reload_error:
            warnings.append(f"proxy reload: {change.reload_error}")
        self._emit(
            message="environment created",
            action="environment_create",
            client=client,
            environment=environment,
            topic=ENVIRONMENT_CREATED,
            payload={"domain": domain, "network": network_report.name, "warnings": warnings},
        )
        return CreateResult(
            environment=record,
            secrets=bundle,
            network=network_report,
            policy=change,
            warnings=warnings,
        )

    def _create_layout(self, client: str, environment: str) -> None:
        client_path = self.client_path(client)
        shared = client_path / SHARED_DIR
        for directory in (shared / "uploads-sync", shared / "backups"):
            directory.mkdir(parents=True, exist_ok=True)
        (shared / "tokens").mkdir(mode=0o700, parents=True, exist_ok=True)
        marker = client_path / CLIENT_MARKER
        if not marker.exists():
            EnvFileBuilder().set("CLIENT_NAME", client).set("CREATED_DATE", _utc_now()).write(marker, mode=0o644)
        self.environment_path(client, environment).mkdir(mode=0o750)

    def _write_environment_config(
        self, client: str, environment: str, domain: str, bundle: SecretBundle
    ) -> Environment:
        created_at = _utc_now()
        credentials = bundle.credentials
        env_path = self.environment_path(client, environment)
        document = (
            EnvFileBuilder("Environment Configuration")
            .set("CLIENT_NAME", client)
            .set("ENVIRONMENT", environment)
            .set("WP_DOMAIN", domain)
            .set("WP_TITLE", f"{client.capitalize()} Website")
            .section("Container Configuration")
            .set("CONTAINER_PREFIX", client)
            .section("Database Configuration")
            .set("MYSQL_DATABASE", f"{client}_{environment}")
            .set("MYSQL_USER", f"{client}_user")
            .set("MYSQL_PASSWORD", credentials.database_password)
            .set("MYSQL_ROOT_PASSWORD", credentials.database_root_password)
            .set("MYSQL_HOST", "database")
            .section("Admin Configuration")
            .set("WP_ADMIN_USER", "admin")
            .set("WP_ADMIN_PASSWORD", credentials.admin_password)
            .set("WP_ADMIN_EMAIL", f"admin@{domain}")
            .section("File Paths")
            .set("DOCUMENT_ROOT", "./public_html")
            .set("PHP_INI", "./config/php/php.ini")
            .set("LOG_DIR", "./logs/apache2")
            .set("MYSQL_DATA_DIR", "./data/mysql")
            .set("MYSQL_LOG_DIR", "./logs/mysql")
            .section("Security")
            .set("DEPLOYMENT_TOKEN", bundle.token)
            .set("STAGING_PASSWORD", credentials.staging_password)
            .section("Build Configuration")
            .set("NODE_ENV", "production")
            .set("REMOVE_DEFAULT_CONTENT", "true")
            .set("WP_TIMEZONE", self.config.domains.timezone)
            .section("Lifecycle")
            .set("CREATED_AT", created_at)
            .set("DEPLOY_STATUS", EnvironmentStatus.PENDING.value)
        )
        document.write(env_path / ENV_FILE, mode=0o600)
        return self._environment_from_config(client, environment, read_env_file(env_path / ENV_FILE))

    def _seed_from_starter(self, env_path: Path, network_name: str) -> None:
        starter = self.config.starter
        with tempfile.TemporaryDirectory(prefix="clientstack-starter-") as tmp:
            checkout = Path(tmp) / "starter"
            try:
                result = self.runner.run(
                    ["git", "clone", "--depth", "1", starter.repo_url, str(checkout)],
                    timeout_seconds=starter.clone_timeout_seconds,
                )
            except CommandTimeout as exc:
                raise StepFailedError(str(exc), step="starter") from exc
            if not result.ok:
                raise StepFailedError(f"failed to clone starter repository: {result.details()}", step="starter")
            ignored = {ENV_FILE} if starter.keep_history else {ENV_FILE, ".git"}
            shutil.copytree(
                checkout,
                env_path,
                dirs_exist_ok=True,
                ignore=lambda _dir, names: [name for name in names if name in ignored and _dir == str(checkout)],
            )
        compose_file = env_path / "docker-compose.yml"
        if compose_file.exists():
            with compose_file.open("r", encoding="utf-8") as handle:
                compose = yaml.safe_load(handle) or {}
            compose = _rename_in_compose(compose, starter.network_placeholder, network_name)
            compose_file.write_text(yaml.safe_dump(compose, sort_keys=False), encoding="utf-8")

    def _rollback_create(self, client: str, environment: str, failed_step: str) -> None:
        scope = SecretScope(client, environment)
        self.vault.revoke(scope)
        if failed_step == "policy":
            self.proxy.remove(client, environment)
        shutil.rmtree(self.environment_path(client, environment), ignore_errors=True)

    def list(self, client: str | None = None) -> Iterator[EnvironmentSummary]:
        if client is not None:
            validate_name(client, kind="client")
            if not self.client_path(client).is_dir():
                raise NotFoundError(f"client '{client}' not found")
        return self._iter_summaries(client)

    def _iter_summaries(self, client: str | None) -> Iterator[EnvironmentSummary]:
        running: list[str] | None = None
        fetched = False
        for client_name in [client] if client else [item.name for item in self.clients()]:
            for environment in self._environment_names(client_name):
                found = self.lookup(client_name, environment)
                if not isinstance(found, Found):
                    continue
                if not fetched:
                    running = self._running_container_names()
                    fetched = True
                record = found.environment
                yield EnvironmentSummary(
                    client=record.client,
                    environment=record.name,
                    domain=record.domain,
                    status=record.status,
                    running_instances=self._count_running(running, record.client, record.name),
                )

    def clients(self) -> Iterator[Client]:
        if not self.clients_path.is_dir():
            return
        for path in sorted(self.clients_path.iterdir()):
            if not path.is_dir() or not is_valid_name(path.name):
                continue
            marker = path / CLIENT_MARKER
            created_at = read_env_file(marker).get("CREATED_DATE", "") if marker.exists() else ""
            yield Client(name=path.name, created_at=created_at, path=path)

    def _environment_names(self, client: str) -> list[str]:
        client_path = self.client_path(client)
        if not client_path.is_dir():
            return []
        return [
            path.name
            for path in sorted(client_path.iterdir())
            if path.is_dir() and path.name != SHARED_DIR and is_valid_name(path.name)
        ]

    def running_instances(self, client: str, environment: str) -> int | None:
        return self._count_running(self._running_container_names(), client, environment)

    def _running_container_names(self) -> list[str] | None:
        runtime = self.config.runtime
        try:
            result = self.runner.run(
                [*runtime.docker_command, "ps", "--format", "{{.Names}}"],
                timeout_seconds=runtime.command_timeout_seconds,
            )
        except CommandTimeout:
            return None
        if not result.ok:
            return None
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    @staticmethod
    def _count_running(names: list[str] | None, client: str, environment: str) -> int | None:
        if names is None:
            return None
        head, tail = f"{client}-", f"-{environment}"
        count = 0
        for name in names:
            if not (name.startswith(head) and name.endswith(tail)) or len(name) <= len(head) + len(tail):
                continue
            # One service segment between the two names, so acme/staging never counts
            # acme-dev-webserver-staging.
            service = name[len(head) : len(name) - len(tail)]
            if "-" not in service:
                count += 1
        return count

    def remove(self, client: str, environment: str, confirmation: str | None) -> RemoveResult:
        self.get(client, environment)
        if confirmation != REMOVAL_CONFIRMATION:
            raise ConfirmationRequiredError(
                f"removing {client}/{environment} requires the confirmation phrase '{REMOVAL_CONFIRMATION}'",
                step="confirm",
            )
        with self.locks.hold(client, environment, operation="remove"):
            self.get(client, environment)
            env_path = self.environment_path(client, environment)
            warnings: list[str] = []
            teardown_warning = self._teardown(env_path)
            if teardown_warning:
                warnings.append(teardown_warning)
            token_revoked = self.vault.revoke(SecretScope(client, environment))
            try:
                shutil.rmtree(env_path)
            except OSError as exc:
                raise StepFailedError(
                    f"remove {client}/{environment} failed at step 'delete': {exc}",
                    step="delete",
                ) from exc
            change = self.proxy.remove(client, environment)
            if change.reload_error:
                warnings.append(f"proxy reload: {change.reload_error}")
        self._emit(
            message="environment removed",
            action="environment_remove",
            client=client,
            environment=environment,
            topic=ENVIRONMENT_REMOVED,
            payload={"warnings": warnings, "policy_files": change.files},
        )
        return RemoveResult(
            client=client,
            environment=environment,
            token_revoked=token_revoked,
            policy_files=change.files,
            warnings=warnings,
        )

    def _teardown(self, env_path: Path) -> str | None:
        if not any((env_path / name).exists() for name in ("docker-compose.yml", "compose.yml", "compose.yaml")):
            return None
        runtime = self.config.runtime
        try:
            result = self.runner.run(
                [*runtime.compose_command, "down", "-v"],
                cwd=env_path,
                timeout_seconds=runtime.command_timeout_seconds * 4,
            )
        except CommandTimeout as exc:
            return f"teardown: {exc}"
        if not result.ok:
            return f"teardown: {result.details()}"
        return None

    def mark_complete(self, client: str, environment: str) -> Environment:
        with self.locks.hold(client, environment, operation="mark-complete"):
            record = self.get(client, environment)
            if record.status is EnvironmentStatus.COMPLETE:
                return record
            update_env_file(record.path / ENV_FILE, {"DEPLOY_STATUS": EnvironmentStatus.COMPLETE.value})
            record = self.get(client, environment)
        self._emit(
            message="environment setup complete",
            action="environment_complete",
            client=client,
            environment=environment,
            topic=ENVIRONMENT_COMPLETED,
        )
        return record

    def _environment_from_config(self, client: str, environment: str, values: dict[str, str]) -> Environment:
        try:
            status = EnvironmentStatus(values.get("DEPLOY_STATUS", EnvironmentStatus.PENDING.value))
        except ValueError:
            status = EnvironmentStatus.PENDING
        return Environment(
            client=client,
            name=environment,
            domain=values.get("WP_DOMAIN", ""),
            status=status,
            path=self.environment_path(client, environment),
            created_at=values.get("CREATED_AT", ""),
            config=values,
        )

    def _emit(self, *, message: str, action: str, client: str, environment: str, topic: str, payload=None) -> None:
        if self.event_logger is None:
            return
        self.event_logger.emit(
            message=message,
            action=action,
            client=client,
            environment=environment,
            outcome="success",
            topic=topic,
            payload=payload,
        )
