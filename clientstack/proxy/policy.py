"""Reverse-proxy middleware chains derived from environment kind.

Each environment gets one Traefik file-provider document per policy fragment
plus one chain document. For non-production environments the chain is always
``auth -> seo -> security-headers -> rate-limit`` so that unauthenticated
requests are rejected before any later middleware runs. Production never
carries the auth or SEO fragments.

Documents are built as plain dictionaries and serialized with
``yaml.safe_dump``; client-supplied names only ever appear as YAML scalars.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import logging
from pathlib import Path
import threading
import time
from typing import Any

from passlib.hash import apr_md5_crypt
import yaml

from clientstack.config.schema import ProxyConfig, RuntimeConfig
from clientstack.core.commands import CommandRunner, CommandTimeout
from clientstack.core.envfile import atomic_write_text
from clientstack.core.errors import NoPasswordError, ProxyReloadError
from clientstack.core.event_bus import POLICY_APPLIED, POLICY_REMOVED
from clientstack.core.logging import EventLogger, get_logger
from clientstack.core.models import Environment

NOINDEX_DIRECTIVES = "noindex,nofollow,noarchive,nosnippet"
SECURITY_RESPONSE_HEADERS = {
    "X-Frame-Options": "SAMEORIGIN",
    "X-Content-Type-Options": "nosniff",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}


class FragmentKind(str, Enum):
    AUTH = "auth"
    SEO = "seo"
    SECURITY_HEADERS = "security-headers"
    RATE_LIMIT = "rate-limit"


CHAIN_SUFFIX = "chain"
NON_PRODUCTION_ORDER = (FragmentKind.AUTH, FragmentKind.SEO, FragmentKind.SECURITY_HEADERS, FragmentKind.RATE_LIMIT)
PRODUCTION_ORDER = (FragmentKind.SECURITY_HEADERS, FragmentKind.RATE_LIMIT)


def middleware_name(client: str, environment: str, suffix: str) -> str:
    return f"{client}-{environment}-{suffix}"


@dataclass(frozen=True, slots=True)
class PolicyFragment:
    kind: FragmentKind
    name: str
    spec: dict[str, Any]

    @property
    def filename(self) -> str:
        return f"{self.name}.yml"

    def document(self) -> dict[str, Any]:
        return {"http": {"middlewares": {self.name: self.spec}}}


@dataclass(slots=True)
class MiddlewarePolicy:
    client: str
    environment: str
    fragments: list[PolicyFragment]

    @property
    def chain_name(self) -> str:
        return middleware_name(self.client, self.environment, CHAIN_SUFFIX)

    @property
    def order(self) -> list[str]:
        return [fragment.kind.value for fragment in self.fragments]

    def chain_document(self) -> dict[str, Any]:
        return {
            "http": {
                "middlewares": {
                    self.chain_name: {"chain": {"middlewares": [fragment.name for fragment in self.fragments]}}
                }
            }
        }


@dataclass(slots=True)
class PolicyChange:
    client: str
    environment: str
    files: list[str] = field(default_factory=list)
    reload_error: str | None = None

    @property
    def reloaded(self) -> bool:
        return self.reload_error is None


def _basic_auth_spec(client: str, environment: str, username: str, password: str) -> dict[str, Any]:
    return {
        "basicAuth": {
            "users": [f"{username}:{apr_md5_crypt.hash(password)}"],
            "realm": f"Staging Environment - {client.capitalize()} {environment.capitalize()}",
            "removeHeader": True,
        }
    }


def _seo_block_spec(environment: str) -> dict[str, Any]:
    return {
        "headers": {
            "customRequestHeaders": {"X-Robots-Tag": NOINDEX_DIRECTIVES},
            "customResponseHeaders": {"X-Robots-Tag": NOINDEX_DIRECTIVES, "X-Environment": environment},
        }
    }


def _security_headers_spec() -> dict[str, Any]:
    return {
        "headers": {
            "customResponseHeaders": dict(SECURITY_RESPONSE_HEADERS),
            "contentTypeNosniff": True,
            "frameDeny": False,
            "customFrameOptionsValue": "SAMEORIGIN",
        }
    }


def _rate_limit_spec(average: int, burst: int) -> dict[str, Any]:
    return {"rateLimit": {"average": average, "burst": burst}}


def _dump(document: dict[str, Any]) -> str:
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False)


class ProxyPolicySynthesizer:
    def __init__(
        self,
        config: ProxyConfig,
        runtime: RuntimeConfig,
        dynamic_path: Path,
        runner: CommandRunner,
        *,
        logger: logging.Logger | None = None,
        event_logger: EventLogger | None = None,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.dynamic_path = Path(dynamic_path)
        self.runner = runner
        self.logger = logger or get_logger("clientstack.proxy")
        self.event_logger = event_logger
        self._write_lock = threading.Lock()

    def derive(self, environment: Environment) -> MiddlewarePolicy:
        client, name = environment.client, environment.name
        rate_limit = _rate_limit_spec(self.config.rate_limit_average, self.config.rate_limit_burst)
        if environment.production:
            specs = {FragmentKind.SECURITY_HEADERS: _security_headers_spec(), FragmentKind.RATE_LIMIT: rate_limit}
            order = PRODUCTION_ORDER
        else:
            password = environment.staging_password
            if not password:
                raise NoPasswordError(f"password required for non-production environment {client}/{name}", step="policy")
            specs = {
                FragmentKind.AUTH: _basic_auth_spec(client, name, self.config.staging_username, password),
                FragmentKind.SEO: _seo_block_spec(name),
                FragmentKind.SECURITY_HEADERS: _security_headers_spec(),
                FragmentKind.RATE_LIMIT: rate_limit,
            }
            order = NON_PRODUCTION_ORDER
        fragments = [
            PolicyFragment(kind=kind, name=middleware_name(client, name, kind.value), spec=specs[kind]) for kind in order
        ]
        return MiddlewarePolicy(client=client, environment=name, fragments=fragments)

    def policy_files(self, client: str, environment: str) -> list[Path]:
        suffixes = [kind.value for kind in FragmentKind] + [CHAIN_SUFFIX]
        return [self.dynamic_path / f"{middleware_name(client, environment, suffix)}.yml" for suffix in suffixes]

    def apply(self, policy: MiddlewarePolicy, *, reload: bool = True) -> PolicyChange:
        change = PolicyChange(client=policy.client, environment=policy.environment)
        wanted = {fragment.filename for fragment in policy.fragments}
        with self._write_lock:
            self.dynamic_path.mkdir(parents=True, exist_ok=True)
            for fragment in policy.fragments:
                path = self.dynamic_path / fragment.filename
                mode = 0o600 if fragment.kind is FragmentKind.AUTH else 0o644
                atomic_write_text(path, _dump(fragment.document()), mode=mode)
                change.files.append(path.name)
            # The chain goes last so the proxy never sees it referencing a missing fragment.
            chain_path = self.dynamic_path / f"{policy.chain_name}.yml"
            atomic_write_text(chain_path, _dump(policy.chain_document()), mode=0o644)
            change.files.append(chain_path.name)
            for stale in self.policy_files(policy.client, policy.environment):
                if stale.name not in wanted and stale != chain_path:
                    stale.unlink(missing_ok=True)
        if reload:
            change.reload_error = self._reload_quietly(policy.client, policy.environment)
        self._emit(
            "middleware chain applied",
            action="policy_apply",
            topic=POLICY_APPLIED,
            change=change,
            payload={"order": policy.order, "files": change.files},
        )
        return change

    def remove(self, client: str, environment: str) -> PolicyChange:
        change = PolicyChange(client=client, environment=environment)
        with self._write_lock:
            for path in self.policy_files(client, environment):
                if path.exists():
                    path.unlink(missing_ok=True)
                    change.files.append(path.name)
        if change.files:
            change.reload_error = self._reload_quietly(client, environment)
            self._emit(
                "middleware chain removed",
                action="policy_remove",
                topic=POLICY_REMOVED,
                change=change,
                payload={"files": change.files},
            )
        return change

    def _emit(self, message: str, *, action: str, topic: str, change: PolicyChange, payload: dict[str, Any]) -> None:
        if self.event_logger is None:
            self.logger.info(
                message,
                extra={
                    "event_action": action,
                    "event_outcome": "success",
                    "client": change.client,
                    "environment": change.environment,
                    "payload": payload,
                },
            )
            return
        self.event_logger.emit(
            message=message,
            action=action,
            client=change.client,
            environment=change.environment,
            outcome="success",
            topic=topic,
            payload={**payload, "reloaded": change.reloaded},
        )

    def list_files(self) -> list[dict[str, object]]:
        if not self.dynamic_path.is_dir():
            return []
        return [
            {"name": path.name, "size": path.stat().st_size}
            for path in sorted(self.dynamic_path.glob("*.yml"))
            if path.is_file()
        ]

    def reload(self) -> None:
        """Signal the proxy; ``watch`` mode relies on the file provider picking up changes itself."""
        if self.config.reload_mode == "watch":
            return
        name = self.config.container_name
        if not self._proxy_running():
            raise ProxyReloadError(f"proxy container '{name}' is not running", step="reload")
        result = self._docker(["restart", name])
        if not result.ok:
            raise ProxyReloadError(f"proxy restart failed: {result.details()}", step="reload")
        if self.config.reload_settle_seconds:
            time.sleep(self.config.reload_settle_seconds)
        if not self._proxy_running():
            raise ProxyReloadError(f"proxy container '{name}' did not come back after restart", step="reload")

    def _reload_quietly(self, client: str, environment: str) -> str | None:
        try:
            self.reload()
        except ProxyReloadError as exc:
            # Written policy stays in place; the proxy catches up on its next successful reload.
            self.logger.warning(
                "proxy reload failed",
                extra={
                    "event_action": "proxy_reload",
                    "event_outcome": "failure",
                    "error_kind": exc.kind,
                    "client": client,
                    "environment": environment,
                    "payload": {"error": exc.message},
                },
            )
            return exc.message
        return None

    def _proxy_running(self) -> bool:
        name = self.config.container_name
        result = self._docker(["ps", "--filter", f"name=^{name}$", "--format", "{{.Names}}"])
        return result.ok and name in {line.strip() for line in result.stdout.splitlines()}

    def _docker(self, args: list[str]):
        command = [*self.runtime.docker_command, *args]
        try:
            return self.runner.run(command, timeout_seconds=self.runtime.command_timeout_seconds)
        except CommandTimeout as exc:
            raise ProxyReloadError(str(exc), step="reload") from exc
