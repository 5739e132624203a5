"""Dataclasses for top-level application config."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


DEFAULT_INSTALL_COMMAND = ["npm", "install"]
DEFAULT_BUILD_COMMAND = ["npm", "run", "production"]


@dataclass(slots=True)
class PathsConfig:
    clients_path: str = "/opt/clients"
    deployment_log_path: str = "/var/log/deployments"
    proxy_dynamic_path: str = "./traefik/dynamic"


@dataclass(slots=True)
class DomainConfig:
    base_domain: str = "example.com"
    timezone: str = "America/New_York"


@dataclass(slots=True)
class StarterConfig:
    enabled: bool = False
    repo_url: str = ""
    keep_history: bool = False
    network_placeholder: str = "client-network"
    clone_timeout_seconds: float = 120.0


@dataclass(slots=True)
class NetworkConfig:
    manage_client_networks: bool = True
    network_suffix: str = "-network"


@dataclass(slots=True)
class ProxyConfig:
    reload_mode: str = "restart"
    container_name: str = "traefik"
    reload_settle_seconds: float = 3.0
    staging_username: str = "staging"
    rate_limit_average: int = 50
    rate_limit_burst: int = 100


@dataclass(slots=True)
class DeploymentConfig:
    max_duration_seconds: float = 900.0
    remote: str = "origin"
    ref: str = "HEAD"
    build_descriptor: str = "package.json"
    dependency_dir: str = "node_modules"
    install_command: list[str] = field(default_factory=lambda: list(DEFAULT_INSTALL_COMMAND))
    build_command: list[str] = field(default_factory=lambda: list(DEFAULT_BUILD_COMMAND))
    webserver_container: str = "{client}-webserver-{environment}"
    web_root: str = "/var/www/html"
    web_owner: str = "www-data:www-data"
    history_size: int = 100


@dataclass(slots=True)
class RuntimeConfig:
    docker_command: list[str] = field(default_factory=lambda: ["docker"])
    compose_command: list[str] = field(default_factory=lambda: ["docker", "compose"])
    command_timeout_seconds: float = 30.0


@dataclass(slots=True)
class EventBusConfig:
    backend: str = "memory"
    redis_url: str = "redis://redis:6379/0"
    channel_prefix: str = "clientstack"
    connect_timeout_seconds: float = 1.0
    required: bool = False


@dataclass(slots=True)
class APIConfig:
    host: str = "127.0.0.1"
    port: int = 9000
    docs_enabled: bool = False
    trusted_hosts: list[str] = field(default_factory=lambda: ["*"])
    max_request_body_bytes: int = 262144


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    fmt: str = "ecs_json"
    sink: str = "stdout"
    file_path: str | None = None
    service_name: str = "clientstack"


@dataclass(slots=True)
class AppConfig:
    environment: str = "development"
    paths: PathsConfig = field(default_factory=PathsConfig)
    domains: DomainConfig = field(default_factory=DomainConfig)
    starter: StarterConfig = field(default_factory=StarterConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    event_bus: EventBusConfig = field(default_factory=EventBusConfig)
    api: APIConfig = field(default_factory=APIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


VALID_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
VALID_LOG_FORMATS = {"json", "ecs_json"}
VALID_LOG_SINKS = {"stdout", "file"}
VALID_EVENT_BUS_BACKENDS = {"memory", "redis"}
VALID_PROXY_RELOAD_MODES = {"watch", "restart"}


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name, {})
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' must be an object")
    return raw


def _parse_bool_value(raw: Any, *, field_name: str, default: bool) -> bool:
    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        normalized = raw.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"'{field_name}' must be a boolean")


def _parse_positive_float(raw: Any, *, field_name: str, default: float) -> float:
    value = float(default if raw is None else raw)
    if value <= 0:
        raise ValueError(f"{field_name} must be greater than zero")
    return value


def _parse_command(raw: Any, *, field_name: str, default: list[str]) -> list[str]:
    if raw is None:
        return list(default)
    if isinstance(raw, str):
        raw = raw.split()
    if not isinstance(raw, list):
        raise ValueError(f"'{field_name}' must be a list of arguments")
    command = [str(item).strip() for item in raw if str(item).strip()]
    if not command:
        raise ValueError(f"'{field_name}' must contain at least one argument")
    return command


def _parse_non_empty_string_list(raw: Any, *, field_name: str, default: list[str]) -> list[str]:
    source = default if raw is None else raw
    if not isinstance(source, list):
        raise ValueError(f"'{field_name}' must be a list")
    values: list[str] = []
    seen: set[str] = set()
    for item in source:
        normalized = str(item).strip()
        if not normalized:
            continue
        if " " in normalized:
            raise ValueError(f"'{field_name}' entries must not include spaces")
        if normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    if not values:
        raise ValueError(f"'{field_name}' must contain at least one non-empty value")
    return values


def _parse_container_template(raw: Any) -> str:
    template = str(raw if raw is not None else "{client}-webserver-{environment}").strip()
    try:
        template.format(client="client", environment="environment")
    except (KeyError, IndexError, ValueError) as exc:
        raise ValueError(
            "deployment.webserver_container may only reference {client} and {environment}"
        ) from exc
    return template


def parse_config(data: dict[str, Any]) -> AppConfig:
    environment = str(data.get("environment", "development"))

    paths_raw = _section(data, "paths")
    paths = PathsConfig(
        clients_path=str(paths_raw.get("clients_path", "/opt/clients")).strip() or "/opt/clients",
        deployment_log_path=str(paths_raw.get("deployment_log_path", "/var/log/deployments")).strip()
        or "/var/log/deployments",
        proxy_dynamic_path=str(paths_raw.get("proxy_dynamic_path", "./traefik/dynamic")).strip()
        or "./traefik/dynamic",
    )

    domains_raw = _section(data, "domains")
    base_domain = str(domains_raw.get("base_domain", "example.com")).strip().lower().strip(".")
    if not base_domain or " " in base_domain or "." not in base_domain:
        raise ValueError(f"invalid domains.base_domain '{base_domain}'")
    domains = DomainConfig(
        base_domain=base_domain,
        timezone=str(domains_raw.get("timezone", "America/New_York")).strip() or "America/New_York",
    )

    starter_raw = _section(data, "starter")
    starter_enabled = _parse_bool_value(starter_raw.get("enabled"), field_name="starter.enabled", default=False)
    repo_url = str(starter_raw.get("repo_url", "")).strip()
    if starter_enabled and not repo_url:
        raise ValueError("starter.enabled requires starter.repo_url")
    starter = StarterConfig(
        enabled=starter_enabled,
        repo_url=repo_url,
        keep_history=_parse_bool_value(
            starter_raw.get("keep_history"),
            field_name="starter.keep_history",
            default=False,
        ),
        network_placeholder=str(starter_raw.get("network_placeholder", "client-network")).strip()
        or "client-network",
        clone_timeout_seconds=_parse_positive_float(
            starter_raw.get("clone_timeout_seconds"),
            field_name="starter clone_timeout_seconds",
            default=120.0,
        ),
    )

    network_raw = _section(data, "network")
    network_suffix = str(network_raw.get("network_suffix", "-network")).strip()
    if not network_suffix or " " in network_suffix:
        raise ValueError("network.network_suffix must be a non-empty token")
    network = NetworkConfig(
        manage_client_networks=_parse_bool_value(
            network_raw.get("manage_client_networks"),
            field_name="network.manage_client_networks",
            default=True,
        ),
        network_suffix=network_suffix,
    )

    proxy_raw = _section(data, "proxy")
    reload_mode = str(proxy_raw.get("reload_mode", "restart")).strip().lower()
    if reload_mode not in VALID_PROXY_RELOAD_MODES:
        raise ValueError(f"invalid proxy reload_mode '{reload_mode}'")
    rate_limit_average = int(proxy_raw.get("rate_limit_average", 50))
    rate_limit_burst = int(proxy_raw.get("rate_limit_burst", 100))
    if rate_limit_average < 1 or rate_limit_burst < 1:
        raise ValueError("proxy rate limits must be at least 1")
    reload_settle_seconds = float(proxy_raw.get("reload_settle_seconds", 3.0))
    if reload_settle_seconds < 0:
        raise ValueError("proxy reload_settle_seconds must not be negative")
    staging_username = str(proxy_raw.get("staging_username", "staging")).strip()
    if not staging_username or ":" in staging_username:
        raise ValueError("proxy.staging_username must be non-empty and must not contain ':'")
    proxy = ProxyConfig(
        reload_mode=reload_mode,
        container_name=str(proxy_raw.get("container_name", "traefik")).strip() or "traefik",
        reload_settle_seconds=reload_settle_seconds,
        staging_username=staging_username,
        rate_limit_average=rate_limit_average,
        rate_limit_burst=rate_limit_burst,
    )

    deployment_raw = _section(data, "deployment")
    history_size = int(deployment_raw.get("history_size", 100))
    if history_size < 1 or history_size > 10_000:
        raise ValueError("deployment history_size must be between 1 and 10000")
    deployment = DeploymentConfig(
        max_duration_seconds=_parse_positive_float(
            deployment_raw.get("max_duration_seconds"),
            field_name="deployment max_duration_seconds",
            default=900.0,
        ),
        remote=str(deployment_raw.get("remote", "origin")).strip() or "origin",
        ref=str(deployment_raw.get("ref", "HEAD")).strip() or "HEAD",
        build_descriptor=str(deployment_raw.get("build_descriptor", "package.json")).strip() or "package.json",
        dependency_dir=str(deployment_raw.get("dependency_dir", "node_modules")).strip() or "node_modules",
        install_command=_parse_command(
            deployment_raw.get("install_command"),
            field_name="deployment.install_command",
            default=DEFAULT_INSTALL_COMMAND,
        ),
        build_command=_parse_command(
            deployment_raw.get("build_command"),
            field_name="deployment.build_command",
            default=DEFAULT_BUILD_COMMAND,
        ),
        webserver_container=_parse_container_template(deployment_raw.get("webserver_container")),
        web_root=str(deployment_raw.get("web_root", "/var/www/html")).strip() or "/var/www/html",
        web_owner=str(deployment_raw.get("web_owner", "www-data:www-data")).strip() or "www-data:www-data",
        history_size=history_size,
    )

    runtime_raw = _section(data, "runtime")
    runtime = RuntimeConfig(
        docker_command=_parse_command(
            runtime_raw.get("docker_command"),
            field_name="runtime.docker_command",
            default=["docker"],
        ),
        compose_command=_parse_command(
            runtime_raw.get("compose_command"),
            field_name="runtime.compose_command",
            default=["docker", "compose"],
        ),
        command_timeout_seconds=_parse_positive_float(
            runtime_raw.get("command_timeout_seconds"),
            field_name="runtime command_timeout_seconds",
            default=30.0,
        ),
    )

    event_bus_raw = _section(data, "event_bus")
    event_bus_backend = str(event_bus_raw.get("backend", "memory")).lower()
    if event_bus_backend not in VALID_EVENT_BUS_BACKENDS:
        raise ValueError(f"invalid event_bus backend '{event_bus_backend}'")
    event_bus_config = EventBusConfig(
        backend=event_bus_backend,
        redis_url=str(event_bus_raw.get("redis_url", "redis://redis:6379/0")),
        channel_prefix=str(event_bus_raw.get("channel_prefix", "clientstack")),
        connect_timeout_seconds=_parse_positive_float(
            event_bus_raw.get("connect_timeout_seconds"),
            field_name="event_bus connect_timeout_seconds",
            default=1.0,
        ),
        required=_parse_bool_value(event_bus_raw.get("required"), field_name="event_bus.required", default=False),
    )

    api_raw = _section(data, "api")
    api_port = int(api_raw.get("port", 9000))
    if api_port < 1 or api_port > 65535:
        raise ValueError("api port must be between 1 and 65535")
    max_request_body_bytes = int(api_raw.get("max_request_body_bytes", 262144))
    if max_request_body_bytes < 1024 or max_request_body_bytes > 50_000_000:
        raise ValueError("api max_request_body_bytes must be between 1024 and 50000000")
    api_config = APIConfig(
        host=str(api_raw.get("host", "127.0.0.1")).strip() or "127.0.0.1",
        port=api_port,
        docs_enabled=_parse_bool_value(api_raw.get("docs_enabled"), field_name="api.docs_enabled", default=False),
        trusted_hosts=_parse_non_empty_string_list(
            api_raw.get("trusted_hosts"),
            field_name="api.trusted_hosts",
            default=["*"],
        ),
        max_request_body_bytes=max_request_body_bytes,
    )

    logging_raw = _section(data, "logging")
    level = str(logging_raw.get("level", "INFO")).upper()
    if level not in VALID_LOG_LEVELS:
        raise ValueError(f"invalid log level '{level}'")
    fmt = str(logging_raw.get("format", "ecs_json"))
    if fmt not in VALID_LOG_FORMATS:
        raise ValueError(f"invalid logging format '{fmt}'")
    sink = str(logging_raw.get("sink", "stdout"))
    if sink not in VALID_LOG_SINKS:
        raise ValueError(f"invalid logging sink '{sink}'")
    file_path = logging_raw.get("file_path")
    logging_config = LoggingConfig(
        level=level,
        fmt=fmt,
        sink=sink,
        file_path=str(file_path) if file_path else None,
        service_name=str(logging_raw.get("service_name", "clientstack")),
    )

    return AppConfig(
        environment=environment,
        paths=paths,
        domains=domains,
        starter=starter,
        network=network,
        proxy=proxy,
        deployment=deployment,
        runtime=runtime,
        event_bus=event_bus_config,
        api=api_config,
        logging=logging_config,
    )
