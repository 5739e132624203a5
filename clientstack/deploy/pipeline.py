"""Deployment pipeline executed once per inbound trigger."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable, Sequence
import uuid

from clientstack.config.schema import DeploymentConfig, RuntimeConfig
from clientstack.core.commands import CommandRunner, CommandTimeout
from clientstack.core.errors import (
    BuildError,
    BusyError,
    FetchError,
    HostingError,
    InvalidNameError,
    NotAPipelineError,
    NotFoundError,
    PermissionFixWarning,
    PipelineTimeoutError,
    ResultCode,
    UnauthorizedError,
)
from clientstack.core.event_bus import DEPLOYMENT_FINISHED
from clientstack.core.locks import EnvironmentLockTable
from clientstack.core.logging import EventLogger, get_logger
from clientstack.core.models import Environment
from clientstack.core.naming import validate_name
from clientstack.core.registry import EnvironmentRegistry
from clientstack.core.vault import SecretScope, SecretVault
from clientstack.deploy.log import DeploymentLog, latest_log, log_filename, tail


class Stage(str, Enum):
    RECEIVED = "received"
    VALIDATING = "validating"
    PULLING = "pulling"
    BUILDING = "building"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


SUCCESS_MESSAGE = "Deployment successful"

_PUBLIC_MESSAGES: dict[type[HostingError], str] = {
    InvalidNameError: "Invalid client or environment name",
    NotFoundError: "Environment not found",
    UnauthorizedError: "Invalid deployment token",
    NotAPipelineError: "Not a git repository",
    BusyError: "Deployment already in progress",
    FetchError: "Git pull failed",
    BuildError: "Build failed",
    PipelineTimeoutError: "Deployment timed out",
}


def public_message(exc: HostingError) -> str:
    for error_type in type(exc).__mro__:
        message = _PUBLIC_MESSAGES.get(error_type)  # type: ignore[arg-type]
        if message:
            return message
    return "Deployment failed"


def _utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass(slots=True)
class DeploymentRecord:
    deployment_id: str
    client: str
    environment: str
    triggered_at: str
    stage: Stage = Stage.RECEIVED
    outcome: str = "pending"
    error_kind: str | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    log_path: str | None = None
    finished_at: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    stages: list[str] = field(default_factory=lambda: [Stage.RECEIVED.value])
    failed_stage: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "client": self.client,
            "environment": self.environment,
            "triggered_at": self.triggered_at,
            "stage": self.stage.value,
            "stages": list(self.stages),
            "failed_stage": self.failed_stage,
            "outcome": self.outcome,
            "error_kind": self.error_kind,
            "message": self.message,
            "warnings": list(self.warnings),
            "log_path": self.log_path,
            "finished_at": self.finished_at,
            "payload": dict(self.payload),
        }


@dataclass(slots=True)
class DeploymentResult:
    code: ResultCode
    message: str
    record: DeploymentRecord

    @property
    def ok(self) -> bool:
        return self.code is ResultCode.SUCCESS

    @property
    def http_status(self) -> int:
        return self.code.http_status

    def to_response(self) -> dict[str, object]:
        return {"status": self.http_status, "message": self.message}


class DeploymentOrchestrator:
    """Runs ``received -> validating -> pulling -> building -> finalizing`` for one trigger.

    At most one pipeline runs per environment; a concurrent trigger for the same
    environment is rejected with ``BusyError`` rather than queued. Each external
    command is given whatever is left of ``max_duration_seconds`` as its timeout.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        runtime: RuntimeConfig,
        *,
        registry: EnvironmentRegistry,
        vault: SecretVault,
        locks: EnvironmentLockTable,
        runner: CommandRunner,
        log_dir: Path,
        event_logger: EventLogger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.runtime = runtime
        self.registry = registry
        self.vault = vault
        self.locks = locks
        self.runner = runner
        self.log_dir = Path(log_dir)
        self.event_logger = event_logger
        self.clock = clock
        self.logger = get_logger("clientstack.deploy")
        self._history: deque[DeploymentRecord] = deque(maxlen=config.history_size)
        self._history_lock = threading.Lock()

    def trigger(
        self,
        client: str,
        environment: str,
        token: str | None,
        payload: dict[str, Any] | None = None,
    ) -> DeploymentResult:
        record = DeploymentRecord(
            deployment_id=uuid.uuid4().hex[:12],
            client=client,
            environment=environment,
            triggered_at=_utc_now(),
            payload=_summarize_payload(payload),
        )
        deadline = self.clock() + self.config.max_duration_seconds
        log: DeploymentLog | None = None
        try:
            self._advance(record, log, Stage.VALIDATING)
            validate_name(client, kind="client")
            validate_name(environment, kind="environment")
            target = self.registry.get(client, environment)
            log = self._open_log(record)
            log.write(f"Deployment {record.deployment_id} triggered for {client}/{environment}")
            if record.payload:
                log.write(f"Trigger payload: {record.payload}")
            if not self.vault.validate(SecretScope(client, environment), token):
                raise UnauthorizedError(f"invalid deployment token for {client}/{environment}")
            with self.locks.hold(client, environment, operation=f"deployment {record.deployment_id}"):
                # Removal or re-creation may have finished between the checks above and
                # the hold, so both are repeated while the environment is held.
                target = self.registry.get(client, environment)
                if not self.vault.validate(SecretScope(client, environment), token):
                    raise UnauthorizedError(f"deployment token for {client}/{environment} is no longer valid")
                self._run_pipeline(record, target, log, deadline)
                self.registry.mark_complete(client, environment)
                return self._succeed(record, log)
        except HostingError as exc:
            return self._fail(record, log, exc)
        except Exception as exc:
            self.logger.exception(
                "deployment crashed",
                extra={
                    "event_action": "deployment",
                    "event_outcome": "failure",
                    "client": client,
                    "environment": environment,
                    "deployment_id": record.deployment_id,
                },
            )
            return self._fail(record, log, HostingError(f"unexpected error: {exc}", step=record.stage.value))
        finally:
            if log is not None:
                log.close()

    def _run_pipeline(self, record: DeploymentRecord, target: Environment, log: DeploymentLog, deadline: float) -> None:
        workdir = target.path
        if not (workdir / ".git").exists():
            raise NotAPipelineError(f"{workdir} is not a git checkout", step=Stage.VALIDATING.value)

        self._advance(record, log, Stage.PULLING)
        self._execute(
            ["git", "pull", self.config.remote, self.config.ref],
            cwd=workdir,
            deadline=deadline,
            log=log,
            error_type=FetchError,
            label="git pull",
        )

        self._advance(record, log, Stage.BUILDING)
        if (workdir / self.config.build_descriptor).exists():
            if not (workdir / self.config.dependency_dir).is_dir():
                self._execute(
                    self.config.install_command,
                    cwd=workdir,
                    deadline=deadline,
                    log=log,
                    error_type=BuildError,
                    label="dependency install",
                )
            self._execute(
                self.config.build_command,
                cwd=workdir,
                deadline=deadline,
                log=log,
                error_type=BuildError,
                label="build",
            )
        else:
            log.write(f"No {self.config.build_descriptor} found, skipping build")

        self._advance(record, log, Stage.FINALIZING)
        warning = self._fix_permissions(target, deadline, log)
        if warning is not None:
            record.warnings.append(warning.message)
            log.write(f"WARNING: {warning.message}")

    def _fix_permissions(self, target: Environment, deadline: float, log: DeploymentLog) -> PermissionFixWarning | None:
        container = self.config.webserver_container.format(client=target.client, environment=target.name)
        command = [
            *self.runtime.docker_command,
            "exec",
            container,
            "chown",
            "-R",
            self.config.web_owner,
            self.config.web_root,
        ]
        try:
            self._execute(command, cwd=None, deadline=deadline, log=log, error_type=PermissionFixWarning, label="chown")
        except PermissionFixWarning as exc:
            return exc
        return None

    def _execute(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None,
        deadline: float,
        log: DeploymentLog,
        error_type: type[HostingError],
        label: str,
    ) -> None:
        remaining = deadline - self.clock()
        if remaining <= 0:
            raise PipelineTimeoutError(
                f"deployment exceeded {self.config.max_duration_seconds:.0f}s before {label}",
                step=label,
            )
        log.write(f"$ {' '.join(command)}")
        try:
            result = self.runner.run(command, cwd=cwd, timeout_seconds=remaining)
        except CommandTimeout as exc:
            log.write(str(exc))
            raise PipelineTimeoutError(
                f"deployment exceeded {self.config.max_duration_seconds:.0f}s during {label}",
                step=label,
            ) from exc
        output = "\n".join(part for part in (result.stdout.strip(), result.stderr.strip()) if part)
        if output:
            log.write(output)
        if not result.ok:
            raise error_type(f"{label} failed: {result.details()}", step=label)

    def _advance(self, record: DeploymentRecord, log: DeploymentLog | None, stage: Stage) -> None:
        record.stage = stage
        record.stages.append(stage.value)
        if log is not None:
            log.write(f"Stage: {stage.value}")

    def _open_log(self, record: DeploymentRecord) -> DeploymentLog:
        started = datetime.now(UTC)
        path = self.log_dir / log_filename(record.client, record.environment, started, record.deployment_id)
        record.log_path = str(path)
        log = DeploymentLog(path)
        for stage in record.stages:
            log.write(f"Stage: {stage}")
        return log

    def _succeed(self, record: DeploymentRecord, log: DeploymentLog) -> DeploymentResult:
        record.stage = Stage.SUCCEEDED
        record.stages.append(Stage.SUCCEEDED.value)
        record.outcome = "success"
        record.message = SUCCESS_MESSAGE
        record.finished_at = _utc_now()
        log.write(f"Stage: {Stage.SUCCEEDED.value}")
        log.write("Deployment completed successfully")
        self._finish(record)
        return DeploymentResult(code=ResultCode.SUCCESS, message=SUCCESS_MESSAGE, record=record)

    def _fail(self, record: DeploymentRecord, log: DeploymentLog | None, exc: HostingError) -> DeploymentResult:
        record.failed_stage = record.stage.value
        record.stage = Stage.FAILED
        record.stages.append(Stage.FAILED.value)
        record.outcome = "failure"
        record.error_kind = exc.kind
        record.message = exc.message
        record.finished_at = _utc_now()
        if log is not None:
            log.write(f"ERROR: {exc.message}")
            log.write(f"Stage: {Stage.FAILED.value}")
        self._finish(record)
        return DeploymentResult(code=exc.code, message=public_message(exc), record=record)

    def _finish(self, record: DeploymentRecord) -> None:
        with self._history_lock:
            self._history.append(record)
        level = "INFO" if record.outcome == "success" else "WARNING"
        payload = {
            "stages": list(record.stages),
            "failed_stage": record.failed_stage,
            "warnings": list(record.warnings),
            "log_path": record.log_path,
        }
        if self.event_logger is not None:
            self.event_logger.emit(
                message=f"deployment {record.outcome}",
                action="deployment",
                client=record.client,
                environment=record.environment,
                deployment_id=record.deployment_id,
                stage=record.failed_stage or record.stage.value,
                outcome=record.outcome,
                error_kind=record.error_kind,
                topic=DEPLOYMENT_FINISHED,
                payload=payload,
                level=level,
            )
        else:
            self.logger.log(
                logging.INFO if level == "INFO" else logging.WARNING,
                f"deployment {record.outcome}",
                extra={
                    "event_action": "deployment",
                    "event_outcome": record.outcome,
                    "error_kind": record.error_kind,
                    "client": record.client,
                    "environment": record.environment,
                    "deployment_id": record.deployment_id,
                    "payload": payload,
                },
            )

    def recent(self, limit: int = 20) -> list[DeploymentRecord]:
        safe_limit = max(1, int(limit))
        with self._history_lock:
            records = list(self._history)
        return list(reversed(records))[:safe_limit]

    def read_log(self, client: str, environment: str, lines: int = 50) -> tuple[Path, list[str]]:
        validate_name(client, kind="client")
        validate_name(environment, kind="environment")
        path = latest_log(self.log_dir, client, environment)
        if path is None:
            raise NotFoundError(f"no deployment logs for {client}/{environment}")
        return path, tail(path, lines)


def _summarize_payload(payload: dict[str, Any] | None) -> dict[str, Any]:
    if not isinstance(payload, dict):
        return {}
    summary: dict[str, Any] = {}
    for key in ("ref", "repository", "sha", "actor"):
        value = payload.get(key)
        if isinstance(value, (str, int)) and str(value).strip():
            summary[key] = str(value)[:200]
    return summary
