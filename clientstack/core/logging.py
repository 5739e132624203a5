"""Structured ECS logging for lifecycle and deployment events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import json
import logging
from pathlib import Path
from typing import Callable

from clientstack.config.schema import LoggingConfig


def _strip_empty(value: object) -> object | None:
    if isinstance(value, dict):
        cleaned = {key: _strip_empty(item) for key, item in value.items()}
        return {key: item for key, item in cleaned.items() if item is not None} or None
    if isinstance(value, list):
        cleaned_list = [_strip_empty(item) for item in value]
        return [item for item in cleaned_list if item is not None] or None
    if value in ("", None):
        return None
    return value


class ECSJsonFormatter(logging.Formatter):
    def __init__(self, service_name: str = "clientstack") -> None:
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created, UTC).isoformat(timespec="microseconds")
        payload: dict[str, object] = {
            "@timestamp": timestamp,
            "message": record.getMessage(),
            "log": {
                "level": record.levelname.lower(),
                "logger": record.name,
            },
            "service": {
                "name": getattr(record, "service_name", self.service_name),
            },
            "event": {
                "kind": "event",
                "category": getattr(record, "event_category", "configuration"),
                "action": getattr(record, "event_action", None),
                "type": getattr(record, "event_type", None),
                "outcome": getattr(record, "event_outcome", None),
            },
            "error": {
                "type": getattr(record, "error_kind", None),
            },
            "clientstack": {
                "client": getattr(record, "client", None),
                "environment": getattr(record, "environment", None),
                "deployment_id": getattr(record, "deployment_id", None),
                "stage": getattr(record, "stage", None),
                "payload": getattr(record, "payload", None),
            },
        }
        cleaned = _strip_empty(payload) or {}
        return json.dumps(cleaned, separators=(",", ":"))


def _sink_handler(config: LoggingConfig, formatter: logging.Formatter) -> logging.Handler:
    if config.sink == "file":
        file_path = config.file_path or "logs/clientstack.log"
        log_file = Path(file_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    return handler


def configure_logging(config: LoggingConfig, force: bool = False) -> None:
    root = logging.getLogger("clientstack")
    if getattr(root, "_clientstack_configured", False) and not force:
        return

    formatter = ECSJsonFormatter(service_name=config.service_name)
    root.setLevel(config.level)
    for existing in list(root.handlers):
        existing.close()
    root.handlers.clear()
    root.addHandler(_sink_handler(config, formatter))
    root.propagate = False
    setattr(root, "_clientstack_configured", True)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    if name.startswith("clientstack"):
        parent = logging.getLogger("clientstack")
        if parent.handlers:
            logger.setLevel(level)
            logger.propagate = True
            return logger

    handler = logging.StreamHandler()
    handler.setFormatter(ECSJsonFormatter())
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger


@dataclass(slots=True)
class EventLogger:
    """Emits one structured record per lifecycle event and mirrors it to a publish hook."""

    logger: logging.Logger
    service_name: str
    publish_hook: Callable[[str, dict[str, object]], None] | None = None

    def emit(
        self,
        *,
        message: str,
        action: str,
        client: str | None = None,
        environment: str | None = None,
        deployment_id: str | None = None,
        stage: str | None = None,
        outcome: str | None = None,
        error_kind: str | None = None,
        topic: str | None = None,
        payload: dict[str, object] | None = None,
        level: str = "INFO",
    ) -> None:
        event_payload: dict[str, object] = {
            "service_name": self.service_name,
            "action": action,
            "client": client or "",
            "environment": environment or "",
            "deployment_id": deployment_id or "",
            "stage": stage or "",
            "outcome": outcome or "",
            "error_kind": error_kind or "",
            "message": message,
            "payload": payload or {},
            "timestamp": datetime.now(UTC).isoformat(timespec="microseconds"),
            "level": level.upper(),
        }
        self.logger.log(
            getattr(logging, level.upper(), logging.INFO),
            message,
            extra={
                "service_name": self.service_name,
                "event_action": action,
                "event_category": "process" if deployment_id else "configuration",
                "event_outcome": outcome,
                "error_kind": error_kind,
                "client": client,
                "environment": environment,
                "deployment_id": deployment_id,
                "stage": stage,
                "payload": payload or None,
            },
        )
        if self.publish_hook and topic:
            try:
                self.publish_hook(topic, event_payload)
            except Exception:
                self.logger.warning(
                    "event publish failed",
                    extra={"event_action": "event_publish", "event_outcome": "failure"},
                )
