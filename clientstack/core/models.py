"""Environment records exchanged between the registry, proxy policy, and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Union

from clientstack.core.naming import is_production


class EnvironmentStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"


@dataclass(slots=True)
class Client:
    name: str
    created_at: str
    path: Path


@dataclass(slots=True)
class Environment:
    client: str
    name: str
    domain: str
    status: EnvironmentStatus
    path: Path
    created_at: str = ""
    config: dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.client, self.name)

    @property
    def production(self) -> bool:
        return is_production(self.name)

    @property
    def staging_password(self) -> str:
        return self.config.get("STAGING_PASSWORD", "")

    def to_dict(self, *, include_secrets: bool = False) -> dict[str, object]:
        payload: dict[str, object] = {
            "client": self.client,
            "environment": self.name,
            "domain": self.domain,
            "status": self.status.value,
            "path": str(self.path),
            "created_at": self.created_at,
        }
        if include_secrets:
            payload["config"] = dict(self.config)
        return payload


@dataclass(slots=True)
class EnvironmentSummary:
    client: str
    environment: str
    domain: str
    status: EnvironmentStatus
    running_instances: int | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "client": self.client,
            "environment": self.environment,
            "domain": self.domain,
            "status": self.status.value,
            "running_instances": self.running_instances,
        }


@dataclass(frozen=True, slots=True)
class Found:
    environment: Environment


@dataclass(frozen=True, slots=True)
class NotFound:
    client: str
    environment: str
    reason: str = "environment not found"


Lookup = Union[Found, NotFound]
