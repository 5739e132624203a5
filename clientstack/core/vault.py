"""Per-environment credentials and deployment tokens."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
import hmac
import logging
from pathlib import Path
import secrets
import string
import threading

from clientstack.core.envfile import atomic_write_text
from clientstack.core.errors import SecretRevokedError
from clientstack.core.logging import get_logger

TOKEN_BYTES = 32
PASSWORD_LENGTH = 25
_PASSWORD_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True, slots=True)
class SecretScope:
    client: str
    environment: str

    def __str__(self) -> str:
        return f"{self.client}/{self.environment}"


@dataclass(frozen=True, slots=True)
class Credentials:
    database_password: str
    database_root_password: str
    admin_password: str
    staging_password: str


@dataclass(frozen=True, slots=True)
class SecretBundle:
    scope: SecretScope
    token: str
    credentials: Credentials
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat(timespec="seconds"))


@dataclass(slots=True)
class Secret:
    scope: SecretScope
    token: str
    created_at: str
    revoked: bool = False


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


class SecretVault:
    """File-backed token store under each client's ``shared/tokens`` directory.

    Tokens are read from disk on every validation, so a revoke is visible to the
    very next ``validate`` call from any thread. Tokens never expire on their own.
    """

    def __init__(self, clients_path: Path, *, logger: logging.Logger | None = None) -> None:
        self.clients_path = Path(clients_path)
        self.logger = logger or get_logger("clientstack.vault")
        self._lock = threading.RLock()

    def token_path(self, scope: SecretScope) -> Path:
        return self.clients_path / scope.client / "shared" / "tokens" / f"{scope.environment}-deploy.token"

    def generate(self, scope: SecretScope) -> SecretBundle:
        return SecretBundle(
            scope=scope,
            token=generate_token(),
            credentials=Credentials(
                database_password=generate_password(),
                database_root_password=generate_password(),
                admin_password=generate_password(),
                staging_password=generate_password(),
            ),
        )

    def store(self, scope: SecretScope, bundle: SecretBundle) -> Secret:
        if bundle.scope != scope:
            raise ValueError(f"secret bundle for {bundle.scope} cannot be stored under {scope}")
        path = self.token_path(scope)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.parent.chmod(0o700)
            atomic_write_text(path, bundle.token + "\n", mode=0o600)
        self.logger.info(
            "deployment token stored",
            extra={
                "event_action": "secret_store",
                "event_outcome": "success",
                "client": scope.client,
                "environment": scope.environment,
            },
        )
        return Secret(scope=scope, token=bundle.token, created_at=bundle.created_at)

    def revoke(self, scope: SecretScope) -> bool:
        path = self.token_path(scope)
        with self._lock:
            existed = path.exists()
            path.unlink(missing_ok=True)
        self.logger.info(
            "deployment token revoked",
            extra={
                "event_action": "secret_revoke",
                "event_outcome": "success" if existed else "unknown",
                "client": scope.client,
                "environment": scope.environment,
            },
        )
        return existed

    def read_token(self, scope: SecretScope) -> str:
        try:
            token = self.token_path(scope).read_text(encoding="utf-8").strip()
        except FileNotFoundError as exc:
            raise SecretRevokedError(f"no active deployment token for {scope}") from exc
        if not token:
            raise SecretRevokedError(f"no active deployment token for {scope}")
        return token

    def validate(self, scope: SecretScope, presented: str | None) -> bool:
        expected = self.read_token(scope)
        candidate = (presented or "").strip()
        return hmac.compare_digest(candidate.encode("utf-8"), expected.encode("utf-8"))

    def describe(self, scope: SecretScope) -> Secret:
        path = self.token_path(scope)
        try:
            token = self.read_token(scope)
        except SecretRevokedError:
            return Secret(scope=scope, token="", created_at="", revoked=True)
        created_at = datetime.fromtimestamp(path.stat().st_mtime, UTC).isoformat(timespec="seconds")
        return Secret(scope=scope, token=token, created_at=created_at)
