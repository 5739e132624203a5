"""Error taxonomy and result codes shared by every core operation."""

from __future__ import annotations

from enum import Enum


class ResultCode(str, Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    CONFLICT = "conflict"
    INTERNAL_ERROR = "internal_error"

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self]


_HTTP_STATUS = {
    ResultCode.SUCCESS: 200,
    ResultCode.NOT_FOUND: 404,
    ResultCode.INVALID_INPUT: 400,
    ResultCode.CONFLICT: 409,
    ResultCode.INTERNAL_ERROR: 500,
}


class HostingError(RuntimeError):
    """Base error for environment lifecycle and deployment operations."""

    kind = "internal"
    code = ResultCode.INTERNAL_ERROR

    def __init__(self, message: str, *, step: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.step = step

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"kind": self.kind, "code": self.code.value, "message": self.message}
        if self.step:
            payload["step"] = self.step
        return payload


class InvalidNameError(HostingError):
    kind = "invalid_name"
    code = ResultCode.INVALID_INPUT


class ConfirmationRequiredError(HostingError):
    """Destructive operation was invoked without the operator confirmation phrase."""

    kind = "confirmation_required"
    code = ResultCode.INVALID_INPUT


class AlreadyExistsError(HostingError):
    kind = "already_exists"
    code = ResultCode.CONFLICT


class NotFoundError(HostingError):
    kind = "not_found"
    code = ResultCode.NOT_FOUND


class UnauthorizedError(HostingError):
    kind = "unauthorized"
    code = ResultCode.INVALID_INPUT


class SecretRevokedError(UnauthorizedError):
    """Scope has no active secret; it was revoked or never stored."""

    kind = "revoked"


class NotAPipelineError(HostingError):
    kind = "not_a_pipeline"
    code = ResultCode.INVALID_INPUT


class BusyError(HostingError):
    kind = "busy"
    code = ResultCode.CONFLICT


class FetchError(HostingError):
    kind = "fetch_error"


class BuildError(HostingError):
    kind = "build_error"


class PipelineTimeoutError(HostingError):
    kind = "timeout"


class NoPasswordError(HostingError):
    kind = "no_password"


class StepFailedError(HostingError):
    kind = "step_failed"


class NetworkIsolationError(HostingError):
    kind = "network_isolation"


class ProxyReloadError(HostingError):
    """Reverse proxy did not pick up freshly written policy. Non-fatal."""

    kind = "proxy_reload"


class PermissionFixWarning(HostingError):
    """Ownership normalization of delivered artifacts failed. Non-fatal."""

    kind = "permission_fix"
