from __future__ import annotations

from enum import Enum


class ConfigurationError(ValueError):
    """Raised when the declared matrix or stage list cannot produce a run."""


class EmptyMatrixError(ConfigurationError):
    """No axes were declared, or an axis has no entries."""


class DuplicateLaneError(ConfigurationError):
    """Two entries (or two axis combinations) resolve to the same lane id."""


class DuplicateVariableError(ConfigurationError):
    """The same variable name is bound by more than one axis."""


class WorkerUnavailableError(RuntimeError):
    """Raised by a command runner when the worker cannot start a command at all."""


class FailureKind(str, Enum):
    STAGE = "stage"
    PROVISIONING = "provisioning"
    INFRASTRUCTURE = "infrastructure"

    @property
    def retryable(self) -> bool:
        return self is FailureKind.INFRASTRUCTURE


class ProvisioningError(RuntimeError):
    """The toolchain binding for a lane could not be established."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output
