"""Custom exceptions for openindiana-up."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Raised when user-supplied options cannot be resolved."""


class VmNotFoundError(ManagerError):
    """Raised when no record matches a name or id."""


class SpawnError(ManagerError):
    """Raised when the hypervisor process cannot be started."""

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class TerminationError(ManagerError):
    """Raised when a guest survives both the graceful and the forced signal."""


class ProvisionError(ManagerError):
    """Raised when an external provisioning command fails."""

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class PersistenceError(ManagerError):
    """Raised when the state database rejects a write."""
